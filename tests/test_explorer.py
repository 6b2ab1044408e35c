import json
import shutil

import pytest
import requests

from dungeondeploy.artifacts import ArtifactStore
from dungeondeploy.constants import SOURCE_FAILED, SOURCE_VERIFIED
from dungeondeploy.errors import NotFound
from dungeondeploy.explorer import SOURCE_SKIPPED, ExplorerApi, SourcePublisher
from dungeondeploy.networks import ExplorerConfig
from dungeondeploy.orchestrator import Orchestrator
from dungeondeploy.registry import Registry
from tests.conftest import BYTECODE, SOLC_LONG_VERSION

API_URL = "https://api.etherscan.io/v2/api"
GUID = "ezq878u486pzijkvvmerl6a9mzwhv6sefgvqi5tkwceejc7tvn"


class FakeResponse:
    def __init__(self, body):
        self.body = body

    def raise_for_status(self):
        pass

    def json(self):
        return self.body


class FakeExplorerSession:
    """Answers Etherscan contract API actions from canned bodies."""

    def __init__(self, statuses=("Pass - Verified",), known=False, error=None):
        self.statuses = list(statuses)
        self.known = known
        self.error = error
        self.posts = list()
        self.gets = list()

    def post(self, url, params=None, data=None, timeout=None):
        if self.error is not None:
            raise self.error
        self.posts.append((url, params, data))
        return FakeResponse({"status": "1", "message": "OK", "result": GUID})

    def get(self, url, params=None, timeout=None):
        if self.error is not None:
            raise self.error
        self.gets.append((url, params))
        if params["action"] == "getsourcecode":
            source = "pragma solidity 0.8.20;" if self.known else ""
            return FakeResponse({"status": "1", "message": "OK", "result": [{"SourceCode": source}]})
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        return FakeResponse({"status": "0" if status.startswith("Pending") else "1", "result": status})


class Sleeps(list):
    def __call__(self, seconds):
        self.append(seconds)


@pytest.fixture
def deployed(plan, registry, fake_client, logger):
    Orchestrator(
        client=fake_client,
        registry=registry,
        artifacts=ArtifactStore(plan.artifacts_dir),
        logger=logger,
        autosign=True,
    ).deploy_all(plan)
    return registry


@pytest.fixture
def session():
    return FakeExplorerSession()


@pytest.fixture
def sleeps():
    return Sleeps()


@pytest.fixture
def publisher(session, sleeps, fake_client, deployed, artifacts_dir, logger):
    config = ExplorerConfig(network="bsc", chain_id=56, api_url=API_URL, api_key="key")
    return SourcePublisher(
        api=ExplorerApi(config, session=session),
        client=fake_client,
        registry=deployed,
        artifacts=ArtifactStore(artifacts_dir),
        logger=logger,
        sleep=sleeps,
    )


def reload(registry):
    return Registry.load(registry.filepath, network=registry.network, chain_id=registry.chain_id)


def test_source_is_read_from_build_info(artifacts_dir):
    source = ArtifactStore(artifacts_dir).get_source("Hero")
    assert source.qualified_name == "contracts/Hero.sol:Hero"
    assert source.compiler_version == f"v{SOLC_LONG_VERSION}"
    assert "contracts/Hero.sol" in source.standard_json_input["sources"]
    assert source.standard_json_input["settings"]["optimizer"]["runs"] == 200


def test_missing_build_info(artifacts_dir):
    shutil.rmtree(artifacts_dir / "build-info")
    with pytest.raises(NotFound, match="Build info"):
        ArtifactStore(artifacts_dir).get_source("Hero")


def test_constructor_arguments_follow_the_bytecode(publisher, deployed, fake_client):
    hero = deployed.get("Hero")
    arguments = publisher.constructor_arguments(hero, "Hero")
    assert fake_client.get_transaction_input(hero.tx_hash) == BYTECODE + arguments[2:]
    assert len(arguments) == 2 + 64


def test_publish_submits_standard_json_input(publisher, session, sleeps, deployed):
    session.statuses = ["Pending in queue", "Pass - Verified"]

    result = publisher.publish_one("Hero")

    assert result.status == SOURCE_VERIFIED
    url, params, data = session.posts[0]
    assert url == API_URL
    assert params == {"chainid": 56}
    assert data["action"] == "verifysourcecode"
    assert data["codeformat"] == "solidity-standard-json-input"
    assert data["contractname"] == "contracts/Hero.sol:Hero"
    assert data["compilerversion"] == f"v{SOLC_LONG_VERSION}"
    assert data["contractaddress"] == deployed.get("Hero").address
    assert "contracts/Hero.sol" in json.loads(data["sourceCode"])["sources"]
    assert not data["constructorArguements"].startswith("0x")
    # one pending answer, one wait before asking again
    assert len(sleeps) == 1

    verification = reload(deployed).sources["Hero"]
    assert verification.status == SOURCE_VERIFIED
    assert verification.guid == GUID
    assert verification.address == deployed.get("Hero").address


def test_verified_sources_are_not_published_again(publisher, session, plan, deployed):
    artifact_names = {name: spec.artifact for name, spec in plan.contracts.items()}
    first = publisher.publish(artifact_names)
    assert {result.contract: result.status for result in first} == {
        "SoulShard": SOURCE_SKIPPED,
        "Oracle": SOURCE_VERIFIED,
        "DungeonCore": SOURCE_VERIFIED,
        "DungeonMaster": SOURCE_VERIFIED,
        "Hero": SOURCE_VERIFIED,
    }
    submitted = len(session.posts)

    second = publisher.publish(artifact_names)
    assert all(result.status == SOURCE_SKIPPED for result in second)
    assert len(session.posts) == submitted


def test_source_known_to_the_explorer_is_not_submitted(publisher, session, deployed):
    session.known = True
    assert publisher.publish_one("Oracle").status == SOURCE_VERIFIED
    assert session.posts == []
    assert deployed.is_source_verified("Oracle")


def test_rejected_source_is_recorded_and_retried(publisher, session, deployed):
    session.statuses = ["Fail - Unable to verify. Compiled contract deployment bytecode does NOT match"]

    result = publisher.publish_one("DungeonCore")
    assert result.status == SOURCE_FAILED
    assert "does NOT match" in result.message
    assert reload(deployed).sources["DungeonCore"].status == SOURCE_FAILED
    assert not deployed.is_source_verified("DungeonCore")

    session.statuses = ["Pass - Verified"]
    assert publisher.publish_one("DungeonCore").status == SOURCE_VERIFIED
    assert len(session.posts) == 2


def test_explorer_outage_is_recorded_as_failure(publisher, session, deployed):
    session.error = requests.exceptions.ConnectionError("refused")
    result = publisher.publish_one("Hero")
    assert result.status == SOURCE_FAILED
    assert "refused" in result.message
    assert deployed.sources["Hero"].status == SOURCE_FAILED


def test_recompiled_artifact_is_not_submitted(publisher, session, deployed, fake_client):
    fake_client.inputs[deployed.get("Hero").tx_hash] = "0xdeadbeef"
    result = publisher.publish_one("Hero")
    assert result.status == SOURCE_FAILED
    assert "recompiled" in result.message
    assert session.posts == []


def test_redeployed_contract_needs_new_verification(publisher, deployed):
    publisher.publish_one("Hero")
    assert deployed.is_source_verified("Hero")

    redeployed = deployed.get("Hero")._replace(address="0x" + "4f" * 20)
    deployed.record_deployment(redeployed)
    assert not deployed.is_source_verified("Hero")
