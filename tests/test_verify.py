import pytest
from eth_utils import to_checksum_address

from dungeondeploy.artifacts import ArtifactStore
from dungeondeploy.errors import DecodeError, RpcError
from dungeondeploy.orchestrator import Orchestrator
from dungeondeploy.verify import COMPROMISED, UNEXPECTED_OWNER, ZERO_OWNER, Verifier
from tests.conftest import BASE_URI, DEPLOYER

STRANGER = to_checksum_address("0x" + "5e" * 20)
OLD_ADMIN = to_checksum_address("0x" + "0a" * 20)


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
def verifier(fake_client, logger):
    return Verifier(fake_client, logger)


def test_verify_links_of_a_fresh_deployment(verifier, deployed, plan, fake_client):
    sent = fake_client.transactions
    report = verifier.verify(deployed, plan.links)
    assert report.ok
    assert len(report.passed) == 4
    # verification never sends
    assert fake_client.transactions == sent


def test_verify_reports_wrong_target(verifier, deployed, plan, fake_client):
    core = deployed.get("DungeonCore")
    fake_client.set_value(core, "dungeonMasterAddress", STRANGER)

    report = verifier.verify(deployed, plan.links)

    assert not report.ok
    assert len(report.failed) == 1
    finding = report.failed[0]
    assert finding.contract == "DungeonCore"
    assert finding.operation == "dungeonMasterAddress()"
    assert finding.expected == deployed.get("DungeonMaster").address
    assert finding.actual == STRANGER


def test_verify_reports_unreadable_getter(verifier, deployed, plan, fake_client):
    fake_client.call_errors[("Hero", "dungeonCore")] = DecodeError("bad output")
    fake_client.call_errors[("DungeonMaster", "dungeonCore")] = RpcError("node down")

    report = verifier.verify(deployed, plan.links)

    failed = {finding.contract: finding for finding in report.failed}
    assert set(failed) == {"Hero", "DungeonMaster"}
    assert failed["Hero"].actual is None
    assert "DecodeError" in failed["Hero"].message
    assert "RpcError" in failed["DungeonMaster"].message


def test_verify_reports_unrecorded_contract(verifier, deployed, plan):
    del deployed.contracts["Hero"]
    report = verifier.verify(deployed, plan.links)
    assert {finding.contract for finding in report.failed} == {"DungeonCore", "Hero"}


def test_ownership(verifier, deployed):
    report = verifier.verify_ownership(deployed, DEPLOYER)
    # SoulShard is external and its owner() is unknown to the fake chain
    assert [finding.contract for finding in report.failed] == ["SoulShard"]
    assert report.failed[0].message == ZERO_OWNER
    assert {finding.contract for finding in report.passed} == {"Oracle", "DungeonCore", "DungeonMaster", "Hero"}


def test_compromised_and_unexpected_owners_are_distinguished(verifier, deployed, fake_client):
    fake_client.set_value(deployed.get("Hero"), "owner", OLD_ADMIN)
    fake_client.set_value(deployed.get("Oracle"), "owner", STRANGER)
    fake_client.set_value(deployed.get("SoulShard"), "owner", DEPLOYER)

    report = verifier.verify_ownership(deployed, DEPLOYER, compromised=[OLD_ADMIN])

    failed = {finding.contract: finding for finding in report.failed}
    assert failed["Hero"].message == COMPROMISED
    assert failed["Hero"].actual == OLD_ADMIN
    assert failed["Oracle"].message == UNEXPECTED_OWNER
    assert "DungeonCore" not in failed


def test_renounced_ownership_is_its_own_finding(verifier, deployed, fake_client):
    fake_client.set_value(deployed.get("SoulShard"), "owner", DEPLOYER)
    fake_client.set_value(deployed.get("Hero"), "owner", "0x" + "0" * 40)

    # the zero address is never mistaken for a compromised or unexpected admin
    report = verifier.verify_ownership(deployed, DEPLOYER, compromised=["0x" + "0" * 40])

    assert [(finding.contract, finding.message) for finding in report.failed] == [("Hero", ZERO_OWNER)]


def test_ownership_skips_contracts_without_owner(verifier, deployed, fake_client):
    oracle = deployed.get("Oracle")
    deployed.contracts["Oracle"] = oracle._replace(abi=[])
    fake_client.set_value(deployed.get("SoulShard"), "owner", DEPLOYER)

    report = verifier.verify_ownership(deployed, DEPLOYER)
    assert report.ok
    assert "Oracle" not in {finding.contract for finding in report.passed}


def test_verify_code(verifier, deployed, fake_client):
    fake_client.code.pop(deployed.get("Oracle").address.lower())
    report = verifier.verify_code(deployed)
    assert [finding.contract for finding in report.failed] == ["Oracle"]
    assert report.failed[0].message == "no code at address"


def test_verify_settings(verifier, deployed, plan, fake_client):
    assert verifier.verify_settings(deployed, plan).ok

    fake_client.set_value(deployed.get("Hero"), "baseURI", "https://old.example/")
    report = verifier.verify_settings(deployed, plan)
    assert report.failed[0].expected == BASE_URI
    assert report.failed[0].actual == "https://old.example/"


def test_verify_plan_combines_every_check(verifier, deployed, plan, fake_client):
    fake_client.set_value(deployed.get("SoulShard"), "owner", DEPLOYER)
    report = verifier.verify_plan(deployed, plan, expected_owner=DEPLOYER)
    assert report.ok
    # 5 code + 4 links + 1 setting + 5 owners
    assert len(report) == 15


def test_verify_recorded_links_without_plan(verifier, deployed):
    report = verifier.verify(deployed, deployed.link_specs())
    assert report.ok
    assert len(report.passed) == 4
