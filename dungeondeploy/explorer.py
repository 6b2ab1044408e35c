import json
import time
from typing import Any, Callable, Dict, List, NamedTuple, Optional

import requests
from eth_utils import remove_0x_prefix

from dungeondeploy.artifacts import ArtifactStore, SourceInfo, get_bytecode
from dungeondeploy.client import ChainClient
from dungeondeploy.constants import (
    EXPLORER_POLL_ATTEMPTS,
    EXPLORER_POLL_INTERVAL,
    EXPLORER_TIMEOUT,
    SOURCE_FAILED,
    SOURCE_VERIFIED,
)
from dungeondeploy.errors import ExplorerError, NotFound, PlanError, RpcError
from dungeondeploy.log import Logger
from dungeondeploy.networks import ExplorerConfig
from dungeondeploy.registry import ContractRecord, Registry

SOURCE_SKIPPED = "skipped"

STANDARD_JSON_INPUT = "solidity-standard-json-input"

PENDING_MARKER = "pending"
ALREADY_VERIFIED_MARKER = "already verified"
VERIFIED_MARKERS = ("pass - verified", ALREADY_VERIFIED_MARKER)


class ExplorerApi:
    """
    Etherscan-compatible contract verification API (BscScan included).

    Every call is a single HTTP round-trip; polling is left to the caller.
    """

    def __init__(
        self,
        config: ExplorerConfig,
        session: Optional[requests.Session] = None,
        timeout: int = EXPLORER_TIMEOUT,
    ):
        self.config = config
        self.session = session or requests.Session()
        self.timeout = timeout

    def _request(self, action: str, method: str = "GET", **fields: Any) -> Dict[str, Any]:
        query = {"chainid": self.config.chain_id}
        payload = dict(fields, module="contract", action=action, apikey=self.config.api_key)
        try:
            if method == "POST":
                response = self.session.post(
                    self.config.api_url, params=query, data=payload, timeout=self.timeout
                )
            else:
                response = self.session.get(
                    self.config.api_url, params=dict(query, **payload), timeout=self.timeout
                )
            response.raise_for_status()
            return response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            raise ExplorerError(f"{action} request to {self.config.api_url} failed: {e}") from e

    def submit(self, address: str, source: SourceInfo, constructor_arguments: str) -> Optional[str]:
        """
        Submits the standard JSON input of a deployed contract.

        Returns the guid to poll, or None if the explorer already knows the source.
        """
        body = self._request(
            "verifysourcecode",
            method="POST",
            contractaddress=address,
            sourceCode=json.dumps(source.standard_json_input),
            codeformat=STANDARD_JSON_INPUT,
            contractname=source.qualified_name,
            compilerversion=source.compiler_version,
            # sic, the API spells it this way
            constructorArguements=remove_0x_prefix(constructor_arguments),
        )
        result = str(body.get("result", ""))
        if body.get("status") == "1":
            return result
        if ALREADY_VERIFIED_MARKER in result.lower():
            return None
        raise ExplorerError(f"Explorer rejected the source of {address}: {result or body.get('message')}")

    def check_status(self, guid: str) -> str:
        return str(self._request("checkverifystatus", guid=guid).get("result", ""))

    def is_verified(self, address: str) -> bool:
        body = self._request("getsourcecode", address=address)
        entries = body.get("result")
        if body.get("status") != "1" or not isinstance(entries, list) or not entries:
            return False
        return bool(entries[0].get("SourceCode"))


class PublishResult(NamedTuple):
    contract: str
    status: str
    message: str = ""


class SourcePublisher:
    """
    Publishes the source of recorded contracts to the block explorer.

    Constructor arguments are recovered from the deployment transaction by
    stripping the artifact bytecode off its calldata. Each outcome is
    recorded in the registry, so contracts whose current address was
    already verified are skipped on the next run.
    """

    def __init__(
        self,
        api: ExplorerApi,
        client: ChainClient,
        registry: Registry,
        artifacts: ArtifactStore,
        logger: Optional[Logger] = None,
        poll_interval: float = EXPLORER_POLL_INTERVAL,
        poll_attempts: int = EXPLORER_POLL_ATTEMPTS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.api = api
        self.client = client
        self.registry = registry
        self.artifacts = artifacts
        self.logger = logger or Logger(name="publish")
        self.poll_interval = poll_interval
        self.poll_attempts = poll_attempts
        self._sleep = sleep

    def constructor_arguments(self, record: ContractRecord, artifact_name: str) -> str:
        if record.tx_hash is None:
            raise NotFound(f"{record.name} has no recorded deployment transaction")
        bytecode = get_bytecode(self.artifacts.get(artifact_name)).lower()
        calldata = self.client.get_transaction_input(record.tx_hash).lower()
        if not calldata.startswith(bytecode):
            raise ExplorerError(
                f"Deployment of {record.name} does not match the bytecode of artifact {artifact_name}; "
                "was it recompiled since?"
            )
        return f"0x{calldata[len(bytecode):]}"

    def _await_verdict(self, name: str, guid: str) -> str:
        for _ in range(self.poll_attempts):
            result = self.api.check_status(guid)
            if not result.lower().startswith(PENDING_MARKER):
                return result
            self.logger.debug(f"{name} source still in the explorer queue", guid=guid)
            self._sleep(self.poll_interval)
        raise ExplorerError(
            f"{name} source verification {guid} still pending after {self.poll_attempts} checks"
        )

    def publish_one(self, name: str, artifact_name: Optional[str] = None) -> PublishResult:
        artifact_name = artifact_name or name
        record = self.registry.get(name)
        if self.registry.is_source_verified(name):
            return PublishResult(name, SOURCE_SKIPPED, "already verified")
        if record.tx_hash is None:
            return PublishResult(name, SOURCE_SKIPPED, "external contract")

        guid = None
        try:
            source = self.artifacts.get_source(artifact_name)
            arguments = self.constructor_arguments(record, artifact_name)
            if self.api.is_verified(record.address):
                verdict = ALREADY_VERIFIED_MARKER
            else:
                self.logger.info(f"Publishing {source.qualified_name}", address=record.address)
                guid = self.api.submit(record.address, source, arguments)
                verdict = ALREADY_VERIFIED_MARKER if guid is None else self._await_verdict(name, guid)
        except (ExplorerError, NotFound, PlanError, RpcError) as e:
            self.registry.record_source_verification(name, SOURCE_FAILED, guid=guid, message=str(e))
            self.logger.error(f"Could not publish {name}", error=e)
            return PublishResult(name, SOURCE_FAILED, str(e))

        status = SOURCE_VERIFIED if verdict.lower().startswith(VERIFIED_MARKERS) else SOURCE_FAILED
        self.registry.record_source_verification(name, status, guid=guid, message=verdict)
        if status == SOURCE_VERIFIED:
            self.logger.success(f"Verified {name} source", address=record.address)
        else:
            self.logger.error(f"Explorer could not verify {name}: {verdict}")
        return PublishResult(name, status, verdict)

    def publish(self, artifact_names: Dict[str, str]) -> List[PublishResult]:
        """Publishes every contract in `artifact_names` (contract name -> artifact name)."""
        results = list()
        for name, artifact_name in artifact_names.items():
            results.append(self.publish_one(name, artifact_name))
        return results
