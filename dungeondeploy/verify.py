from typing import Any, Iterable, List, NamedTuple, Optional

from dungeondeploy.artifacts import contract_type_from_abi, find_view_method
from dungeondeploy.client import ChainClient
from dungeondeploy.constants import OWNER_GETTER, ZERO_ADDRESS
from dungeondeploy.errors import DecodeError, NotFound, Reverted, RpcError
from dungeondeploy.log import Logger
from dungeondeploy.params import DeploymentPlan, Resolver, SettingSpec
from dungeondeploy.registry import ContractRecord, LinkSpec, Registry
from dungeondeploy.utils import addresses_equal, normalize_value, values_equal

COMPROMISED = "compromised"
UNEXPECTED_OWNER = "unexpected owner"
ZERO_OWNER = "ownership renounced"


class Finding(NamedTuple):
    contract: str
    operation: str
    expected: Any
    actual: Any
    message: str = ""

    def __str__(self) -> str:
        text = f"{self.contract}.{self.operation}: expected {self.expected}, got {self.actual}"
        if self.message:
            text = f"{text} ({self.message})"
        return text


class Report:
    """Outcome of a verification run; never raises for mismatches."""

    def __init__(self, passed: Optional[List[Finding]] = None, failed: Optional[List[Finding]] = None):
        self.passed = passed or list()
        self.failed = failed or list()

    @property
    def ok(self) -> bool:
        return not self.failed

    def extend(self, other: "Report") -> "Report":
        self.passed.extend(other.passed)
        self.failed.extend(other.failed)
        return self

    def __len__(self) -> int:
        return len(self.passed) + len(self.failed)


class _CallFailed(Exception):
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class Verifier:
    """
    Read-only checks of on-chain state against the registry.

    Nothing here sends a transaction, so verification is safe to run at
    any time and concurrently with other networks.
    """

    def __init__(self, client: ChainClient, logger: Optional[Logger] = None):
        self.client = client
        self.logger = logger or Logger(name="verify")

    def _call(self, record: ContractRecord, method: str) -> Any:
        try:
            return self.client.call(record, method)
        except (RpcError, DecodeError, Reverted) as e:
            raise _CallFailed(f"{type(e).__name__}: {e}")

    def _check(self, report: Report, finding: Finding, passed: bool) -> None:
        if passed:
            report.passed.append(finding)
            self.logger.debug(f"{finding.contract}.{finding.operation} ok", value=finding.actual)
        else:
            report.failed.append(finding)
            self.logger.error(str(finding))

    def verify_link(self, registry: Registry, link: LinkSpec) -> Finding:
        """Reads the getter of one link and compares it with the registry; returns the finding."""
        operation = f"{link.getter}()"
        try:
            source = registry.get(link.from_contract)
            target = registry.get(link.to_contract)
        except NotFound as e:
            return Finding(link.from_contract, operation, link.to_contract, None, f"not recorded: {e}")
        try:
            actual = self._call(source, link.getter)
        except _CallFailed as e:
            return Finding(link.from_contract, operation, target.address, None, e.message)
        if addresses_equal(actual, target.address):
            return Finding(link.from_contract, operation, target.address, normalize_value(actual))
        return Finding(
            link.from_contract,
            operation,
            target.address,
            normalize_value(actual),
            f"does not point at {link.to_contract}",
        )

    def verify(self, registry: Registry, links: Iterable[LinkSpec]) -> Report:
        """Checks that every link's getter returns the registry address of its target."""
        report = Report()
        for link in links:
            finding = self.verify_link(registry, link)
            self._check(report, finding, passed=not finding.message)
        return report

    def verify_ownership(
        self,
        registry: Registry,
        expected_owner: str,
        compromised: Iterable[str] = (),
    ) -> Report:
        """
        Compares owner() of every recorded contract exposing it with the expected admin.

        A zero owner means ownership was renounced. Owners on the compromised
        list are reported as such, any other mismatch as an unexpected owner.
        Nothing is remediated.
        """
        compromised = list(compromised)
        report = Report()
        for record in registry.records:
            contract_type = contract_type_from_abi(record.name, record.abi)
            if find_view_method(contract_type, OWNER_GETTER) is None:
                continue
            operation = f"{OWNER_GETTER}()"
            try:
                owner = self._call(record, OWNER_GETTER)
            except _CallFailed as e:
                self._check(report, Finding(record.name, operation, expected_owner, None, e.message), False)
                continue

            owner = normalize_value(owner)
            if addresses_equal(owner, expected_owner):
                self._check(report, Finding(record.name, operation, expected_owner, owner), True)
            elif addresses_equal(owner, ZERO_ADDRESS):
                self._check(report, Finding(record.name, operation, expected_owner, owner, ZERO_OWNER), False)
            elif any(addresses_equal(owner, address) for address in compromised):
                self._check(report, Finding(record.name, operation, expected_owner, owner, COMPROMISED), False)
            else:
                self._check(
                    report, Finding(record.name, operation, expected_owner, owner, UNEXPECTED_OWNER), False
                )
        return report

    def verify_code(self, registry: Registry) -> Report:
        """Every recorded address must hold contract code."""
        report = Report()
        for record in registry.records:
            try:
                code = self.client.get_code(record.address)
            except RpcError as e:
                self._check(report, Finding(record.name, "code", "bytecode", None, str(e)), False)
                continue
            size = len(code)
            finding = Finding(record.name, "code", "bytecode", f"{size} bytes", "" if size else "no code at address")
            self._check(report, finding, passed=size > 0)
        return report

    def verify_settings(self, registry: Registry, plan: DeploymentPlan) -> Report:
        """Declared settings with a getter must read back their expected value."""
        report = Report()
        resolver = Resolver(deployer=self.client.address, addresses=registry.addresses(), eager=True)
        for setting in plan.settings:
            if not setting.getter:
                continue
            report.extend(self._verify_setting(registry, plan, setting, resolver))
        return report

    def _verify_setting(
        self, registry: Registry, plan: DeploymentPlan, setting: SettingSpec, resolver: Resolver
    ) -> Report:
        report = Report()
        operation = f"{setting.getter}()"
        expected = normalize_value(plan.resolve_args(setting.expected, resolver))
        try:
            record = registry.get(setting.contract)
            actual = self._call(record, setting.getter)
        except NotFound as e:
            self._check(report, Finding(setting.contract, operation, expected, None, str(e)), False)
            return report
        except _CallFailed as e:
            self._check(report, Finding(setting.contract, operation, expected, None, e.message), False)
            return report
        passed = values_equal(actual, expected)
        finding = Finding(
            setting.contract, operation, expected, normalize_value(actual), "" if passed else "mismatch"
        )
        self._check(report, finding, passed)
        return report

    def verify_plan(
        self,
        registry: Registry,
        plan: DeploymentPlan,
        expected_owner: Optional[str] = None,
        compromised: Iterable[str] = (),
    ) -> Report:
        report = self.verify_code(registry)
        report.extend(self.verify(registry, plan.links))
        report.extend(self.verify_settings(registry, plan))
        if expected_owner:
            report.extend(self.verify_ownership(registry, expected_owner, compromised))
        return report
