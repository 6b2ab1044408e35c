import threading
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from dungeondeploy.artifacts import ArtifactStore, get_abi
from dungeondeploy.client import ChainClient, Receipt, TransactionHandle, TxOptions
from dungeondeploy.confirm import _confirm_resolution, _confirm_transaction, _continue
from dungeondeploy.constants import (
    DEFAULT_CONFIRMATION_TIMEOUT,
    DEFAULT_CONFIRMATIONS,
    LINK_RETRY_ATTEMPTS,
)
from dungeondeploy.errors import (
    CyclicDependency,
    DeploymentAborted,
    DeploymentError,
    DeploymentHalted,
    LinkFailed,
    NonceCollision,
    NotFound,
    PlanError,
    Reverted,
    RpcError,
    Timeout,
)
from dungeondeploy.log import Logger
from dungeondeploy.params import DeploymentPlan, Resolver, SettingSpec
from dungeondeploy.registry import ContractRecord, LinkSpec, PendingTransaction, Registry
from dungeondeploy.utils import addresses_equal, normalize_value, values_equal


class ContractState(Enum):
    PENDING = "pending"
    DEPLOYING = "deploying"
    DEPLOYED = "deployed"
    CONFIGURING = "configuring"
    LINKED = "linked"
    VERIFIED = "verified"
    FAILED = "failed"


ALLOWED_TRANSITIONS = {
    ContractState.PENDING: {ContractState.DEPLOYING, ContractState.DEPLOYED, ContractState.FAILED},
    ContractState.DEPLOYING: {ContractState.DEPLOYED, ContractState.FAILED},
    ContractState.DEPLOYED: {ContractState.CONFIGURING, ContractState.FAILED},
    ContractState.CONFIGURING: {ContractState.LINKED, ContractState.FAILED},
    ContractState.LINKED: {ContractState.CONFIGURING, ContractState.VERIFIED, ContractState.FAILED},
    ContractState.VERIFIED: set(),
    ContractState.FAILED: set(),
}

RETRYABLE_LINK_ERRORS = (RpcError, Timeout, NonceCollision, Reverted)


def plan_order(plan: DeploymentPlan) -> List[str]:
    """
    Topological order of the plan's contracts.

    Among contracts whose dependencies are all placed, the one declared
    first in the plan goes first.
    """
    dependencies = {name: plan.dependencies(name) for name in plan.contract_names}
    ordered: List[str] = list()
    placed: Set[str] = set()
    while len(ordered) < len(dependencies):
        for name in plan.contract_names:
            if name not in placed and dependencies[name] <= placed:
                ordered.append(name)
                placed.add(name)
                break
        else:
            remaining = {name: deps - placed for name, deps in dependencies.items() if name not in placed}
            raise CyclicDependency(_find_cycle(remaining, plan.contract_names))
    return ordered


def _find_cycle(dependencies: Dict[str, Set[str]], declared: List[str]) -> List[str]:
    for start in declared:
        if start not in dependencies:
            continue
        path, seen = [start], {start}
        current = start
        while True:
            next_names = [name for name in declared if name in dependencies.get(current, set())]
            if not next_names:
                break
            current = next_names[0]
            if current in seen:
                return path[path.index(current) :] + [current]
            path.append(current)
            seen.add(current)
    return sorted(dependencies)


class DeploymentResult:
    """What a run did; every list holds contract names or link/setting keys."""

    def __init__(self):
        self.states: Dict[str, ContractState] = dict()
        self.deployed: List[str] = list()
        self.skipped: List[str] = list()
        self.links_applied: List[str] = list()
        self.links_unchanged: List[str] = list()
        self.settings_applied: List[str] = list()
        self.settings_unchanged: List[str] = list()
        self.unverified: List[str] = list()
        self.sends = 0

    @property
    def ok(self) -> bool:
        return not self.unverified and all(
            state == ContractState.VERIFIED for state in self.states.values()
        )


class Orchestrator:
    """
    Drives a deployment plan to completion against one network.

    Every step first checks the registry and the chain and only sends a
    transaction when the desired state is not reached yet, so re-running a
    finished plan sends nothing.
    """

    def __init__(
        self,
        client: ChainClient,
        registry: Registry,
        artifacts: ArtifactStore,
        logger: Optional[Logger] = None,
        autosign: bool = False,
        confirmations: int = DEFAULT_CONFIRMATIONS,
        timeout: float = DEFAULT_CONFIRMATION_TIMEOUT,
        link_retries: int = LINK_RETRY_ATTEMPTS,
        retry_reverted: bool = False,
        tx_options: Optional[TxOptions] = None,
    ):
        self.client = client
        self.registry = registry
        self.artifacts = artifacts
        self.logger = logger or Logger(name="deploy")
        self.autosign = autosign
        self.confirmations = confirmations
        self.timeout = timeout
        self.link_retries = link_retries
        self.retry_reverted = retry_reverted
        self.tx_options = tx_options or TxOptions()
        self.result = DeploymentResult()
        self._abort = threading.Event()
        self._handled_links: Set[str] = set()

        if autosign:
            self.logger.warning("Autosign is enabled. Transactions will be signed automatically.")

    #
    # Cancellation
    #

    def abort(self) -> None:
        """Stops new sends; a transaction already submitted is still awaited."""
        if not self._abort.is_set():
            self.logger.warning("Abort requested; finishing the in-flight transaction first")
        self._abort.set()

    @property
    def aborted(self) -> bool:
        return self._abort.is_set()

    def _check_abort(self) -> None:
        if self._abort.is_set():
            raise DeploymentAborted(
                f"Deployment aborted; progress is saved in {self.registry.filepath}"
            )

    #
    # State machine
    #

    def _transition(self, name: str, state: ContractState) -> None:
        current = self.result.states.get(name, ContractState.PENDING)
        if state not in ALLOWED_TRANSITIONS[current]:
            raise ValueError(f"Invalid state transition for {name}: {current.value} -> {state.value}")
        self.result.states[name] = state
        self.logger.debug(f"{name}: {current.value} -> {state.value}")

    def state(self, name: str) -> ContractState:
        return self.result.states.get(name, ContractState.PENDING)

    #
    # Transactions
    #

    def _resolver(self) -> Resolver:
        return Resolver(deployer=self.client.address, addresses=self.registry.addresses())

    def _submit(self, kind: str, send: Callable[[], TransactionHandle]) -> Receipt:
        """Sends, tracks the transaction as pending until its outcome is known, and awaits it."""
        self._check_abort()
        handle = send()
        self.result.sends += 1
        self.registry.record_pending(
            PendingTransaction(
                tx_hash=handle.tx_hash,
                nonce=handle.nonce,
                contract=handle.contract,
                operation=handle.operation,
                kind=kind,
                submitted_at=handle.submitted_at,
            )
        )
        self.logger.info(
            f"Submitted {handle.contract}.{handle.operation}", tx_hash=handle.tx_hash, nonce=handle.nonce
        )
        try:
            receipt = self.client.await_confirmation(
                handle, min_confirmations=self.confirmations, timeout=self.timeout
            )
        except Timeout:
            self.logger.warning(
                f"{handle.contract}.{handle.operation} outcome unknown; kept as pending",
                tx_hash=handle.tx_hash,
            )
            raise
        except Reverted:
            self._clear_replaced(handle)
            raise
        self._clear_replaced(handle)
        return receipt

    def _clear_replaced(self, handle: TransactionHandle) -> None:
        # transactions sharing the confirmed nonce can no longer be mined
        for tx in list(self.registry.pending.values()):
            if tx.nonce == handle.nonce:
                self.registry.clear_pending(tx.tx_hash)

    def _retry_options(self, options: TxOptions) -> TxOptions:
        if not options.has_fees:
            options = options._replace(gas_price=self.client.gas_price())
        return options.bumped()._replace(replace=True)

    def _with_retries(self, description: str, operation: Callable[[TxOptions], Any]) -> Any:
        options = self.tx_options
        for attempt in range(1, self.link_retries + 1):
            self._check_abort()
            try:
                return operation(options)
            except RETRYABLE_LINK_ERRORS as e:
                if isinstance(e, Reverted) and not self.retry_reverted:
                    raise LinkFailed(f"{description} reverted: {e}") from e
                if isinstance(e, RpcError) and not e.retryable:
                    raise LinkFailed(f"{description} failed: {e}") from e
                if attempt == self.link_retries:
                    raise LinkFailed(f"{description} failed after {attempt} attempt(s): {e}") from e
                self.logger.warning(
                    f"{description} failed; retrying with a fresh nonce and bumped fee",
                    attempt=attempt,
                    error=e,
                )
                self.client.reset_nonce()
                options = self._retry_options(options)

    #
    # Preflight
    #

    def _check_chain(self, plan: DeploymentPlan) -> None:
        if plan.chain_id is not None and plan.chain_id != self.registry.chain_id:
            raise PlanError(
                f"Plan {plan.name} targets chain {plan.chain_id} but network "
                f"{self.registry.network} is chain {self.registry.chain_id}"
            )
        if self.client.chain_id != self.registry.chain_id:
            raise PlanError(
                f"RPC endpoint serves chain {self.client.chain_id} but network "
                f"{self.registry.network} is chain {self.registry.chain_id}"
            )

    def _recover_pending(self, plan: DeploymentPlan) -> None:
        """Resolves transactions whose outcome a previous run never observed."""
        # mined transactions first; replacements sharing their nonce are then dropped
        pending = sorted(
            self.registry.pending.values(), key=lambda tx: self.client.get_receipt(tx.tx_hash) is None
        )
        for tx in pending:
            if tx.tx_hash not in self.registry.pending:
                continue
            self.logger.info(
                f"Recovering pending {tx.contract}.{tx.operation}", tx_hash=tx.tx_hash, nonce=tx.nonce
            )
            handle = TransactionHandle(
                tx_hash=tx.tx_hash,
                nonce=tx.nonce,
                contract=tx.contract,
                operation=tx.operation,
                tx=dict(),
                submitted_at=tx.submitted_at,
            )
            try:
                receipt = self.client.await_confirmation(
                    handle, min_confirmations=self.confirmations, timeout=self.timeout
                )
            except Reverted as e:
                self.logger.warning(f"Pending {tx.contract}.{tx.operation} had reverted", error=e)
                self._clear_replaced(handle)
                continue
            except Timeout as e:
                raise DeploymentHalted(
                    f"Pending {tx.contract}.{tx.operation} (tx {tx.tx_hash}, nonce {tx.nonce}) "
                    f"is still unconfirmed; resolve it before re-running"
                ) from e

            if tx.kind == "deploy" and tx.contract not in self.registry:
                self._record_recovered_deployment(plan, tx, receipt)
            self._clear_replaced(handle)

    def _record_recovered_deployment(
        self, plan: DeploymentPlan, tx: PendingTransaction, receipt: Receipt
    ) -> None:
        spec = plan.contracts.get(tx.contract)
        if spec is None or receipt.contract_address is None:
            self.logger.warning(
                f"Recovered deployment of {tx.contract} is not part of this plan; not recorded",
                tx_hash=tx.tx_hash,
            )
            return
        contract_type = self.artifacts.get(spec.artifact)
        self.registry.record_deployment(
            ContractRecord(
                chain_id=self.registry.chain_id,
                name=spec.name,
                address=receipt.contract_address,
                abi=get_abi(contract_type),
                block_number=receipt.block_number,
                tx_hash=tx.tx_hash,
                deployer=self.client.address,
            )
        )
        self.logger.success(f"Recorded recovered deployment of {spec.name}", address=receipt.contract_address)

    def _check_balance(self, plan: DeploymentPlan) -> None:
        address = self.client.address
        balance = self.client.get_balance(address)
        self.logger.info(f"Deployer {address}", balance=balance)
        undeployed = [
            name
            for name, spec in plan.contracts.items()
            if not spec.is_external and name not in self.registry
        ]
        if balance == 0 and undeployed:
            raise DeploymentHalted(
                f"Deployer {address} has no balance on {self.registry.network}; "
                f"cannot deploy {', '.join(undeployed)}"
            )

    def preflight(self, plan: DeploymentPlan) -> List[str]:
        """Validates the plan and the network; no transaction is sent."""
        order = plan_order(plan)
        plan.validate(self.artifacts, deployer=self.client.address)
        self._check_chain(plan)
        self._check_balance(plan)
        self._recover_pending(plan)
        return order

    #
    # Deployment
    #

    def _record_external(self, plan: DeploymentPlan, name: str) -> None:
        spec = plan.contracts[name]
        if name in self.registry:
            recorded = self.registry.get(name)
            if not addresses_equal(recorded.address, spec.address):
                raise PlanError(
                    f"External contract {name} is recorded at {recorded.address} "
                    f"but the plan declares {spec.address}"
                )
            return
        try:
            abi = get_abi(self.artifacts.get(spec.artifact))
        except NotFound:
            abi = list()
        self.registry.record_deployment(
            ContractRecord(chain_id=self.registry.chain_id, name=name, address=spec.address, abi=abi)
        )
        self.logger.info(f"Recorded external contract {name}", address=spec.address)

    def _check_recorded(self, name: str) -> None:
        record = self.registry.get(name)
        if not self.client.get_code(record.address):
            raise DeploymentHalted(
                f"{name} is recorded at {record.address} but no code exists there; "
                f"remove the stale entry from {self.registry.filepath} to redeploy"
            )

    def _deploy(self, plan: DeploymentPlan, name: str) -> None:
        spec = plan.contracts[name]
        resolved_params = plan.resolve_constructor(name, self._resolver())
        if not self.autosign:
            _confirm_resolution(resolved_params, name)
        contract_type = self.artifacts.get(spec.artifact)

        self._transition(name, ContractState.DEPLOYING)
        self.logger.info(f"Deploying {name}")
        try:
            receipt = self._submit(
                "deploy",
                lambda: self.client.deploy(
                    name, contract_type, *resolved_params.values(), options=self.tx_options
                ),
            )
        except DeploymentAborted:
            self._transition(name, ContractState.FAILED)
            raise
        except DeploymentError as e:
            self._transition(name, ContractState.FAILED)
            raise DeploymentHalted(
                f"Deployment of {name} failed; progress is saved in {self.registry.filepath}: {e}"
            ) from e

        self.registry.record_deployment(
            ContractRecord(
                chain_id=self.registry.chain_id,
                name=name,
                address=receipt.contract_address,
                abi=get_abi(contract_type),
                block_number=receipt.block_number,
                tx_hash=receipt.tx_hash,
                deployer=self.client.address,
            )
        )
        self._transition(name, ContractState.DEPLOYED)
        self.result.deployed.append(name)
        self.logger.success(
            f"Deployed {name}", address=receipt.contract_address, block=receipt.block_number
        )

    #
    # Wiring
    #

    def _read(self, record: ContractRecord, getter: str) -> Any:
        try:
            return self.client.call(record, getter)
        except (Reverted, RpcError) as e:
            self.logger.debug(f"Could not read {record.name}.{getter}()", error=e)
            return None

    def _apply_link(self, link: LinkSpec) -> None:
        source = self.registry.get(link.from_contract)
        target = self.registry.get(link.to_contract)
        description = f"{link.from_contract}.{link.setter}({link.to_contract})"

        def attempt(options: TxOptions) -> Optional[Receipt]:
            current = self._read(source, link.getter)
            if addresses_equal(current, target.address):
                return None
            if not self.autosign:
                _confirm_transaction(
                    f"{link.from_contract}[{source.address[:10]}].{link.setter}",
                    {link.to_contract: target.address},
                )
            return self._submit(
                "link",
                lambda: self.client.send(source, link.setter, target.address, options=options),
            )

        receipt = self._with_retries(description, attempt)
        if receipt is None:
            if not self.registry.is_link_applied(link):
                self.registry.record_link(link, target.address)
            self.result.links_unchanged.append(link.key)
            self.logger.debug(f"{description} already wired")
            return
        self.registry.record_link(link, target.address, receipt.tx_hash, receipt.block_number)
        self.result.links_applied.append(link.key)
        self.logger.success(f"Wired {description}", tx_hash=receipt.tx_hash)

    def _apply_ready_links(self, plan: DeploymentPlan, source: Optional[str] = None) -> None:
        """
        Applies every unhandled link whose two endpoints were processed by this run.
        With a source, only the links going out of that contract are considered.
        """
        ready: Dict[str, List[LinkSpec]] = dict()
        for link in plan.links:
            if link.key in self._handled_links:
                continue
            if source is not None and link.from_contract != source:
                continue
            endpoints = (self.state(link.from_contract), self.state(link.to_contract))
            if ContractState.PENDING not in endpoints:
                ready.setdefault(link.from_contract, list()).append(link)

        for name, links in ready.items():
            self._transition(name, ContractState.CONFIGURING)
            for link in links:
                try:
                    self._apply_link(link)
                except DeploymentAborted:
                    raise
                except DeploymentError:
                    self._transition(name, ContractState.FAILED)
                    raise
                self._handled_links.add(link.key)
            self._transition(name, ContractState.LINKED)

    def _apply_setting(self, plan: DeploymentPlan, setting: SettingSpec) -> None:
        record = self.registry.get(setting.contract)
        resolver = self._resolver()
        args = plan.resolve_args(setting.args, resolver)
        expected = plan.resolve_args(setting.expected, resolver)
        recorded_args = normalize_value(list(args))

        def attempt(options: TxOptions) -> Optional[Receipt]:
            if setting.getter:
                if values_equal(self._read(record, setting.getter), expected):
                    return None
            else:
                applied = self.registry.settings.get(setting.key)
                if applied is not None and values_equal(applied.args, recorded_args):
                    return None
            if not self.autosign:
                _confirm_transaction(
                    f"{setting.contract}[{record.address[:10]}].{setting.setter}",
                    {str(i): arg for i, arg in enumerate(args)},
                )
            return self._submit(
                "setting",
                lambda: self.client.send(record, setting.setter, *args, options=options),
            )

        receipt = self._with_retries(f"Setting {setting.key}", attempt)
        if receipt is None:
            if setting.key not in self.registry.settings:
                self.registry.record_setting(setting.key, recorded_args)
            self.result.settings_unchanged.append(setting.key)
            return
        self.registry.record_setting(setting.key, recorded_args, receipt.tx_hash, receipt.block_number)
        self.result.settings_applied.append(setting.key)
        self.logger.success(f"Applied {setting.key}", tx_hash=receipt.tx_hash)

    def _apply_settings(self, plan: DeploymentPlan) -> None:
        for setting in plan.settings:
            name = setting.contract
            self._transition(name, ContractState.CONFIGURING)
            try:
                self._apply_setting(plan, setting)
            except DeploymentAborted:
                raise
            except DeploymentError:
                self._transition(name, ContractState.FAILED)
                raise
            self._transition(name, ContractState.LINKED)

    #
    # Read-back
    #

    def _verify_links(self, plan: DeploymentPlan, order: List[str]) -> None:
        for name in order:
            if self.state(name) == ContractState.DEPLOYED:
                # nothing to wire
                self._transition(name, ContractState.CONFIGURING)
                self._transition(name, ContractState.LINKED)

            ok = True
            source = self.registry.get(name)
            for link in plan.links_from(name):
                target = self.registry.get(link.to_contract)
                actual = self._read(source, link.getter)
                if not addresses_equal(actual, target.address):
                    ok = False
                    self.result.unverified.append(link.key)
                    self.logger.error(
                        f"{link.key} reads back {actual}, expected {target.address}",
                        getter=link.getter,
                    )
            if ok:
                self._transition(name, ContractState.VERIFIED)

    #
    # Entry point
    #

    def deploy_all(self, plan: DeploymentPlan) -> DeploymentResult:
        self.logger.section(f"Deploying {plan.name} to {self.registry.network}")
        order = self.preflight(plan)
        self.logger.info(f"Deployment order: {', '.join(order)}")
        if not self.autosign:
            _continue()

        for name in order:
            self._check_abort()
            spec = plan.contracts[name]
            if spec.is_external:
                self._record_external(plan, name)
                self._transition(name, ContractState.DEPLOYED)
            elif name in self.registry:
                self._check_recorded(name)
                self._transition(name, ContractState.DEPLOYED)
                self.result.skipped.append(name)
                self.logger.info(f"{name} already deployed", address=self.registry.get(name).address)
            else:
                self._deploy(plan, name)
            self._apply_ready_links(plan, source=name)

        # links whose target was deployed after their source
        self._apply_ready_links(plan)
        self._apply_settings(plan)
        self._verify_links(plan, order)

        self._log_summary()
        return self.result

    def _log_summary(self) -> None:
        result = self.result
        self.logger.section("Summary")
        self.logger.info(
            "Deployment finished",
            deployed=len(result.deployed),
            skipped=len(result.skipped),
            links_applied=len(result.links_applied),
            settings_applied=len(result.settings_applied),
            transactions=result.sends,
        )
        if result.unverified:
            self.logger.error(f"Unverified links: {', '.join(result.unverified)}")
        elif result.ok:
            self.logger.success("All contracts deployed, wired and verified")
