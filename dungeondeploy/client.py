import threading
import time
from typing import Any, Callable, Dict, NamedTuple, Optional

import requests
from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_typing import ChecksumAddress
from eth_utils import to_checksum_address, to_hex
from ethpm_types import ContractType
from web3 import HTTPProvider, Web3
from web3.contract import Contract
from web3.exceptions import (
    BadFunctionCallOutput,
    ContractLogicError,
    TransactionNotFound,
    Web3Exception,
)
from web3.middleware import ExtraDataToPOAMiddleware

from dungeondeploy.artifacts import get_abi, get_bytecode
from dungeondeploy.constants import (
    ALREADY_KNOWN_MARKERS,
    DEFAULT_CONFIRMATION_TIMEOUT,
    DEFAULT_CONFIRMATIONS,
    DEFAULT_POLL_INTERVAL,
    FEE_BUMP_DENOMINATOR,
    FEE_BUMP_NUMERATOR,
    NONCE_ERROR_MARKERS,
    RPC_RETRY_ATTEMPTS,
    RPC_RETRY_BACKOFF,
    RPC_RETRY_BASE_DELAY,
)
from dungeondeploy.errors import (
    DecodeError,
    MissingConfiguration,
    NonceCollision,
    NotFound,
    PlanError,
    Reverted,
    RpcError,
    Timeout,
)
from dungeondeploy.log import Logger
from dungeondeploy.networks import NetworkConfig
from dungeondeploy.registry import ContractRecord
from dungeondeploy.utils import utc_now

TRANSIENT_ERRORS = (requests.exceptions.RequestException, ConnectionError, TimeoutError)


class TxOptions(NamedTuple):
    """Per-transaction overrides; unset fields are filled in by the node."""

    gas_limit: Optional[int] = None
    gas_price: Optional[int] = None
    max_fee: Optional[int] = None
    max_priority_fee: Optional[int] = None
    nonce: Optional[int] = None
    value: int = 0
    replace: bool = False

    def bumped(self) -> "TxOptions":
        """Returns a copy with every explicit fee raised enough to replace a pending transaction."""

        def bump(fee: Optional[int]) -> Optional[int]:
            if fee is None:
                return None
            return fee * FEE_BUMP_NUMERATOR // FEE_BUMP_DENOMINATOR + 1

        return self._replace(
            gas_price=bump(self.gas_price),
            max_fee=bump(self.max_fee),
            max_priority_fee=bump(self.max_priority_fee),
        )

    @property
    def has_fees(self) -> bool:
        return self.gas_price is not None or self.max_fee is not None


class TransactionHandle(NamedTuple):
    tx_hash: str
    nonce: int
    contract: str
    operation: str
    tx: Dict[str, Any]
    submitted_at: str


class Receipt(NamedTuple):
    tx_hash: str
    block_number: int
    status: int
    contract_address: Optional[ChecksumAddress]
    gas_used: int
    confirmations: int = 0


def _matches(message: str, markers) -> bool:
    message = message.lower()
    return any(marker in message for marker in markers)


def _revert_reason_from_error(error: ContractLogicError) -> Optional[str]:
    message = getattr(error, "message", None) or str(error)
    if not message:
        return None
    return message.replace("execution reverted: ", "").replace("execution reverted", "").strip() or None


class ChainClient:
    """
    JSON-RPC connection plus a single signing account.

    Reads go through eth_call; writes are signed locally and submitted raw
    with an explicitly managed nonce so sequential submissions from one
    signer never collide.
    """

    def __init__(
        self,
        w3: Web3,
        account: Optional[LocalAccount] = None,
        logger: Optional[Logger] = None,
        retry_attempts: int = RPC_RETRY_ATTEMPTS,
        retry_delay: float = RPC_RETRY_BASE_DELAY,
        retry_backoff: float = RPC_RETRY_BACKOFF,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._w3 = w3
        self._account = account
        self.logger = logger or Logger(name="client")
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self.retry_backoff = retry_backoff
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock
        self._chain_id: Optional[int] = None
        self._next_nonce: Optional[int] = None
        self._in_flight: Dict[int, str] = dict()
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: NetworkConfig, logger: Optional[Logger] = None, **kwargs) -> "ChainClient":
        w3 = Web3(HTTPProvider(config.rpc_url, request_kwargs={"timeout": 30}))
        # BSC blocks carry validator signatures in extraData
        w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        account = Account.from_key(config.private_key) if config.private_key else None
        return cls(w3=w3, account=account, logger=logger, **kwargs)

    #
    # Plumbing
    #

    def _rpc(self, description: str, fn: Callable, *args, **kwargs) -> Any:
        """Runs one RPC round-trip, retrying transport failures with exponential backoff."""
        delay = self.retry_delay
        for attempt in range(1, self.retry_attempts + 1):
            try:
                return fn(*args, **kwargs)
            except TRANSIENT_ERRORS as e:
                if attempt == self.retry_attempts:
                    raise RpcError(f"{description} failed after {attempt} attempt(s): {e}") from e
                self.logger.warning(
                    f"{description} failed; retrying in {delay:.1f}s", attempt=attempt, error=e
                )
                self._sleep(delay)
                delay *= self.retry_backoff

    def _require_account(self) -> LocalAccount:
        if self._account is None:
            raise MissingConfiguration("signer", hint="no private key configured; cannot send")
        return self._account

    def _contract(self, record: ContractRecord) -> Contract:
        return self._w3.eth.contract(address=record.address, abi=record.abi)

    @staticmethod
    def _function(contract: Contract, contract_name: str, method: str, args) -> Any:
        try:
            return getattr(contract.functions, method)(*args)
        except (Web3Exception, AttributeError, TypeError, ValueError) as e:
            raise PlanError(f"Cannot encode {contract_name}.{method}{tuple(args)}: {e}") from e

    #
    # Chain state
    #

    @property
    def address(self) -> Optional[ChecksumAddress]:
        return self._account.address if self._account else None

    @property
    def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = self._rpc("eth_chainId", lambda: self._w3.eth.chain_id)
        return self._chain_id

    def block_number(self) -> int:
        return self._rpc("eth_blockNumber", lambda: self._w3.eth.block_number)

    def gas_price(self) -> int:
        return self._rpc("eth_gasPrice", lambda: self._w3.eth.gas_price)

    def get_code(self, address: str) -> bytes:
        return bytes(self._rpc(f"eth_getCode({address})", self._w3.eth.get_code, to_checksum_address(address)))

    def get_balance(self, address: str) -> int:
        return self._rpc(
            f"eth_getBalance({address})", self._w3.eth.get_balance, to_checksum_address(address)
        )

    def get_receipt(self, tx_hash: str) -> Optional[Receipt]:
        """Single receipt lookup; None while the transaction is still pending."""
        try:
            receipt = self._rpc(
                f"eth_getTransactionReceipt({tx_hash})",
                self._w3.eth.get_transaction_receipt,
                tx_hash,
            )
        except TransactionNotFound:
            return None
        if receipt is None:
            return None
        contract_address = receipt.get("contractAddress")
        return Receipt(
            tx_hash=to_hex(receipt["transactionHash"]),
            block_number=receipt["blockNumber"],
            status=receipt["status"],
            contract_address=to_checksum_address(contract_address) if contract_address else None,
            gas_used=receipt["gasUsed"],
        )

    def get_transaction_input(self, tx_hash: str) -> str:
        """Calldata of a submitted transaction; for a deployment, bytecode followed by constructor args."""
        try:
            tx = self._rpc(f"eth_getTransactionByHash({tx_hash})", self._w3.eth.get_transaction, tx_hash)
        except TransactionNotFound:
            raise NotFound(f"Transaction {tx_hash} not found")
        return to_hex(tx["input"])

    #
    # Reads
    #

    def call(self, record: ContractRecord, method: str, *args, block_identifier="latest") -> Any:
        contract = self._contract(record)
        function = self._function(contract, record.name, method, args)
        try:
            return self._rpc(
                f"{record.name}.{method}", function.call, block_identifier=block_identifier
            )
        except BadFunctionCallOutput as e:
            raise DecodeError(
                f"{record.name}.{method} at {record.address} returned data that does not "
                f"match its ABI: {e}"
            ) from e
        except ContractLogicError as e:
            raise Reverted(
                f"{record.name}.{method} call reverted", reason=_revert_reason_from_error(e)
            ) from e

    #
    # Writes
    #

    def _reserve_nonce(self, options: TxOptions) -> int:
        with self._lock:
            if options.nonce is not None:
                nonce = options.nonce
                in_flight = self._in_flight.get(nonce)
                if in_flight and not options.replace:
                    raise NonceCollision(
                        f"Nonce {nonce} is already used by unconfirmed transaction {in_flight}",
                        nonce=nonce,
                    )
                if self._next_nonce is not None:
                    self._next_nonce = max(self._next_nonce, nonce + 1)
                return nonce

            if self._next_nonce is None:
                self._next_nonce = self._rpc(
                    "eth_getTransactionCount",
                    self._w3.eth.get_transaction_count,
                    self._require_account().address,
                    "pending",
                )
            while self._next_nonce in self._in_flight:
                self._next_nonce += 1
            nonce = self._next_nonce
            self._next_nonce += 1
            return nonce

    def reset_nonce(self) -> int:
        """
        Re-reads the nonce from the latest mined block.

        A transaction submitted afterwards reuses the nonce of any stuck
        pending transaction and therefore replaces it.
        """
        with self._lock:
            self._next_nonce = self._rpc(
                "eth_getTransactionCount",
                self._w3.eth.get_transaction_count,
                self._require_account().address,
                "latest",
            )
            # unmined nonces are handed out again
            for nonce in [n for n in self._in_flight if n >= self._next_nonce]:
                self.logger.debug(
                    f"Releasing nonce {nonce} for replacement", tx_hash=self._in_flight.pop(nonce)
                )
            return self._next_nonce

    def _tx_params(self, options: TxOptions, nonce: int) -> Dict[str, Any]:
        params = {
            "from": self._require_account().address,
            "nonce": nonce,
            "value": options.value,
            "chainId": self.chain_id,
        }
        if options.gas_limit is not None:
            params["gas"] = options.gas_limit
        if options.gas_price is not None:
            params["gasPrice"] = options.gas_price
        elif options.max_fee is not None:
            params["maxFeePerGas"] = options.max_fee
            if options.max_priority_fee is not None:
                params["maxPriorityFeePerGas"] = options.max_priority_fee
        return params

    def _submit(self, function: Any, contract_name: str, operation: str, options: TxOptions) -> TransactionHandle:
        account = self._require_account()
        nonce = self._reserve_nonce(options)
        description = f"{contract_name}.{operation}"
        try:
            tx = self._rpc(f"build {description}", function.build_transaction, self._tx_params(options, nonce))
        except ContractLogicError as e:
            self._next_nonce = None
            raise Reverted(
                f"{description} would revert (gas estimation failed)",
                reason=_revert_reason_from_error(e),
            ) from e
        except BaseException:
            self._next_nonce = None
            raise

        signed = account.sign_transaction(tx)
        try:
            tx_hash = to_hex(
                self._rpc(
                    f"eth_sendRawTransaction {description}",
                    self._w3.eth.send_raw_transaction,
                    signed.raw_transaction,
                )
            )
        except (Web3Exception, ValueError) as e:
            message = str(e)
            if _matches(message, ALREADY_KNOWN_MARKERS):
                tx_hash = to_hex(signed.hash)
                self.logger.debug(f"{description} already known to the node", tx_hash=tx_hash)
            elif _matches(message, NONCE_ERROR_MARKERS):
                self._next_nonce = None
                raise NonceCollision(
                    f"{description} rejected: nonce {nonce} is already used ({message})", nonce=nonce
                ) from e
            else:
                self._next_nonce = None
                raise RpcError(f"{description} rejected by node: {message}", retryable=False) from e
        except RpcError:
            self._next_nonce = None
            raise

        with self._lock:
            self._in_flight[nonce] = tx_hash
        self.logger.debug(f"Submitted {description}", tx_hash=tx_hash, nonce=nonce)
        return TransactionHandle(
            tx_hash=tx_hash,
            nonce=nonce,
            contract=contract_name,
            operation=operation,
            tx=dict(tx),
            submitted_at=utc_now(),
        )

    def send(
        self, record: ContractRecord, method: str, *args, options: Optional[TxOptions] = None
    ) -> TransactionHandle:
        """Signs and submits a state-changing call; returns without waiting for it to be mined."""
        contract = self._contract(record)
        function = self._function(contract, record.name, method, args)
        return self._submit(function, record.name, method, options or TxOptions())

    def deploy(
        self,
        name: str,
        contract_type: ContractType,
        *args,
        options: Optional[TxOptions] = None,
    ) -> TransactionHandle:
        """Signs and submits a contract-creation transaction."""
        factory = self._w3.eth.contract(abi=get_abi(contract_type), bytecode=get_bytecode(contract_type))
        try:
            constructor = factory.constructor(*args)
        except (Web3Exception, TypeError, ValueError) as e:
            raise PlanError(f"Cannot encode constructor arguments for {name}: {e}") from e
        return self._submit(constructor, name, "deploy", options or TxOptions())

    #
    # Confirmation
    #

    def _replay_revert_reason(self, handle: TransactionHandle, receipt: Receipt) -> Optional[str]:
        if not handle.tx:
            return None
        call_params = {k: v for k, v in handle.tx.items() if k in ("from", "to", "data", "value", "gas")}
        try:
            self._w3.eth.call(call_params, receipt.block_number)
        except ContractLogicError as e:
            return _revert_reason_from_error(e)
        except (Web3Exception, ValueError, *TRANSIENT_ERRORS) as e:
            self.logger.debug(f"Could not replay {handle.contract}.{handle.operation}", error=e)
        return None

    def await_confirmation(
        self,
        handle: TransactionHandle,
        min_confirmations: int = DEFAULT_CONFIRMATIONS,
        timeout: float = DEFAULT_CONFIRMATION_TIMEOUT,
    ) -> Receipt:
        """
        Polls until the transaction is mined with at least `min_confirmations`.

        Raises:
            Reverted: the receipt status is 0; carries the replayed revert reason.
            Timeout: no sufficiently confirmed receipt within `timeout` seconds.
        """
        deadline = self._clock() + timeout
        while True:
            receipt = self.get_receipt(handle.tx_hash)
            if receipt is not None:
                if receipt.status == 0:
                    with self._lock:
                        self._in_flight.pop(handle.nonce, None)
                    raise Reverted(
                        f"{handle.contract}.{handle.operation} reverted in tx {handle.tx_hash}",
                        reason=self._replay_revert_reason(handle, receipt),
                        tx_hash=handle.tx_hash,
                    )
                confirmations = self.block_number() - receipt.block_number + 1
                if confirmations >= min_confirmations:
                    with self._lock:
                        self._in_flight.pop(handle.nonce, None)
                    return receipt._replace(confirmations=confirmations)

            if self._clock() >= deadline:
                raise Timeout(
                    f"{handle.contract}.{handle.operation} not confirmed within {timeout}s "
                    f"(tx {handle.tx_hash}, nonce {handle.nonce})",
                    tx_hash=handle.tx_hash,
                )
            self._sleep(self.poll_interval)
