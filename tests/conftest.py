import itertools
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest
from eth_utils import keccak, to_checksum_address, to_hex

from dungeondeploy.client import Receipt, TransactionHandle, TxOptions
from dungeondeploy.constants import ZERO_ADDRESS
from dungeondeploy.errors import NotFound, Reverted, Timeout
from dungeondeploy.log import Level, Logger
from dungeondeploy.params import DeploymentPlan
from dungeondeploy.registry import Registry
from dungeondeploy.utils import dump_json

LOCAL_CHAIN_ID = 31337
DEPLOYER = to_checksum_address("0x" + "d1" * 20)
SOUL_SHARD = to_checksum_address("0x97b2c2a9a11c7b6a020b4baeaad349865ead0bcf")
BASE_URI = "https://www.dungeondelvers.xyz/api/hero/"
BYTECODE = "0x6080604052348015600f57600080fd5b50"
GAS_PRICE = 5 * 10**9
SOLC_LONG_VERSION = "0.8.20+commit.a1b79de6"
BUILD_INFO_ID = "0f3a9c2e"


# ABI helpers


def _inputs(params):
    return [{"name": name, "type": type_, "internalType": type_} for name, type_ in params]


def constructor(*params):
    return {"type": "constructor", "stateMutability": "nonpayable", "inputs": _inputs(params)}


def setter(name, type_="address"):
    return {
        "type": "function",
        "name": name,
        "stateMutability": "nonpayable",
        "inputs": _inputs([("_value", type_)]),
        "outputs": [],
    }


def view(name, type_="address"):
    return {
        "type": "function",
        "name": name,
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": type_, "internalType": type_}],
    }


ARTIFACT_ABIS = {
    "SoulShard": [view("owner")],
    "Oracle": [constructor(("_soulShardToken", "address")), view("owner")],
    "DungeonCore": [
        constructor(("initialOwner", "address"), ("_oracle", "address")),
        setter("setDungeonMaster"),
        view("dungeonMasterAddress"),
        setter("setHeroContract"),
        view("heroContractAddress"),
        view("owner"),
    ],
    "Hero": [
        constructor(("initialOwner", "address")),
        setter("setDungeonCore"),
        view("dungeonCore"),
        setter("setBaseURI", "string"),
        view("baseURI", "string"),
        view("owner"),
    ],
    "DungeonMaster": [
        constructor(("initialOwner", "address")),
        setter("setDungeonCore"),
        view("dungeonCore"),
        view("owner"),
    ],
}


def write_artifacts(directory, abis=None):
    """Writes Hardhat-style artifacts sharing one build-info file."""
    abis = abis or ARTIFACT_ABIS
    sources = dict()
    for name, abi in abis.items():
        source_name = f"contracts/{name}.sol"
        artifact_dir = directory / source_name
        artifact_dir.mkdir(parents=True, exist_ok=True)
        artifact = {"contractName": name, "sourceName": source_name, "abi": abi, "bytecode": BYTECODE}
        (artifact_dir / f"{name}.json").write_text(dump_json(artifact))
        debug = {"_format": "hh-sol-dbg-1", "buildInfo": f"../../build-info/{BUILD_INFO_ID}.json"}
        (artifact_dir / f"{name}.dbg.json").write_text(dump_json(debug))
        sources[source_name] = {"content": f"contract {name} {{}}\n"}

    build_info = {
        "_format": "hh-sol-build-info-1",
        "id": BUILD_INFO_ID,
        "solcVersion": "0.8.20",
        "solcLongVersion": SOLC_LONG_VERSION,
        "input": {
            "language": "Solidity",
            "sources": sources,
            "settings": {"optimizer": {"enabled": True, "runs": 200}},
        },
    }
    (directory / "build-info").mkdir(parents=True, exist_ok=True)
    (directory / "build-info" / f"{BUILD_INFO_ID}.json").write_text(dump_json(build_info))


def plan_config():
    return {
        "deployment": {"name": "dungeon-test", "chain_id": LOCAL_CHAIN_ID},
        "artifacts": {"dir": "artifacts"},
        "constants": {"BASE_URI": BASE_URI},
        "contracts": [
            {"SoulShard": {"address": SOUL_SHARD}},
            {"DungeonCore": {"constructor": {"initialOwner": "$deployer", "_oracle": "$Oracle"}}},
            {"Oracle": {"constructor": {"_soulShardToken": "$SoulShard"}}},
            {"DungeonMaster": {"constructor": {"initialOwner": "$deployer"}, "depends_on": ["DungeonCore"]}},
            {"Hero": {"constructor": {"initialOwner": "$deployer"}}},
        ],
        "links": [
            {"from": "DungeonCore", "to": "DungeonMaster", "setter": "setDungeonMaster", "getter": "dungeonMasterAddress"},
            {"from": "DungeonCore", "to": "Hero", "setter": "setHeroContract", "getter": "heroContractAddress"},
            {"from": "Hero", "to": "DungeonCore", "setter": "setDungeonCore", "getter": "dungeonCore"},
            {"from": "DungeonMaster", "to": "DungeonCore", "setter": "setDungeonCore", "getter": "dungeonCore"},
        ],
        "settings": [
            {"contract": "Hero", "setter": "setBaseURI", "args": ["$BASE_URI"], "getter": "baseURI"},
        ],
    }


# Fake chain client


class FakeClient:
    """
    In-memory stand-in for ChainClient.

    Setters write the value their paired getter returns once the transaction
    is confirmed; every deploy and send is counted so tests can assert how
    many transactions a run made.
    """

    def __init__(self, setters: Dict[str, str], chain_id: int = LOCAL_CHAIN_ID):
        self.setters = setters
        self.chain_id = chain_id
        self.address = DEPLOYER
        self.state: Dict[tuple, Any] = dict()
        self.code: Dict[str, bytes] = dict()
        self.receipts: Dict[str, Receipt] = dict()
        self.inputs: Dict[str, str] = dict()
        self.balance = 10**18
        self.block = 100
        self.deploys: List[str] = list()
        self.sends: List[tuple] = list()
        self.attempts: List[Tuple[TransactionHandle, Optional[TxOptions]]] = list()
        self.errors: Dict[str, List[Exception]] = dict()
        self.await_errors: Dict[str, List[Exception]] = dict()
        self.call_errors: Dict[tuple, Exception] = dict()
        self.nonce_resets = 0
        self._effects: Dict[str, Callable[[], None]] = dict()
        self._hashes = itertools.count()
        self._next_nonce = 0
        self._latest_nonce = 0

    @classmethod
    def for_plan(cls, plan: DeploymentPlan, **kwargs) -> "FakeClient":
        setters = {link.setter: link.getter for link in plan.links}
        setters.update({setting.setter: setting.getter for setting in plan.settings})
        return cls(setters, **kwargs)

    @property
    def transactions(self) -> int:
        return len(self.deploys) + len(self.sends)

    def _pop_error(self, errors, key):
        queue = errors.get(key)
        if queue:
            raise queue.pop(0)

    def _handle(self, contract, operation, tx) -> TransactionHandle:
        nonce = self._next_nonce
        self._next_nonce += 1
        tx_hash = to_hex(keccak(text=f"{contract}.{operation}.{next(self._hashes)}"))
        return TransactionHandle(
            tx_hash=tx_hash,
            nonce=nonce,
            contract=contract,
            operation=operation,
            tx=tx,
            submitted_at="2026-01-01T00:00:00+00:00",
        )

    def _mine(self, handle, contract_address=None, status=1):
        self.block += 1
        self.receipts[handle.tx_hash] = Receipt(
            tx_hash=handle.tx_hash,
            block_number=self.block,
            status=status,
            contract_address=contract_address,
            gas_used=21000,
            confirmations=1,
        )

    def deploy(self, name, contract_type, *args, options=None):
        self._pop_error(self.errors, name)
        address = to_checksum_address(keccak(text=f"{name}-{len(self.deploys)}")[-20:])
        self.deploys.append(name)
        handle = self._handle(name, "deploy", {"args": args})
        # stands in for the ABI-encoded constructor arguments
        self.inputs[handle.tx_hash] = BYTECODE + to_hex(keccak(text=f"{name}.constructor"))[2:]

        def effect():
            self.code[address.lower()] = bytes.fromhex(BYTECODE[2:])
            self.state[(address.lower(), "owner")] = self.address

        self._effects[handle.tx_hash] = effect
        self._mine(handle, contract_address=address)
        return handle

    def send(self, record, method, *args, options=None):
        self._pop_error(self.errors, f"{record.name}.{method}")
        self.sends.append((record.name, method, args))
        handle = self._handle(record.name, method, {"args": args})
        self.attempts.append((handle, options))
        getter = self.setters.get(method)
        if getter:
            value = args[0] if len(args) == 1 else list(args)
            self._effects[handle.tx_hash] = lambda: self.state.__setitem__((record.address.lower(), getter), value)
        self._mine(handle)
        return handle

    def await_confirmation(self, handle, min_confirmations=1, timeout=300):
        self._pop_error(self.await_errors, f"{handle.contract}.{handle.operation}")
        receipt = self.receipts.get(handle.tx_hash)
        if receipt is None:
            raise Timeout(f"{handle.contract}.{handle.operation} not confirmed", tx_hash=handle.tx_hash)
        if receipt.status == 0:
            raise Reverted(f"{handle.contract}.{handle.operation} reverted", tx_hash=handle.tx_hash)
        self._latest_nonce = max(self._latest_nonce, handle.nonce + 1)
        effect = self._effects.pop(handle.tx_hash, None)
        if effect is not None:
            effect()
        return receipt

    def call(self, record, method, *args, block_identifier="latest"):
        error = self.call_errors.get((record.name, method))
        if error is not None:
            raise error
        return self.state.get((record.address.lower(), method), ZERO_ADDRESS)

    def get_code(self, address):
        return self.code.get(address.lower(), b"")

    def get_balance(self, address):
        return self.balance

    def get_receipt(self, tx_hash):
        return self.receipts.get(tx_hash)

    def get_transaction_input(self, tx_hash):
        try:
            return self.inputs[tx_hash]
        except KeyError:
            raise NotFound(f"Transaction {tx_hash} not found")

    def gas_price(self):
        return GAS_PRICE

    def reset_nonce(self):
        self.nonce_resets += 1
        self._next_nonce = self._latest_nonce
        return self._next_nonce

    def set_value(self, record, getter, value):
        self.state[(record.address.lower(), getter)] = value


# Fixtures


@pytest.fixture
def logger():
    return Logger(name="test", level=Level.DEBUG)


@pytest.fixture
def artifacts_dir(tmp_path):
    directory = tmp_path / "artifacts"
    write_artifacts(directory)
    return directory


@pytest.fixture
def plan(tmp_path, artifacts_dir):
    return DeploymentPlan.from_config(plan_config(), path=tmp_path / "plan.yml")


@pytest.fixture
def registry_filepath(tmp_path):
    return tmp_path / "registries" / "local.json"


@pytest.fixture
def registry(registry_filepath):
    return Registry.create(registry_filepath, network="local", chain_id=LOCAL_CHAIN_ID)


@pytest.fixture
def fake_client(plan):
    client = FakeClient.for_plan(plan)
    client.code[SOUL_SHARD.lower()] = b"\x60\x80"
    return client
