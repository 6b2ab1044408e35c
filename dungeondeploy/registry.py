import json
import os
import shutil
import socket
from collections import OrderedDict, defaultdict
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional, Set

import click
from eth_typing import ABI, ChecksumAddress
from eth_utils import to_checksum_address

from dungeondeploy.constants import LOCK_SUFFIX, SOURCE_VERIFIED
from dungeondeploy.errors import ConcurrentRunDetected, NotFound
from dungeondeploy.utils import _load_json, addresses_equal, dump_json, utc_now, write_text_atomic

ChainId = int
ContractName = str


class ContractRecord(NamedTuple):
    """A single deployed (or externally provided) contract instance."""

    chain_id: ChainId
    name: ContractName
    address: ChecksumAddress
    abi: ABI
    block_number: Optional[int] = None
    tx_hash: Optional[str] = None
    deployer: Optional[str] = None


class LinkSpec(NamedTuple):
    """A required cross-contract reference: from_contract.getter() == to_contract.address"""

    from_contract: ContractName
    to_contract: ContractName
    setter: str
    getter: str

    @property
    def key(self) -> str:
        return f"{self.from_contract}.{self.setter}"


class AppliedLink(NamedTuple):
    key: str
    to_contract: ContractName
    address: ChecksumAddress
    tx_hash: Optional[str]
    block_number: Optional[int]
    applied_at: str
    getter: Optional[str] = None

    def to_spec(self) -> Optional[LinkSpec]:
        if self.getter is None:
            return None
        from_contract, setter = self.key.split(".", 1)
        return LinkSpec(from_contract, self.to_contract, setter, self.getter)


class AppliedSetting(NamedTuple):
    key: str
    args: List[Any]
    tx_hash: Optional[str]
    block_number: Optional[int]
    applied_at: str


class SourceVerification(NamedTuple):
    """Outcome of publishing a contract's source to the block explorer."""

    name: ContractName
    address: ChecksumAddress
    status: str
    guid: Optional[str]
    message: str
    submitted_at: str


class PendingTransaction(NamedTuple):
    """A submitted transaction whose outcome was never observed."""

    tx_hash: str
    nonce: int
    contract: ContractName
    operation: str
    kind: str
    submitted_at: str


class ChangeKind(Enum):
    ADDED = "added"
    REMOVED = "removed"
    ADDRESS = "address"
    ABI = "abi"


class RegistryChange(NamedTuple):
    kind: ChangeKind
    name: ContractName
    old: Optional[str]
    new: Optional[str]


def _sorted_abi(abi: ABI) -> ABI:
    entry_abi = list(abi)
    entry_abi.sort(key=lambda d: (d["type"], d.get("name", "")))
    return entry_abi


def _record_to_json(record: ContractRecord) -> Dict[str, Any]:
    data = OrderedDict(address=record.address, abi=_sorted_abi(record.abi))
    if record.tx_hash is not None:
        data["tx_hash"] = record.tx_hash
    if record.block_number is not None:
        data["block_number"] = int(record.block_number)
    if record.deployer is not None:
        data["deployer"] = record.deployer
    return data


def _record_from_json(chain_id: ChainId, name: ContractName, artifacts: Dict) -> ContractRecord:
    block_number = artifacts.get("block_number")
    return ContractRecord(
        chain_id=chain_id,
        name=name,
        address=to_checksum_address(artifacts["address"]),
        abi=artifacts.get("abi", list()),
        block_number=int(block_number) if block_number is not None else None,
        tx_hash=artifacts.get("tx_hash"),
        deployer=artifacts.get("deployer"),
    )


def _is_sectioned(chain_data: Dict) -> bool:
    # legacy registries map contract names directly under the chain id
    return "contracts" in chain_data and isinstance(chain_data["contracts"], dict)


class Registry:
    """
    Persisted source of truth mapping contract names to addresses and ABIs for one network.

    Every mutation is written back to disk before the mutating call returns.
    Other chains stored in the same file are preserved untouched.
    """

    def __init__(
        self,
        filepath: Path,
        chain_id: ChainId,
        network: str,
        contracts: Optional[Dict[ContractName, ContractRecord]] = None,
        links: Optional[Dict[str, AppliedLink]] = None,
        settings: Optional[Dict[str, AppliedSetting]] = None,
        pending: Optional[Dict[str, PendingTransaction]] = None,
        sources: Optional[Dict[ContractName, SourceVerification]] = None,
        version: int = 0,
    ):
        self.filepath = Path(filepath)
        self.chain_id = chain_id
        self.network = network
        self.contracts = contracts or dict()
        self.links = links or dict()
        self.settings = settings or dict()
        self.pending = pending or dict()
        self.sources = sources or dict()
        self.version = version

    #
    # Loading
    #

    @classmethod
    def load(cls, filepath: Path, network: str, chain_id: ChainId) -> "Registry":
        """Loads the snapshot for a chain; raises NotFound if none was ever written."""
        filepath = Path(filepath)
        if not filepath.exists():
            raise NotFound(f"No registry found at {filepath}")
        data = _load_json(filepath)
        chain_data = data.get(str(chain_id))
        if chain_data is None:
            raise NotFound(f"Registry {filepath} has no entries for chain {chain_id} ({network})")
        return cls.from_json(filepath=filepath, chain_id=chain_id, network=network, data=chain_data)

    @classmethod
    def create(cls, filepath: Path, network: str, chain_id: ChainId) -> "Registry":
        registry = cls(filepath=filepath, chain_id=chain_id, network=network)
        registry._persist()
        return registry

    @classmethod
    def load_or_create(cls, filepath: Path, network: str, chain_id: ChainId) -> "Registry":
        try:
            return cls.load(filepath=filepath, network=network, chain_id=chain_id)
        except NotFound:
            return cls.create(filepath=filepath, network=network, chain_id=chain_id)

    @classmethod
    def from_json(cls, filepath: Path, chain_id: ChainId, network: str, data: Dict) -> "Registry":
        if not _is_sectioned(data):
            data = {"contracts": data}

        contracts = {
            name: _record_from_json(chain_id, name, artifacts)
            for name, artifacts in data["contracts"].items()
        }
        links = {
            key: AppliedLink(
                key=key,
                to_contract=entry["to"],
                address=entry["address"],
                tx_hash=entry.get("tx_hash"),
                block_number=entry.get("block_number"),
                applied_at=entry["applied_at"],
                getter=entry.get("getter"),
            )
            for key, entry in data.get("links", dict()).items()
        }
        settings = {
            key: AppliedSetting(
                key=key,
                args=entry.get("args", list()),
                tx_hash=entry.get("tx_hash"),
                block_number=entry.get("block_number"),
                applied_at=entry["applied_at"],
            )
            for key, entry in data.get("settings", dict()).items()
        }
        pending = {
            tx_hash: PendingTransaction(tx_hash=tx_hash, **entry)
            for tx_hash, entry in data.get("pending", dict()).items()
        }
        sources = {
            name: SourceVerification(name=name, **entry)
            for name, entry in data.get("sources", dict()).items()
        }
        return cls(
            filepath=filepath,
            chain_id=chain_id,
            network=data.get("network", network),
            contracts=contracts,
            links=links,
            settings=settings,
            pending=pending,
            sources=sources,
            version=int(data.get("version", 0)),
        )

    def to_json(self) -> Dict[str, Any]:
        data = OrderedDict()
        data["network"] = self.network
        data["version"] = self.version
        data["contracts"] = OrderedDict(
            (name, _record_to_json(self.contracts[name])) for name in sorted(self.contracts)
        )
        data["links"] = OrderedDict(
            (
                key,
                OrderedDict(
                    to=link.to_contract,
                    address=link.address,
                    tx_hash=link.tx_hash,
                    block_number=link.block_number,
                    applied_at=link.applied_at,
                    getter=link.getter,
                ),
            )
            for key, link in sorted(self.links.items())
        )
        data["settings"] = OrderedDict(
            (
                key,
                OrderedDict(
                    args=setting.args,
                    tx_hash=setting.tx_hash,
                    block_number=setting.block_number,
                    applied_at=setting.applied_at,
                ),
            )
            for key, setting in sorted(self.settings.items())
        )
        data["pending"] = OrderedDict(
            (tx_hash, OrderedDict((k, v) for k, v in tx._asdict().items() if k != "tx_hash"))
            for tx_hash, tx in sorted(self.pending.items())
        )
        data["sources"] = OrderedDict(
            (name, OrderedDict((k, v) for k, v in verification._asdict().items() if k != "name"))
            for name, verification in sorted(self.sources.items())
        )
        return data

    #
    # Queries
    #

    def __contains__(self, name: ContractName) -> bool:
        return name in self.contracts

    def __len__(self) -> int:
        return len(self.contracts)

    def get(self, name: ContractName) -> ContractRecord:
        try:
            return self.contracts[name]
        except KeyError:
            raise NotFound(
                f"Contract '{name}' not found in registry '{self.filepath}' for chain {self.chain_id}"
            )

    @property
    def records(self) -> List[ContractRecord]:
        return [self.contracts[name] for name in sorted(self.contracts)]

    def addresses(self) -> Dict[ContractName, ChecksumAddress]:
        return {record.name: record.address for record in self.records}

    def link_specs(self) -> List[LinkSpec]:
        """Links recorded with their getter, so they can be verified without the plan."""
        specs = [link.to_spec() for _, link in sorted(self.links.items())]
        return [spec for spec in specs if spec is not None]

    def is_link_applied(self, spec: LinkSpec) -> bool:
        applied = self.links.get(spec.key)
        if applied is None or spec.to_contract not in self.contracts:
            return False
        return applied.address.lower() == self.contracts[spec.to_contract].address.lower()

    def is_source_verified(self, name: ContractName) -> bool:
        """True once the explorer accepted the source of the currently recorded address."""
        verification = self.sources.get(name)
        if verification is None or name not in self.contracts:
            return False
        if verification.status != SOURCE_VERIFIED:
            return False
        return addresses_equal(verification.address, self.contracts[name].address)

    def snapshot(self) -> "Registry":
        """Returns a detached copy that is never persisted."""
        return Registry(
            filepath=self.filepath,
            chain_id=self.chain_id,
            network=self.network,
            contracts=dict(self.contracts),
            links=dict(self.links),
            settings=dict(self.settings),
            pending=dict(self.pending),
            sources=dict(self.sources),
            version=self.version,
        )

    def diff(self, other: "Registry") -> Set[RegistryChange]:
        """Changes that turn `other` into this registry (contracts only)."""
        changes = set()
        for name in set(self.contracts) | set(other.contracts):
            mine, theirs = self.contracts.get(name), other.contracts.get(name)
            if theirs is None:
                changes.add(RegistryChange(ChangeKind.ADDED, name, None, mine.address))
            elif mine is None:
                changes.add(RegistryChange(ChangeKind.REMOVED, name, theirs.address, None))
            else:
                if mine.address.lower() != theirs.address.lower():
                    changes.add(
                        RegistryChange(ChangeKind.ADDRESS, name, theirs.address, mine.address)
                    )
                if _sorted_abi(mine.abi) != _sorted_abi(theirs.abi):
                    changes.add(RegistryChange(ChangeKind.ABI, name, None, None))
        return changes

    #
    # Mutations (each persists immediately)
    #

    def record_deployment(self, record: ContractRecord) -> None:
        if record.chain_id != self.chain_id:
            raise ValueError(
                f"Cannot record {record.name} for chain {record.chain_id} "
                f"in registry for chain {self.chain_id}"
            )
        record = record._replace(address=to_checksum_address(record.address))
        self.contracts[record.name] = record
        self._persist()

    def record_link(
        self,
        spec: LinkSpec,
        resolved_address: str,
        tx_hash: Optional[str] = None,
        block_number: Optional[int] = None,
    ) -> AppliedLink:
        applied = AppliedLink(
            key=spec.key,
            to_contract=spec.to_contract,
            address=to_checksum_address(resolved_address),
            tx_hash=tx_hash,
            block_number=block_number,
            applied_at=utc_now(),
            getter=spec.getter,
        )
        self.links[spec.key] = applied
        self._persist()
        return applied

    def record_setting(
        self,
        key: str,
        args: List[Any],
        tx_hash: Optional[str] = None,
        block_number: Optional[int] = None,
    ) -> AppliedSetting:
        applied = AppliedSetting(
            key=key, args=list(args), tx_hash=tx_hash, block_number=block_number, applied_at=utc_now()
        )
        self.settings[key] = applied
        self._persist()
        return applied

    def record_pending(self, tx: PendingTransaction) -> None:
        self.pending[tx.tx_hash] = tx
        self._persist()

    def clear_pending(self, tx_hash: str) -> None:
        if self.pending.pop(tx_hash, None) is not None:
            self._persist()

    def record_source_verification(
        self, name: ContractName, status: str, guid: Optional[str] = None, message: str = ""
    ) -> SourceVerification:
        verification = SourceVerification(
            name=name,
            address=self.get(name).address,
            status=status,
            guid=guid,
            message=message,
            submitted_at=utc_now(),
        )
        self.sources[name] = verification
        self._persist()
        return verification

    def _persist(self) -> None:
        self.version += 1
        data = dict()
        if self.filepath.exists():
            data = _load_json(self.filepath)
        data[str(self.chain_id)] = self.to_json()
        ordered = OrderedDict((chain_id, data[chain_id]) for chain_id in sorted(data, key=int))
        write_text_atomic(self.filepath, dump_json(ordered))


#
# Locking
#


class RegistryLock:
    """
    Exclusive advisory lock held for the duration of a deployment run.

    The lock file records the holder so a second operator can see who is
    running. A lock left behind by a dead process on this host is reclaimed.
    """

    def __init__(self, registry_filepath: Path):
        registry_filepath = Path(registry_filepath)
        self.filepath = registry_filepath.with_name(registry_filepath.name + LOCK_SUFFIX)
        self._held = False

    def _holder(self) -> Dict[str, Any]:
        try:
            return _load_json(self.filepath)
        except (OSError, ValueError):
            return dict()

    def _is_stale(self, holder: Dict[str, Any]) -> bool:
        if holder.get("host") != socket.gethostname():
            return False
        pid = holder.get("pid")
        if not isinstance(pid, int):
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return True
        except PermissionError:
            return False
        return False

    def acquire(self) -> None:
        self.filepath.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.filepath, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            holder = self._holder()
            if self._is_stale(holder):
                self.filepath.unlink()
                return self.acquire()
            raise ConcurrentRunDetected(
                f"Registry is locked by another run "
                f"(pid={holder.get('pid')}, host={holder.get('host')}, "
                f"since={holder.get('started_at')}); "
                f"remove {self.filepath} only if no other run is active"
            )
        with os.fdopen(fd, "w") as file:
            json.dump(
                {"pid": os.getpid(), "host": socket.gethostname(), "started_at": utc_now()}, file
            )
        self._held = True

    def release(self) -> None:
        if self._held:
            self.filepath.unlink(missing_ok=True)
            self._held = False

    def __enter__(self) -> "RegistryLock":
        self.acquire()
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()


#
# Whole-file helpers
#


def read_registry(filepath: Path) -> List[ContractRecord]:
    data = _load_json(filepath)
    registry_entries = list()
    for chain_id, chain_data in data.items():
        contracts = chain_data["contracts"] if _is_sectioned(chain_data) else chain_data
        for contract_name, artifacts in contracts.items():
            registry_entries.append(_record_from_json(int(chain_id), contract_name, artifacts))
    return registry_entries


def read_registries(filepath: Path) -> Dict[ChainId, Registry]:
    """Returns every chain section of a registry file."""
    data = _load_json(filepath)
    registries = dict()
    for chain_id, chain_data in data.items():
        network = chain_data.get("network", chain_id) if _is_sectioned(chain_data) else chain_id
        registries[int(chain_id)] = Registry.from_json(
            filepath=filepath, chain_id=int(chain_id), network=network, data=chain_data
        )
    return registries


def write_registries(registries: List[Registry], filepath: Path) -> Path:
    """Writes whole registries to a file, replacing its contents."""
    data = OrderedDict()
    for registry in sorted(registries, key=lambda r: r.chain_id):
        data[str(registry.chain_id)] = registry.to_json()
    write_text_atomic(Path(filepath), dump_json(data))
    return Path(filepath)


class ConflictResolution(Enum):
    USE_1 = 1
    USE_2 = 2


def _select_conflict_resolution(
    registry_1_entry, registry_1_filepath, registry_2_entry, registry_2_filepath
) -> ConflictResolution:
    print(
        f"\n! Conflict detected for {registry_1_entry.name} "
        f"on chain id {registry_1_entry.chain_id}:"
    )
    print(
        f"[1]: {registry_1_entry.name} at {registry_1_entry.address} " f"for {registry_1_filepath}"
    )
    print(
        f"[2]: {registry_2_entry.name} at {registry_2_entry.address} " f"for {registry_2_filepath}"
    )
    print("[A]: Abort merge")

    valid_str_answers = [
        str(ConflictResolution.USE_1.value),
        str(ConflictResolution.USE_2.value),
        "A",
    ]
    answer = None
    while answer not in valid_str_answers:
        answer = input(f"Merge resolution, {valid_str_answers}? ")

    if answer == "A":
        print("Merge Aborted!")
        raise click.Abort()
    return ConflictResolution(int(answer))


def merge_registries(
    registry_1_filepath: Path,
    registry_2_filepath: Path,
    output_filepath: Path,
    deprecated_contracts: Optional[List[ContractName]] = None,
) -> Path:
    """Merges two registry files; conflicting contract entries are resolved interactively."""
    deprecated_contracts = deprecated_contracts or []

    reg1 = read_registries(registry_1_filepath)
    reg2 = read_registries(registry_2_filepath)

    merged: List[Registry] = list()
    for chain_id in sorted(set(reg1) | set(reg2)):
        first, second = reg1.get(chain_id), reg2.get(chain_id)
        base = (first if first is not None else second).snapshot()
        base.filepath = Path(output_filepath)
        if first is not None and second is not None:
            base.links.update(second.links)
            base.settings.update(second.settings)
            base.pending.update(second.pending)
            base.sources.update(second.sources)
            base.version = max(first.version, second.version)
            for name in sorted(set(first.contracts) | set(second.contracts)):
                entry_1, entry_2 = first.contracts.get(name), second.contracts.get(name)
                if entry_1 and entry_2 and entry_1 != entry_2:
                    resolution = _select_conflict_resolution(
                        registry_1_entry=entry_1,
                        registry_2_entry=entry_2,
                        registry_1_filepath=registry_1_filepath,
                        registry_2_filepath=registry_2_filepath,
                    )
                    selected = entry_1 if resolution == ConflictResolution.USE_1 else entry_2
                else:
                    selected = entry_1 or entry_2
                base.contracts[name] = selected

        for name in deprecated_contracts:
            base.contracts.pop(name, None)
            base.sources.pop(name, None)
        merged.append(base)

    write_registries(merged, output_filepath)
    print(f"Merged registry output to {output_filepath}")
    return Path(output_filepath)


def normalize_registry(filepath: Path) -> None:
    """Rewrites a registry (including legacy flat registries) in the standard format."""
    try:
        registries = read_registries(filepath=filepath)
    except Exception:
        print(f"Error when reading registry at {filepath}.")
        raise

    temp_filepath = Path(filepath).with_suffix(".temp.json")
    try:
        write_registries(list(registries.values()), temp_filepath)
        shutil.copy(temp_filepath, filepath)
        print(f"Successfully normalized registry at {filepath}.")
    except Exception:
        print(f"Error when normalizing registry at {filepath}.")
        raise
    finally:
        temp_filepath.unlink(missing_ok=True)


def registry_entries_by_chain(filepath: Path) -> Dict[ChainId, List[ContractRecord]]:
    grouped = defaultdict(list)
    for entry in read_registry(filepath):
        grouped[entry.chain_id].append(entry)
    return dict(grouped)
