from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional

from eth_typing import ABI
from ethpm_types import ContractType, MethodABI

from dungeondeploy.errors import NotFound, PlanError
from dungeondeploy.utils import _load_json


def _normalize_bytecode(raw) -> Optional[str]:
    """Hardhat stores a hex string; Foundry nests it under 'object'."""
    if isinstance(raw, dict):
        raw = raw.get("object")
    if not raw:
        return None
    if not raw.startswith("0x"):
        raw = f"0x{raw}"
    return raw


def contract_type_from_artifact(name: str, data: Dict) -> ContractType:
    """Builds a ContractType from a Hardhat or Foundry compiled artifact."""
    if "abi" not in data:
        raise PlanError(f"Artifact for {name} has no 'abi' field.")
    payload = {"contractName": data.get("contractName", name), "abi": data["abi"]}
    bytecode = _normalize_bytecode(data.get("bytecode"))
    if bytecode:
        payload["deploymentBytecode"] = {"bytecode": bytecode}
    return ContractType.model_validate(payload)


def contract_type_from_abi(name: str, abi: ABI) -> ContractType:
    return ContractType.model_validate({"contractName": name, "abi": list(abi)})


def get_bytecode(contract_type: ContractType) -> str:
    bytecode = None
    if contract_type.deployment_bytecode:
        bytecode = contract_type.deployment_bytecode.bytecode
    if not bytecode or bytecode == "0x":
        raise PlanError(f"{contract_type.name} has no deployment bytecode; is it abstract?")
    return bytecode


def get_abi(contract_type: ContractType) -> ABI:
    """Returns the ABI of a contract type as plain JSON-compatible dicts."""
    contract_abi = list()
    for entry in contract_type.abi:
        contract_abi.append(entry.model_dump(mode="json", by_alias=True, exclude_none=True))
    return contract_abi


def find_view_method(contract_type: ContractType, name: str, num_args: int = 0) -> Optional[MethodABI]:
    """Returns the view method called `name` taking `num_args` inputs, if any."""
    for method in contract_type.view_methods:
        if method.name == name and len(method.inputs) == num_args:
            return method
    return None


def find_methods(contract_type: ContractType, name: str) -> List[MethodABI]:
    return [method for method in contract_type.methods if method.name == name]


class SourceInfo(NamedTuple):
    """What a block explorer needs to rebuild a contract from source."""

    source_name: str
    contract_name: str
    compiler_version: str
    standard_json_input: Dict[str, Any]

    @property
    def qualified_name(self) -> str:
        return f"{self.source_name}:{self.contract_name}"


class ArtifactStore:
    """
    Locates compiled contract artifacts below a directory.

    Hardhat writes artifacts/contracts/<File>.sol/<Name>.json plus a
    <Name>.dbg.json sidecar; Foundry writes out/<File>.sol/<Name>.json.
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self._cache: Dict[str, ContractType] = dict()

    def _find_artifact_path(self, artifact_name: str) -> Path:
        if not self.directory.exists():
            raise NotFound(f"Artifacts directory {self.directory} does not exist.")
        candidates = sorted(
            path
            for path in self.directory.rglob(f"{artifact_name}.json")
            if not path.name.endswith(".dbg.json")
        )
        if not candidates:
            raise NotFound(f"No compiled artifact named {artifact_name} below {self.directory}.")
        if len(candidates) > 1:
            raise PlanError(
                f"Artifact {artifact_name} is ambiguous - found {len(candidates)} candidates: "
                f"{', '.join(str(c) for c in candidates)}"
            )
        return candidates[0]

    def get(self, artifact_name: str) -> ContractType:
        if artifact_name not in self._cache:
            filepath = self._find_artifact_path(artifact_name)
            self._cache[artifact_name] = contract_type_from_artifact(
                artifact_name, _load_json(filepath)
            )
        return self._cache[artifact_name]

    def __contains__(self, artifact_name: str) -> bool:
        try:
            self.get(artifact_name)
        except NotFound:
            return False
        return True

    def get_source(self, artifact_name: str) -> SourceInfo:
        """
        Reads the compiler input of an artifact from its Hardhat build-info file.

        The <Name>.dbg.json sidecar points at build-info/<id>.json, which holds
        the full standard JSON input and the long solc version.
        """
        filepath = self._find_artifact_path(artifact_name)
        artifact = _load_json(filepath)
        debug_filepath = filepath.with_name(f"{filepath.stem}.dbg.json")
        if not debug_filepath.exists():
            raise NotFound(f"No build info for {artifact_name}; {debug_filepath.name} is missing.")
        build_info_filepath = (debug_filepath.parent / _load_json(debug_filepath)["buildInfo"]).resolve()
        if not build_info_filepath.exists():
            raise NotFound(f"Build info {build_info_filepath} of {artifact_name} does not exist.")

        build_info = _load_json(build_info_filepath)
        source_name = artifact.get("sourceName")
        if not source_name or source_name not in build_info["input"].get("sources", dict()):
            raise PlanError(f"Build info of {artifact_name} does not contain its source {source_name}.")
        return SourceInfo(
            source_name=source_name,
            contract_name=artifact.get("contractName", artifact_name),
            compiler_version=f"v{build_info['solcLongVersion']}",
            standard_json_input=build_info["input"],
        )
