import typing
from abc import ABC, abstractmethod
from collections import OrderedDict
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional, Set

from eth_utils import is_address, to_checksum_address
from ethpm_types import ContractType, MethodABI
from web3 import Web3

from dungeondeploy.artifacts import ArtifactStore, find_methods, find_view_method
from dungeondeploy.constants import DEFAULT_ARTIFACTS_DIR, ZERO_ADDRESS
from dungeondeploy.errors import NotFound, PlanError
from dungeondeploy.registry import LinkSpec
from dungeondeploy.utils import _load_yaml

CONTRACT_CONSTRUCTOR_PARAMETER_KEY = "constructor"
CONTRACT_DEPENDENCIES_KEY = "depends_on"
CONTRACT_ARTIFACT_KEY = "artifact"
CONTRACT_ADDRESS_KEY = "address"

KNOWN_CONTRACT_KEYS = {
    CONTRACT_CONSTRUCTOR_PARAMETER_KEY,
    CONTRACT_DEPENDENCIES_KEY,
    CONTRACT_ARTIFACT_KEY,
    CONTRACT_ADDRESS_KEY,
}

# encodability checks need no provider
_w3 = Web3()


class VariableContext:
    def __init__(
        self,
        contract_names: List[str],
        contract_name: str,
        constants: typing.Dict[str, Any] = None,
    ):
        self.contract_names = contract_names or list()
        self.contract_name = contract_name
        self.constants = constants or dict()


class Resolver:
    """
    Supplies the runtime values variables resolve to.

    In eager mode (used to validate a plan before anything is sent)
    contracts that are not deployed yet resolve to the zero address.
    """

    def __init__(
        self,
        deployer: Optional[str],
        addresses: typing.Dict[str, str],
        eager: bool = False,
    ):
        self.deployer = deployer
        self.addresses = addresses
        self.eager = eager

    @classmethod
    def for_validation(cls, deployer: Optional[str] = None) -> "Resolver":
        return cls(deployer=deployer, addresses=dict(), eager=True)


# Variables


class Variable(ABC):
    VARIABLE_PREFIX = "$"

    @abstractmethod
    def resolve(self, resolver: Resolver) -> Any:
        raise NotImplementedError

    @classmethod
    def is_variable(cls, param: Any) -> bool:
        """Returns True if the param is a variable."""
        result = isinstance(param, str) and param.startswith(cls.VARIABLE_PREFIX)
        return result


class DeployerAccount(Variable):
    DEPLOYER_INDICATOR = "deployer"

    @classmethod
    def is_deployer(cls, value: str) -> bool:
        """Returns True if the variable is a special deployer variable."""
        return value == cls.DEPLOYER_INDICATOR

    def resolve(self, resolver: Resolver) -> Any:
        if resolver.deployer is None:
            return ZERO_ADDRESS
        return resolver.deployer

    def __repr__(self) -> str:
        return "$deployer"


class Constant(Variable):
    def __init__(self, constant_name: str, context: VariableContext):
        try:
            self.constant_value = context.constants[constant_name]
        except KeyError:
            raise PlanError(
                f"Constant '{constant_name}' used by {context.contract_name} "
                f"not found in deployment file."
            )
        self.constant_name = constant_name

    @classmethod
    def is_constant(cls, value: str) -> bool:
        """Returns True if the variable is a deployment constant."""
        return value.isupper()

    def resolve(self, resolver: Resolver) -> Any:
        return self.constant_value

    def __repr__(self) -> str:
        return f"${self.constant_name}"


class ContractReference(Variable):
    """Resolves to the address of another contract in the plan."""

    def __init__(self, contract_name: str, context: VariableContext):
        if contract_name not in context.contract_names:
            raise PlanError(
                f"Contract name {contract_name} referenced by {context.contract_name} not found"
            )
        self.contract_name = contract_name

    def resolve(self, resolver: Resolver) -> Any:
        """Resolves a contract address."""
        address = resolver.addresses.get(self.contract_name)
        if address is not None:
            return address
        if resolver.eager:
            return ZERO_ADDRESS
        raise PlanError(f"Contract {self.contract_name} is referenced before it was deployed")

    def __repr__(self) -> str:
        return f"${self.contract_name}"


def _resolve_param(value: Any, resolver: Resolver) -> Any:
    """Resolves a single parameter value or a list of parameter values."""
    if isinstance(value, list):
        return [_resolve_param(v, resolver) for v in value]

    if isinstance(value, Variable):
        return value.resolve(resolver)

    return value  # literally a value


def _resolve_params(parameters: OrderedDict, resolver: Resolver) -> OrderedDict:
    resolved_parameters = OrderedDict()
    for name, value in parameters.items():
        resolved_parameters[name] = _resolve_param(value, resolver)

    return resolved_parameters


def _variable_from_value(variable: Any, context: VariableContext) -> Variable:
    variable = variable[len(Variable.VARIABLE_PREFIX) :]
    if DeployerAccount.is_deployer(variable):
        return DeployerAccount()
    elif Constant.is_constant(variable):
        return Constant(variable, context)
    else:
        return ContractReference(variable, context)


def _process_raw_value(value: Any, variable_context: VariableContext) -> Any:
    if isinstance(value, list):
        return [_process_raw_value(v, variable_context) for v in value]

    if Variable.is_variable(value):
        value = _variable_from_value(value, variable_context)

    return value


def _process_raw_values(values: typing.Dict, variable_context: VariableContext) -> OrderedDict:
    processed_parameters = OrderedDict()
    for name, value in values.items():
        processed_parameters[name] = _process_raw_value(value, variable_context)

    return processed_parameters


def _contract_references(value: Any) -> Set[str]:
    if isinstance(value, list):
        references = set()
        for v in value:
            references |= _contract_references(v)
        return references
    if isinstance(value, ContractReference):
        return {value.contract_name}
    return set()


def _get_contract_names(config: typing.Dict) -> List[str]:
    contract_names = list()
    for contract_info in config["contracts"]:
        if isinstance(contract_info, str):
            contract_names.append(contract_info)
        elif isinstance(contract_info, dict) and len(contract_info) == 1:
            contract_names.extend(list(contract_info.keys()))
        else:
            raise PlanError(f"Malformed contract entry in deployment file: {contract_info!r}")

    duplicates = {name for name in contract_names if contract_names.count(name) > 1}
    if duplicates:
        raise PlanError(f"Contracts declared more than once: {', '.join(sorted(duplicates))}")
    return contract_names


def _validate_method_args(
    method_abis: List[MethodABI], args: typing.Sequence[Any]
) -> typing.Dict[str, Any]:
    """Validates the transaction arguments against the function ABI."""
    if len(method_abis) == 0:
        raise PlanError("No method abis provided for validation of args")

    abis_matching_args_length = [abi for abi in method_abis if len(abi.inputs) == len(args)]
    for abi in abis_matching_args_length:
        named_args = {}
        for arg, abi_input in zip(args, abi.inputs):
            if not _w3.is_encodable(abi_input.type, arg):
                break
            named_args[abi_input.name] = arg
        else:
            return named_args
    raise PlanError(
        f"Could not find ABI for '{method_abis[0].name}' with {len(args)} arg(s) and given type(s)"
    )


def _validate_constructor_abi_inputs(
    contract_name: str,
    abi_inputs: List[Any],
    resolved_parameters: OrderedDict,
) -> None:
    """Validates the constructor parameters against the constructor ABI."""
    if len(resolved_parameters) != len(abi_inputs):
        raise PlanError(
            f"Constructor parameters length mismatch - "
            f"{contract_name} ABI requires {len(abi_inputs)}, Got {len(resolved_parameters)}."
        )
    if not abi_inputs:
        return  # no constructor parameters

    codex = enumerate(zip(abi_inputs, resolved_parameters.items()), start=0)
    for position, (abi_input, resolved_input) in codex:
        name, value = resolved_input
        # validate name
        if abi_input.name != name:
            raise PlanError(
                f"{contract_name} constructor parameter '{name}' at position {position} does not "
                f"match the expected ABI name '{abi_input.name}'."
            )

        # validate value type
        if not _w3.is_encodable(abi_input.type, value):
            raise PlanError(
                f"Constructor param name '{name}' at position {position} has a value '{value}' "
                f"whose type does not match expected ABI type '{abi_input.type}'"
            )


class ContractSpec(NamedTuple):
    """One entry of the plan's contract list."""

    name: str
    artifact: str
    constructor: OrderedDict
    depends_on: List[str]
    address: Optional[str] = None

    @property
    def is_external(self) -> bool:
        """External contracts are only referenced, never deployed."""
        return self.address is not None


class SettingSpec(NamedTuple):
    """A post-deployment call such as setBaseURI, idempotent when a getter is declared."""

    contract: str
    setter: str
    args: List[Any]
    getter: Optional[str] = None
    expected: Any = None

    @property
    def key(self) -> str:
        return f"{self.contract}.{self.setter}"


def _parse_contract(
    contract_info: Any, contract_names: List[str], constants: typing.Dict
) -> ContractSpec:
    if isinstance(contract_info, str):
        return ContractSpec(
            name=contract_info, artifact=contract_info, constructor=OrderedDict(), depends_on=list()
        )

    contract_name = list(contract_info.keys())[0]  # only one entry
    contract_data = contract_info[contract_name] or dict()
    if not isinstance(contract_data, dict):
        raise PlanError(f"Malformed configuration for {contract_name}.")
    unknown = set(contract_data) - KNOWN_CONTRACT_KEYS
    if unknown:
        raise PlanError(f"Unknown keys for {contract_name}: {', '.join(sorted(unknown))}")

    context = VariableContext(
        contract_names=contract_names, contract_name=contract_name, constants=constants
    )
    constructor = contract_data.get(CONTRACT_CONSTRUCTOR_PARAMETER_KEY) or dict()
    if not isinstance(constructor, dict):
        # this can happen if the yml file is malformed
        raise PlanError(f"Malformed constructor parameter config for {contract_name}.")

    depends_on = list(contract_data.get(CONTRACT_DEPENDENCIES_KEY) or list())
    for dependency in depends_on:
        if dependency not in contract_names:
            raise PlanError(f"{contract_name} depends on undeclared contract {dependency}")

    address = contract_data.get(CONTRACT_ADDRESS_KEY)
    if address is not None:
        if not is_address(address):
            raise PlanError(f"External contract {contract_name} has invalid address {address!r}")
        if constructor:
            raise PlanError(f"External contract {contract_name} cannot have constructor parameters")
        address = to_checksum_address(address)

    return ContractSpec(
        name=contract_name,
        artifact=contract_data.get(CONTRACT_ARTIFACT_KEY, contract_name),
        constructor=_process_raw_values(constructor, context),
        depends_on=depends_on,
        address=address,
    )


def _parse_link(entry: Any, contract_names: List[str]) -> LinkSpec:
    try:
        link = LinkSpec(
            from_contract=entry["from"],
            to_contract=entry["to"],
            setter=entry["setter"],
            getter=entry["getter"],
        )
    except (KeyError, TypeError):
        raise PlanError(f"Malformed link entry (needs from, to, setter, getter): {entry!r}")
    for name in (link.from_contract, link.to_contract):
        if name not in contract_names:
            raise PlanError(f"Link {link.key} references undeclared contract {name}")
    return link


def _parse_setting(entry: Any, contract_names: List[str], constants: typing.Dict) -> SettingSpec:
    if not isinstance(entry, dict) or "contract" not in entry or "setter" not in entry:
        raise PlanError(f"Malformed setting entry (needs contract, setter): {entry!r}")
    contract_name = entry["contract"]
    if contract_name not in contract_names:
        raise PlanError(f"Setting {contract_name}.{entry['setter']} references undeclared contract")

    context = VariableContext(
        contract_names=contract_names, contract_name=contract_name, constants=constants
    )
    args = _process_raw_value(list(entry.get("args") or list()), context)
    getter = entry.get("getter")
    if "expected" in entry:
        expected = _process_raw_value(entry["expected"], context)
    elif getter and len(args) == 1:
        expected = args[0]
    else:
        expected = None
    if getter and expected is None:
        raise PlanError(
            f"Setting {contract_name}.{entry['setter']} declares a getter "
            f"but no single argument or 'expected' value to compare with"
        )
    return SettingSpec(
        contract=contract_name,
        setter=entry["setter"],
        args=args,
        getter=getter,
        expected=expected,
    )


class DeploymentPlan:
    """
    Declarative description of one deployment: which contracts, in what
    relation, wired how, and configured with which settings.
    """

    def __init__(
        self,
        name: str,
        contracts: "OrderedDict[str, ContractSpec]",
        links: List[LinkSpec],
        settings: List[SettingSpec],
        constants: Optional[Dict[str, Any]] = None,
        chain_id: Optional[int] = None,
        artifacts_dir: Path = DEFAULT_ARTIFACTS_DIR,
        registry_filename: Optional[str] = None,
        path: Optional[Path] = None,
    ):
        self.name = name
        self.contracts = contracts
        self.links = links
        self.settings = settings
        self.constants = constants or dict()
        self.chain_id = chain_id
        self.artifacts_dir = Path(artifacts_dir)
        self.registry_filename = registry_filename
        self.path = path

    @classmethod
    def from_yaml(cls, filepath: Path) -> "DeploymentPlan":
        filepath = Path(filepath)
        if not filepath.exists():
            raise NotFound(f"Deployment plan {filepath} does not exist.")
        config = _load_yaml(filepath)
        return cls.from_config(config, path=filepath)

    @classmethod
    def from_config(cls, config: typing.Dict, path: Optional[Path] = None) -> "DeploymentPlan":
        if not isinstance(config, dict) or not config.get("contracts"):
            raise PlanError("Deployment file must declare a non-empty 'contracts' list.")

        deployment = config.get("deployment") or dict()
        artifacts = config.get("artifacts") or dict()
        constants = config.get("constants") or dict()
        contract_names = _get_contract_names(config)

        contracts = OrderedDict()
        for contract_info in config["contracts"]:
            spec = _parse_contract(contract_info, contract_names, constants)
            contracts[spec.name] = spec

        links = [_parse_link(entry, contract_names) for entry in config.get("links") or list()]
        link_keys = [link.key for link in links]
        duplicates = {key for key in link_keys if link_keys.count(key) > 1}
        if duplicates:
            raise PlanError(f"Links declared more than once: {', '.join(sorted(duplicates))}")

        settings = [
            _parse_setting(entry, contract_names, constants)
            for entry in config.get("settings") or list()
        ]

        artifacts_dir = Path(artifacts.get("dir", DEFAULT_ARTIFACTS_DIR))
        if path is not None and not artifacts_dir.is_absolute():
            artifacts_dir = Path(path).parent / artifacts_dir

        return cls(
            name=deployment.get("name", Path(path).stem if path else "deployment"),
            contracts=contracts,
            links=links,
            settings=settings,
            constants=constants,
            chain_id=deployment.get("chain_id"),
            artifacts_dir=artifacts_dir,
            registry_filename=artifacts.get("registry"),
            path=path,
        )

    @property
    def contract_names(self) -> List[str]:
        return list(self.contracts)

    def dependencies(self, contract_name: str) -> Set[str]:
        """Explicit depends_on plus every contract referenced by a constructor argument."""
        spec = self.contracts[contract_name]
        dependencies = set(spec.depends_on)
        for value in spec.constructor.values():
            dependencies |= _contract_references(value)
        dependencies.discard(contract_name)
        return dependencies

    def resolve_constructor(self, contract_name: str, resolver: Resolver) -> OrderedDict:
        """Resolves the constructor parameters for a single contract."""
        return _resolve_params(self.contracts[contract_name].constructor, resolver)

    def resolve_args(self, values: Any, resolver: Resolver) -> Any:
        return _resolve_param(values, resolver)

    def links_from(self, contract_name: str) -> List[LinkSpec]:
        return [link for link in self.links if link.from_contract == contract_name]

    def validate(self, artifacts: ArtifactStore, deployer: Optional[str] = None) -> None:
        """
        Checks every constructor, link and setting against the compiled ABIs.

        Runs before any chain interaction; contracts not deployed yet resolve
        to the zero address for type checking.
        """
        resolver = Resolver.for_validation(deployer=deployer)
        for spec in self.contracts.values():
            if spec.is_external:
                continue
            contract_type = artifacts.get(spec.artifact)
            constructor_inputs = contract_type.constructor.inputs if contract_type.constructor else []
            _validate_constructor_abi_inputs(
                contract_name=spec.name,
                abi_inputs=constructor_inputs,
                resolved_parameters=self.resolve_constructor(spec.name, resolver),
            )

        for link in self.links:
            contract_type = self._contract_type(link.from_contract, artifacts)
            _validate_method_args(
                method_abis=self._methods(contract_type, link.from_contract, link.setter),
                args=[ZERO_ADDRESS],
            )
            if find_view_method(contract_type, link.getter) is None:
                raise PlanError(
                    f"Link {link.key}: {link.from_contract} has no view method "
                    f"'{link.getter}()' to read the wiring back"
                )

        for setting in self.settings:
            contract_type = self._contract_type(setting.contract, artifacts)
            _validate_method_args(
                method_abis=self._methods(contract_type, setting.contract, setting.setter),
                args=self.resolve_args(setting.args, resolver),
            )
            if setting.getter and find_view_method(contract_type, setting.getter) is None:
                raise PlanError(
                    f"Setting {setting.key}: {setting.contract} has no view method "
                    f"'{setting.getter}()'"
                )

    def _contract_type(self, contract_name: str, artifacts: ArtifactStore) -> ContractType:
        return artifacts.get(self.contracts[contract_name].artifact)

    @staticmethod
    def _methods(contract_type: ContractType, contract_name: str, method: str) -> List[MethodABI]:
        methods = find_methods(contract_type, method)
        if not methods:
            raise PlanError(f"{contract_name} has no method named '{method}'")
        return methods
