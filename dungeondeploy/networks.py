import os
from pathlib import Path
from typing import NamedTuple, Optional

from dotenv import find_dotenv, load_dotenv

from dungeondeploy.constants import (
    CHAIN_IDS,
    DEFAULT_REGISTRY_DIR,
    EXPLORER_API_KEY_ENVVAR,
    EXPLORER_API_URL,
    EXPLORER_API_URL_ENVVAR,
    LEGACY_EXPLORER_API_KEY_ENVVAR,
    LOCAL_NETWORKS,
    PRIVATE_KEY_ENVVAR,
    REGISTRY_DIR_ENVVAR,
    RPC_URL_ENVVAR,
)
from dungeondeploy.errors import MissingConfiguration


class NetworkConfig(NamedTuple):
    """Connection settings for a single network, resolved from the environment."""

    name: str
    chain_id: int
    rpc_url: str
    private_key: Optional[str]
    registry_dir: Path

    @property
    def registry_filepath(self) -> Path:
        return self.registry_dir / f"{self.name}.json"


class ExplorerConfig(NamedTuple):
    """Block explorer API endpoint and key for a network."""

    network: str
    chain_id: int
    api_url: str
    api_key: str


def _network_envvar(network: str, suffix: str) -> str:
    """bsc-testnet + RPC_URL -> BSC_TESTNET_RPC_URL"""
    prefix = network.upper().replace("-", "_")
    return f"{prefix}_{suffix}"


def is_local_network(network: str) -> bool:
    return network in LOCAL_NETWORKS


def get_chain_id(network: str) -> int:
    try:
        return CHAIN_IDS[network]
    except KeyError:
        raise MissingConfiguration(
            "network", hint=f"unknown network '{network}'; choose one of {', '.join(CHAIN_IDS)}"
        )


def get_network_name(chain_id: int) -> str:
    """Returns the name of the network given its chain ID."""
    for name, network_chain_id in CHAIN_IDS.items():
        if network_chain_id == chain_id:
            return name
    raise ValueError(f"Chain ID {chain_id} not found in networks.")


def _lookup(network: str, suffix: str) -> Optional[str]:
    """Per-network overrides win over the generic variable."""
    value = os.environ.get(_network_envvar(network, suffix))
    if value:
        return value
    return os.environ.get(suffix) or None


def load_environment(dotenv_path: Optional[Path] = None) -> None:
    """Loads .env from the working directory (or the given file); real env vars win."""
    dotenv_path = dotenv_path or find_dotenv(usecwd=True)
    if dotenv_path:
        load_dotenv(dotenv_path=dotenv_path, override=False)


def get_registry_dir() -> Path:
    return Path(os.environ.get(REGISTRY_DIR_ENVVAR) or DEFAULT_REGISTRY_DIR)


def registry_filepath_from_network(network: str) -> Path:
    return get_registry_dir() / f"{network}.json"


def load_network_config(
    network: str, require_signer: bool = True, dotenv_path: Optional[Path] = None
) -> NetworkConfig:
    """
    Resolves RPC endpoint, signer key and registry location for a network.

    Fails fast with MissingConfiguration before anything touches the chain.
    """
    load_environment(dotenv_path)
    chain_id = get_chain_id(network)

    rpc_url = _lookup(network, RPC_URL_ENVVAR)
    if not rpc_url:
        raise MissingConfiguration(
            RPC_URL_ENVVAR,
            hint=f"set {_network_envvar(network, RPC_URL_ENVVAR)} or {RPC_URL_ENVVAR}",
        )

    private_key = _lookup(network, PRIVATE_KEY_ENVVAR)
    if require_signer and not private_key:
        raise MissingConfiguration(
            PRIVATE_KEY_ENVVAR,
            hint=f"set {_network_envvar(network, PRIVATE_KEY_ENVVAR)} or {PRIVATE_KEY_ENVVAR}",
        )

    return NetworkConfig(
        name=network,
        chain_id=chain_id,
        rpc_url=rpc_url,
        private_key=private_key,
        registry_dir=get_registry_dir(),
    )


def load_explorer_config(network: str, dotenv_path: Optional[Path] = None) -> ExplorerConfig:
    """Resolves the explorer API used to publish contract sources for a network."""
    load_environment(dotenv_path)
    chain_id = get_chain_id(network)
    if is_local_network(network):
        raise MissingConfiguration("explorer", hint=f"{network} has no block explorer")

    api_key = _lookup(network, EXPLORER_API_KEY_ENVVAR) or _lookup(network, LEGACY_EXPLORER_API_KEY_ENVVAR)
    if not api_key:
        raise MissingConfiguration(
            EXPLORER_API_KEY_ENVVAR,
            hint=f"set {EXPLORER_API_KEY_ENVVAR} or {LEGACY_EXPLORER_API_KEY_ENVVAR}",
        )
    return ExplorerConfig(
        network=network,
        chain_id=chain_id,
        api_url=_lookup(network, EXPLORER_API_URL_ENVVAR) or EXPLORER_API_URL,
        api_key=api_key,
    )
