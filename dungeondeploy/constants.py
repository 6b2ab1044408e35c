from pathlib import Path

#
# Filesystem
#

DEFAULT_REGISTRY_DIR = Path("registries")
DEFAULT_ARTIFACTS_DIR = Path("artifacts")
LOCK_SUFFIX = ".lock"
SYNCED_SNAPSHOT_SUFFIX = ".synced.json"

STANDARD_REGISTRY_JSON_FORMAT = {"indent": 4, "separators": (",", ": ")}

#
# Environment
#

PRIVATE_KEY_ENVVAR = "DEPLOYER_PRIVATE_KEY"
RPC_URL_ENVVAR = "RPC_URL"
REGISTRY_DIR_ENVVAR = "DUNGEON_REGISTRY_DIR"

#
# Networks
#

BSC = "bsc"
BSC_TESTNET = "bsc-testnet"
LOCAL = "local"

CHAIN_IDS = {
    BSC: 56,
    BSC_TESTNET: 97,
    LOCAL: 31337,
}

SUPPORTED_NETWORKS = list(CHAIN_IDS)

LOCAL_NETWORKS = [LOCAL]

#
# Transactions
#

ZERO_ADDRESS = "0x" + "0" * 40

DEFAULT_CONFIRMATIONS = 1
DEFAULT_CONFIRMATION_TIMEOUT = 300  # seconds
DEFAULT_POLL_INTERVAL = 2.0  # seconds

RPC_RETRY_ATTEMPTS = 4
RPC_RETRY_BASE_DELAY = 1.0  # seconds
RPC_RETRY_BACKOFF = 2

LINK_RETRY_ATTEMPTS = 3
# each retry of a wiring call bumps the fee by 12.5%, the minimum most nodes
# accept for replacing a pending transaction with the same nonce
FEE_BUMP_NUMERATOR = 1125
FEE_BUMP_DENOMINATOR = 1000

NONCE_ERROR_MARKERS = (
    "nonce too low",
    "replacement transaction underpriced",
    "nonce has already been used",
)

# the node already holds these exact signed bytes
ALREADY_KNOWN_MARKERS = (
    "already known",
    "known transaction",
)

#
# Verification
#

OWNER_GETTER = "owner"

#
# Block explorer
#

# Etherscan's multichain API also serves BscScan; the chain is picked by `chainid`
EXPLORER_API_URL = "https://api.etherscan.io/v2/api"
EXPLORER_API_URL_ENVVAR = "EXPLORER_API_URL"
EXPLORER_API_KEY_ENVVAR = "ETHERSCAN_API_KEY"
LEGACY_EXPLORER_API_KEY_ENVVAR = "BSCSCAN_API_KEY"

EXPLORER_TIMEOUT = 30  # seconds
EXPLORER_POLL_INTERVAL = 5.0  # seconds
EXPLORER_POLL_ATTEMPTS = 12

SOURCE_VERIFIED = "verified"
SOURCE_FAILED = "failed"
