from typing import List, Optional


class DeploymentError(Exception):
    """
    Base class for all dungeon-deploy errors.

    Every subclass names the contract and the operation that failed so an
    operator can act on the message without reading a traceback.
    """


class MissingConfiguration(DeploymentError):
    """Raised before any chain interaction when a required setting is absent."""

    def __init__(self, variable: str, hint: str = ""):
        message = f"Missing required configuration '{variable}'"
        if hint:
            message = f"{message}; {hint}"
        super().__init__(message)
        self.variable = variable


class PlanError(DeploymentError, ValueError):
    """Raised when a deployment plan or sync file is malformed."""


class CyclicDependency(PlanError):
    """Raised at planning time when no valid deployment order exists."""

    def __init__(self, cycle: List[str]):
        super().__init__(f"Cyclic dependency between contracts: {' -> '.join(cycle)}")
        self.cycle = cycle


class NotFound(DeploymentError):
    """Raised when a registry snapshot, record or artifact does not exist."""


class ConcurrentRunDetected(DeploymentError):
    """Raised when another run already holds the registry lock for a network."""


class RpcError(DeploymentError):
    """
    Raised on transport-level failures talking to the chain node.

    Attributes:
        retryable: whether retrying the same request may succeed.
    """

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class DecodeError(DeploymentError):
    """Raised when returned call data does not match the expected ABI types."""


class NonceCollision(DeploymentError):
    """Raised when a nonce is already used by an in-flight or mined transaction."""

    def __init__(self, message: str, nonce: Optional[int] = None):
        super().__init__(message)
        self.nonce = nonce


class Reverted(DeploymentError):
    """
    Raised when a transaction was mined but failed, or a call reverted.

    Attributes:
        reason: decoded revert reason, if any.
        tx_hash: hash of the failed transaction, if any.
    """

    def __init__(self, message: str, reason: Optional[str] = None, tx_hash: Optional[str] = None):
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.reason = reason
        self.tx_hash = tx_hash


class Timeout(DeploymentError):
    """Raised when a transaction is not confirmed within the configured bound."""

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class LinkFailed(DeploymentError):
    """Raised when a wiring or configuration call failed after every retry."""


class DeploymentHalted(DeploymentError):
    """Raised when a plan stops because a step failed; progress is persisted."""


class DeploymentAborted(DeploymentError):
    """Raised when the operator aborted a run."""


class VerificationMismatch(DeploymentError):
    """Raised by the CLI when a verification report contains failures."""

    def __init__(self, failures: int):
        super().__init__(f"Verification found {failures} failure(s)")
        self.failures = failures


class SyncError(DeploymentError):
    """Raised when a sync target cannot be rendered or written."""


class ExplorerError(DeploymentError):
    """Raised when the block explorer rejects or cannot process a source submission."""
