"""Error taxonomy for the orchestration core.

Every failure that reaches a TaskRecord or a PipelineRun is classified by
an ErrorKind. Exceptions carry the kind so callers can record them without
re-deriving it, and provider messages travel through unmodified.
"""

from enum import Enum
from typing import Optional

TIMEOUT_GUIDANCE = "may still be processing, check manually"


class ErrorKind(str, Enum):
    """Classification attached to failed or cancelled work."""

    TRANSIENT_NETWORK = "TransientNetwork"
    PROVIDER_REJECTION = "ProviderRejection"
    TIMEOUT = "Timeout"
    CONFIGURATION = "ConfigurationError"
    NO_QUORUM = "NoQuorum"
    PARTIAL_FAILURE = "PartialFailure"
    INTERRUPTED = "Interrupted"
    CANCELLED = "Cancelled"


class AvatarPipeError(Exception):
    """Base class for all orchestration errors."""

    kind: ErrorKind = ErrorKind.PROVIDER_REJECTION

    def __init__(self, message: str, *, provider: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.provider = provider


class TransientNetworkError(AvatarPipeError):
    """Network failure, throttling or a malformed response. Retried by the next tick."""

    kind = ErrorKind.TRANSIENT_NETWORK


class ProviderRejection(AvatarPipeError):
    """Permanent provider refusal: moderation, quota, invalid input."""

    kind = ErrorKind.PROVIDER_REJECTION

    def __init__(
        self,
        message: str,
        *,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, provider=provider)
        self.status_code = status_code


class ConfigurationError(AvatarPipeError):
    """Missing credentials or configuration. Fatal at startup."""

    kind = ErrorKind.CONFIGURATION


class StageFailed(AvatarPipeError):
    """A mandatory (non fan-out) stage failed; the run aborts."""

    def __init__(self, stage: str, message: str, kind: ErrorKind = ErrorKind.PROVIDER_REJECTION):
        super().__init__(message)
        self.stage = stage
        self.kind = kind


class RunCancelled(AvatarPipeError):
    """Raised at a stage boundary once the run's cancellation token is tripped."""

    kind = ErrorKind.CANCELLED


def timeout_message(attempts: int) -> str:
    """Build the user-facing message for an exhausted poll budget."""
    return f"No terminal status after {attempts} checks; {TIMEOUT_GUIDANCE}"
