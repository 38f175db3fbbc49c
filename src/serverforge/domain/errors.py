"""Domain errors."""

from typing import List, Optional


class ServerForgeError(Exception):
    """Base error."""
    pass


class ConfigurationError(ServerForgeError):
    """Missing credential or isolation tool. Never retried automatically."""
    pass


class ExternalServiceError(ServerForgeError):
    """Upstream text-generation provider failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class GenerationParseError(ServerForgeError):
    """Provider answered, but not with a conforming JSON payload."""
    pass


class ValidationError(ServerForgeError):
    """Static scan rejected the code; it was never executed."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = list(errors or [])


class ExecutionError(ServerForgeError):
    """Sandboxed process failed to spawn, crashed, or produced no result."""

    def __init__(
        self,
        message: str,
        exit_code: Optional[int] = None,
        stderr: str = "",
    ):
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class ResultParseError(ExecutionError):
    """Sandboxed process exited cleanly but its result marker was missing or malformed."""
    pass


class InsufficientCreditsError(ServerForgeError):
    """Balance is below the amount an operation requires."""

    def __init__(self, required: float, balance: float):
        super().__init__(f"Insufficient credits: required {required:g}, available {balance:g}")
        self.required = required
        self.balance = balance


class InvalidStateError(ServerForgeError):
    """Illegal lifecycle transition."""
    pass


class NotFoundError(ServerForgeError):
    """Record not found."""
    pass


class HostedServerUnavailableError(NotFoundError):
    """Project exists but is not deployed on the platform."""
    pass


class PermissionDeniedError(ServerForgeError):
    """Actor is neither the owner nor an admin."""
    pass


class InvalidRequestError(ServerForgeError):
    """Caller supplied an unusable argument."""
    pass
