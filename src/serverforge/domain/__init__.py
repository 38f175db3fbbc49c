"""Domain models for ServerForge."""

from .errors import (
    ConfigurationError,
    ExecutionError,
    ExternalServiceError,
    GenerationParseError,
    HostedServerUnavailableError,
    InsufficientCreditsError,
    InvalidRequestError,
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
    ResultParseError,
    ServerForgeError,
    ValidationError,
)
from .models import (
    Actor,
    ActorRole,
    HostedServer,
    HostingType,
    Project,
    ProjectStatus,
    Royalty,
    Version,
    VersionStatus,
)

__all__ = [
    "Actor",
    "ActorRole",
    "HostedServer",
    "HostingType",
    "Project",
    "ProjectStatus",
    "Royalty",
    "Version",
    "VersionStatus",
    # Errors
    "ConfigurationError",
    "ExecutionError",
    "ExternalServiceError",
    "GenerationParseError",
    "HostedServerUnavailableError",
    "InsufficientCreditsError",
    "InvalidRequestError",
    "InvalidStateError",
    "NotFoundError",
    "PermissionDeniedError",
    "ResultParseError",
    "ServerForgeError",
    "ValidationError",
]
