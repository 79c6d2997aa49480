"""
Error taxonomy for driver operations.

Every failure a driver surfaces is a CIError subclass, so callers can catch
the whole family at the command boundary and still branch on capability gaps
(UnsupportedOperation) or remote rejections (ApiError) where it matters.
"""


class CIError(Exception):
    """Base class for all driver and runner errors."""


class ConfigurationError(CIError):
    """Required input (token, repository, pipeline id, driver name) is missing or invalid."""


class ResolutionError(CIError):
    """No valid API base could be discovered for a repository URL."""


class ApiError(CIError):
    """
    The remote API rejected a call.

    status_code is None for transport failures (connection refused, timeout)
    where no HTTP response was received.
    """

    def __init__(self, status_code: int | None, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(message)

    def __str__(self) -> str:
        if self.status_code is None:
            return self.message
        return f"{self.message} (HTTP {self.status_code})"


class AuthenticationError(ApiError):
    """The provider rejected the credentials (401/403)."""


class NotFoundError(ApiError):
    """The repository or resource does not exist (404)."""


class UnsupportedOperation(CIError):
    """The provider has no equivalent of the requested capability."""


class ResourceError(CIError):
    """Filesystem or process failure while preparing a runner."""
