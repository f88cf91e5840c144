"""
Typed errors raised by provider adapters, the token service and sync jobs.

Each error carries a stable machine-readable ``code`` and the HTTP status
routes should answer with.
"""
from fastapi import status


class IntegrationError(Exception):
    """Base class for all integration failures."""

    code = "integration_error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str = "", *, provider: str | None = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.provider = provider


class InvalidState(IntegrationError):
    """OAuth state missing, expired, reused or issued for another provider."""

    code = "invalid_state"
    status_code = status.HTTP_400_BAD_REQUEST


class ConnectionNotFound(IntegrationError):
    code = "connection_not_found"
    status_code = status.HTTP_404_NOT_FOUND


class AuthExpired(IntegrationError):
    """No usable access token could be obtained; the user must reconnect."""

    code = "auth_expired"
    status_code = status.HTTP_401_UNAUTHORIZED


class AuthRevoked(AuthExpired):
    """The provider rejected the refresh grant."""

    code = "auth_revoked"


class NoRefreshToken(AuthExpired):
    """Access token expired and the provider never issued a refresh token."""

    code = "no_refresh_token"


class RateLimited(IntegrationError):
    code = "rate_limited"
    status_code = status.HTTP_429_TOO_MANY_REQUESTS

    def __init__(self, message: str = "", *, provider: str | None = None, retry_after: float | None = None):
        super().__init__(message, provider=provider)
        self.retry_after = retry_after


class NetworkError(IntegrationError):
    """Timeout, transport failure or provider 5xx."""

    code = "network_error"
    status_code = status.HTTP_502_BAD_GATEWAY


class RemoteRejected(IntegrationError):
    """Provider refused the request on business grounds."""

    code = "remote_rejected"
    status_code = status.HTTP_502_BAD_GATEWAY


class ValidationError(IntegrationError):
    """A transaction is missing a required field."""

    code = "validation_error"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class MappingError(IntegrationError):
    """No remote account could be resolved for a transaction."""

    code = "mapping_error"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class StatementFileNotFound(IntegrationError):
    code = "file_not_found"
    status_code = status.HTTP_404_NOT_FOUND


class JobNotFound(IntegrationError):
    code = "job_not_found"
    status_code = status.HTTP_404_NOT_FOUND


class JobStateError(IntegrationError):
    """Requested action is not allowed in the job's current status."""

    code = "invalid_job_state"
    status_code = status.HTTP_409_CONFLICT
