"""Error taxonomy for the ingestion service."""

from __future__ import annotations


class IngestionError(Exception):
    """Base exception for all ingestion errors."""

    # Stored on the failed SyncJob as `error_kind`.
    kind = "internal"


class InvalidConfiguration(IngestionError):
    """Source registration or activation rejected by the connector schema."""

    kind = "configuration"

    def __init__(self, message: str, errors: list[dict] | None = None):
        self.errors = errors or []
        super().__init__(message)


class SourceNotFound(IngestionError):
    pass


class JobNotFound(IngestionError):
    pass


class ConnectorError(IngestionError):
    """Raised by connectors while pulling records."""

    retryable = False


class AuthError(ConnectorError):
    """Credentials rejected. Fatal: the source waits for reconfiguration."""

    kind = "auth"


class RateLimited(ConnectorError):
    kind = "rate_limited"
    retryable = True

    def __init__(self, message: str = "rate limited", retry_after: float | None = None):
        self.retry_after = retry_after
        super().__init__(message)


class TransientIOError(ConnectorError):
    kind = "transient"
    retryable = True


class JobTimeout(IngestionError):
    kind = "timeout"


class JobCancelled(IngestionError):
    kind = "cancelled"
