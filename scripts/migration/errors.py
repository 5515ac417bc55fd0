"""Error taxonomy shared by the reader, clients, workers and runner."""

from __future__ import annotations

from typing import Optional


class MigrationError(Exception):
    """Base class for every error raised by the migration toolkit."""


class ParseError(MigrationError):
    """A single input line did not match the expected record shape."""

    def __init__(self, index: int, detail: str) -> None:
        super().__init__(f"record {index}: {detail}")
        self.index = index
        self.detail = detail


class RateLimitError(MigrationError):
    """An identity service throttled the request (HTTP 429)."""

    def __init__(self, service: str, retry_after: Optional[float] = None) -> None:
        hint = f", retry after {retry_after:g}s" if retry_after is not None else ""
        super().__init__(f"{service} rate limit exceeded{hint}")
        self.service = service
        self.retry_after = retry_after


class IdentityServiceError(MigrationError):
    """A non-retryable failure reported by an identity service."""

    def __init__(self, service: str, status: Optional[int], detail: str) -> None:
        prefix = f"{service} HTTP {status}" if status is not None else service
        super().__init__(f"{prefix}: {detail}")
        self.service = service
        self.status = status
        self.detail = detail


class NotFoundError(IdentityServiceError):
    """No account matched the lookup."""


class AmbiguousMatchError(IdentityServiceError):
    """More than one account matched a lookup that must be unique."""


class FatalError(MigrationError):
    """Aborts the whole run; partial ledger contents stay valid."""


class ConfigurationError(FatalError):
    """Required configuration is missing or malformed."""


class AuthenticationError(FatalError):
    """Credentials were rejected by an identity service (HTTP 401/403)."""


class InputError(FatalError):
    """A batch input file could not be read as a whole."""
