"""Exception taxonomy shared by the write path and the read path."""

from __future__ import annotations


class MemdexError(Exception):
    """Base class for all memdex errors."""


class ConfigError(MemdexError):
    """Invalid or contradictory configuration."""


class SourceReadError(MemdexError):
    """A canonical source could not be read or decoded. The source is skipped."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


class ProviderError(MemdexError):
    """Embedding provider failure."""


class ProviderUnavailable(ProviderError):
    """Transport, auth or server failure talking to the embedding backend."""


class ProviderRateLimited(ProviderError):
    """The embedding backend throttled us. The caller decides when to retry."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ProviderDimensionMismatch(ProviderError):
    """Vector size differs from what the index expects. Fatal until reconfigured."""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"embedding dimension mismatch: index expects {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class StoreIOError(MemdexError):
    """Index persistence failure."""


class PathNotAllowed(MemdexError):
    """A read was requested outside the allow-listed set of documents."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"path not allowed: {path} ({reason})")
        self.path = path
        self.reason = reason


class BackendDegraded(MemdexError):
    """The alternative index backend failed; traffic moves to the builtin store."""

    def __init__(self, backend: str, cause: BaseException | str) -> None:
        super().__init__(f"backend {backend} degraded: {cause}")
        self.backend = backend
        self.cause = cause
