"""Exception hierarchy for the harvest pipeline.

Per-fetch and per-record errors are caught by the orchestrator/coordinator
and recorded against the owning security; only ``RunFailedError`` reaches the
operator.
"""

from __future__ import annotations

from typing import Optional


class HarvestError(Exception):
    """Base exception for all pipeline errors."""


class DecodingError(HarvestError):
    """Raised when fetched bytes are invalid for the declared source encoding."""

    def __init__(self, message: str, encoding: str, position: Optional[int] = None):
        super().__init__(message)
        self.encoding = encoding
        self.position = position


class ParseError(HarvestError):
    """Base class for structural parse failures."""


class MissingMandatoryFieldError(ParseError):
    """Raised when a mandatory field (date, close price) cannot be located."""

    def __init__(self, field: str, source: str = ""):
        where = f" in source={source}" if source else ""
        super().__init__(f"missing mandatory field={field}{where}")
        self.field = field
        self.source = source


class MalformedFieldError(ParseError):
    """Raised when a located field cannot be interpreted."""

    def __init__(self, field: str, fragment: str, reason: str = ""):
        detail = f": {reason}" if reason else ""
        super().__init__(f"malformed field={field} fragment={fragment!r}{detail}")
        self.field = field
        self.fragment = fragment


class ValidationError(HarvestError):
    """Base class for record validation failures."""


class InconsistentOHLCError(ValidationError):
    """Raised when low <= {open, close} <= high does not hold."""


class FetchError(HarvestError):
    """Base class for network fetch failures."""

    def __init__(self, message: str, source: str = ""):
        super().__init__(message)
        self.source = source


class FetchTimeoutError(FetchError):
    """Raised when a fetch timed out on every retry attempt."""


class FetchUnreachableError(FetchError):
    """Raised on connection failures or non-success HTTP status."""

    def __init__(self, message: str, source: str = "", status_code: Optional[int] = None):
        super().__init__(message, source=source)
        self.status_code = status_code


class PersistenceError(HarvestError):
    """Base class for storage failures."""


class PersistenceConflictError(PersistenceError):
    """Raised on a non-transient constraint violation."""


class PersistenceTransientError(PersistenceError):
    """Raised when a transient storage failure persists after retries."""


class RunFailedError(HarvestError):
    """Raised when no security in a run reached the persisted state."""
