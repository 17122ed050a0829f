"""Error taxonomy for the radar core.

Only ``ValidationError`` ever reaches a caller; provider and persistence
failures are recovered where they happen and surface as stage warnings.
"""

from typing import Optional


class RadarError(Exception):
    """Base class for radar errors."""


class ValidationError(RadarError):
    """Rejected input (bad n_opps, ttl, universe, batch payload)."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field = field


class ProviderError(RadarError):
    """An LLM provider answered with an unusable response."""

    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.message = message


class PersistenceError(RadarError):
    """A persistence write failed."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"{operation} failed{detail}")
        self.operation = operation
        self.cause = cause
