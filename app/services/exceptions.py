class GoldenTestDomainError(Exception):
    """Base class for all golden test domain errors."""

class ValidationError(GoldenTestDomainError):
    """Raised for malformed thresholds, unknown frequencies/statuses or missing required fields. Nothing is persisted."""

class GoldenTestNotFoundError(GoldenTestDomainError):
    """Raised when a golden test id does not resolve to a stored golden test."""

class ReplayFailure(GoldenTestDomainError):
    """Raised by the replay capability when it errors or returns no usable transcript."""

class PersistenceFailure(GoldenTestDomainError):
    """Raised when the golden test store is unavailable or a write fails. The session is rolled back."""

class ConcurrentRunError(PersistenceFailure):
    """Raised when a golden test changed between reading it and writing to it (a run or a user update)."""
