"""Error taxonomy for the budget engine.

Per-item failures (``StoreError``, ``ConflictError``) are retried and, once the
retry budget is spent, recorded in a run report instead of aborting the batch.
``ValidationError`` and ``NotFoundError`` are surfaced to the caller directly.
"""

from __future__ import annotations


class EngineError(Exception):
    """Base engine error with a stable machine-readable code."""

    code = "ENGINE_ERROR"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, str]:
        return {"error": self.message, "code": self.code}


class ValidationError(EngineError, ValueError):
    """Malformed input, rejected before any I/O."""

    code = "INVALID_INPUT"


class NotFoundError(EngineError, LookupError):
    """A referenced obligation, category, source or entry does not exist."""

    code = "NOT_FOUND"

    def __init__(self, resource: str) -> None:
        super().__init__(f"{resource} not found")


class StoreError(EngineError):
    """I/O failure against the ledger or aggregate store."""

    code = "STORE_ERROR"


class ConflictError(EngineError):
    """Concurrent modification detected (unique key, version or CAS mismatch)."""

    code = "CONFLICT"
