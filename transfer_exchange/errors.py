from __future__ import annotations

__all__ = [
    "TransferExchangeError",
    "ValidationError",
    "ConflictError",
    "ExternalDependencyError",
]


class TransferExchangeError(Exception):
    pass


class ValidationError(TransferExchangeError):
    """Caller supplied something the marketplace refuses (bad amount, wrong state)."""


class ConflictError(TransferExchangeError):
    """Another actor already moved the job on (late accept, stale offer)."""


class ExternalDependencyError(TransferExchangeError):
    """A collaborator outside the marketplace (distance oracle) failed."""
