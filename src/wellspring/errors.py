"""Exception hierarchy for knowledge ingestion."""

from __future__ import annotations


class WellspringError(Exception):
    """Base class for all errors raised by the package."""


class IngestionError(WellspringError):
    """A classified stage failure.

    ``transient`` failures (network, timeouts, store unavailability) are
    retried automatically with backoff; permanent ones surface immediately.
    """

    transient: bool = False

    def __init__(self, message: str, *, transient: bool | None = None) -> None:
        super().__init__(message)
        self.message = message
        if transient is not None:
            self.transient = transient

    def __str__(self) -> str:
        return self.message


class AcquisitionError(IngestionError):
    """Raised by a source adapter when a source cannot be acquired."""


class UnsupportedFormat(AcquisitionError):
    pass


class PayloadTooLarge(AcquisitionError):
    pass


class EmptyInput(AcquisitionError):
    pass


class FetchTimeout(AcquisitionError):
    transient = True


class FetchError(AcquisitionError):
    transient = True


class TranscriptionError(IngestionError):
    transient = True


class IndexingError(IngestionError):
    transient = True


class ItemNotFound(WellspringError, LookupError):
    def __init__(self, owner_id: str, item_id: str) -> None:
        super().__init__(f"Knowledge item {item_id} not found for owner {owner_id}")
        self.owner_id = owner_id
        self.item_id = item_id


class InvalidTransition(WellspringError):
    def __init__(self, item_id: str, old: str, new: str) -> None:
        super().__init__(f"Illegal status transition {old} -> {new} for item {item_id}")
        self.item_id = item_id
        self.old = old
        self.new = new


class RetryRejected(WellspringError):
    """Raised when a manual retry or cancel is not allowed for the item's state."""


__all__ = [
    "WellspringError",
    "IngestionError",
    "AcquisitionError",
    "UnsupportedFormat",
    "PayloadTooLarge",
    "EmptyInput",
    "FetchTimeout",
    "FetchError",
    "TranscriptionError",
    "IndexingError",
    "ItemNotFound",
    "InvalidTransition",
    "RetryRejected",
]
