"""Exceptions raised by the scan engine."""

from __future__ import annotations


class ScanEngineError(Exception):
    """Base class for engine errors."""


class PayloadTooLarge(ScanEngineError):
    """The image cannot be packed under the wire ceiling."""

    def __init__(self, size: int, limit: int):
        super().__init__(f"payload of {size} bytes exceeds {limit} bytes")
        self.size = size
        self.limit = limit


class SchemaValidationError(ScanEngineError):
    """The analysis collaborator answered with an unusable payload."""


class StoreUnavailable(ScanEngineError):
    """The remote store could not be reached."""


class StoreWriteFailure(ScanEngineError):
    """Neither the remote store nor the device buffer accepted a write."""


class BillingVerificationError(ScanEngineError):
    """The billing verifier rejected or could not confirm a purchase."""


__all__ = [
    "ScanEngineError",
    "PayloadTooLarge",
    "SchemaValidationError",
    "StoreUnavailable",
    "StoreWriteFailure",
    "BillingVerificationError",
]
