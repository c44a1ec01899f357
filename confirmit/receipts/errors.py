"""
Error taxonomy for the receipt verification pipeline.

Pipeline stages (analyze, sanitize, persist, anchor) return a
:class:`StageResult` carrying either a value or a :class:`PipelineError`.
The orchestrator decides through ``error.fatal``, derived from ``error.kind``;
only ``ANCHOR`` is non-fatal. Once a receipt is stored as completed, later
failures never move it to failed.
Public operations called from routers raise the ``ReceiptError`` subclasses
at the bottom of this module instead.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    ANALYZER_TIMEOUT = "analyzer_timeout"
    ANALYZER_UNAVAILABLE = "analyzer_unavailable"
    ANALYZER_REJECTED = "analyzer_rejected"
    PAYLOAD_TOO_LARGE = "payload_too_large"
    PERSISTENCE = "persistence"
    ANCHOR = "anchor"
    INTERRUPTED = "interrupted"
    INTERNAL = "internal"


NON_FATAL_KINDS = frozenset({ErrorKind.ANCHOR})

# User-facing messages; technical detail goes to the log only.
ANALYZER_TIMEOUT_MESSAGE = (
    "Analysis timed out. The image might be too large or the service is busy. "
    "Please try again with a smaller or clearer image."
)
ANALYZER_UNAVAILABLE_MESSAGE = (
    "Service temporarily unavailable. Please try again in a few minutes."
)
ANALYZER_REJECTED_MESSAGE = "AI analysis failed. Please try again with a clearer image."
PAYLOAD_TOO_LARGE_MESSAGE = (
    "Analysis data is too large to store. This is a system limitation we are "
    "working to resolve."
)
PERSISTENCE_MESSAGE = "Could not save the analysis result. Please try again."
ANCHOR_MESSAGE = "Ledger anchoring failed. The verification result is unaffected."
INTERRUPTED_MESSAGE = "Analysis was interrupted by a server restart. Please resubmit the receipt."
INTERNAL_MESSAGE = "Receipt analysis failed unexpectedly. Please try again."


@dataclass(frozen=True)
class PipelineError:
    kind: ErrorKind
    message: str
    detail: str = ""

    @property
    def fatal(self) -> bool:
        return self.kind not in NON_FATAL_KINDS


@dataclass(frozen=True)
class StageResult(Generic[T]):
    value: Optional[T] = None
    error: Optional[PipelineError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "StageResult[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str, detail: str = "") -> "StageResult[T]":
        return cls(error=PipelineError(kind=kind, message=message, detail=detail))


# ---------------------------------------------------------------------------
# Exceptions raised by public pipeline operations
# ---------------------------------------------------------------------------

class ReceiptError(Exception):
    """Base class for errors surfaced to API callers."""


class IntakeError(ReceiptError):
    """The uploaded image could not be stored; no receipt was created."""


class ReceiptNotFound(ReceiptError):
    def __init__(self, receipt_id: str):
        super().__init__(f"Receipt not found: {receipt_id}")
        self.receipt_id = receipt_id


class ReceiptNotReady(ReceiptError):
    """The receipt has not completed analysis yet."""


class AnchorFailed(ReceiptError):
    """Manual ledger anchoring failed."""


class PayloadTooLarge(ReceiptError):
    """The summary exceeds the store's per-document ceiling."""

    def __init__(self, size_bytes: int, limit_bytes: int):
        super().__init__(
            f"Summary payload {size_bytes / 1024:.2f}KB exceeds {limit_bytes / 1024:.0f}KB limit"
        )
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes
