"""
Receipt verification contracts.

Pydantic v2 models shared by the pipeline, the store and the HTTP surface.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Receipt record
# ---------------------------------------------------------------------------

class ReceiptStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class LedgerAnchor(BaseModel):
    """Tamper-evident reference to the summary hash on the ledger."""
    transaction_id: str
    consensus_timestamp: str
    message_hash: str = Field(..., description="SHA-256 of the anchored summary")
    explorer_url: Optional[str] = None


class ReceiptRecord(BaseModel):
    receipt_id: str
    user_id: str = "anonymous"
    storage_path: str
    status: ReceiptStatus = ReceiptStatus.PROCESSING
    summary: Optional[dict[str, Any]] = Field(
        default=None,
        description=(
            "ocr_text, trust_score, verdict, issues, recommendation, merchant "
            "and light forensic_details; null until completed"
        ),
    )
    processing_time_ms: Optional[int] = None
    error: Optional[str] = None
    ledger_anchor: Optional[LedgerAnchor] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ScanOptions(BaseModel):
    anchor_on_ledger: bool = False
    user_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Progress channel events
# ---------------------------------------------------------------------------

class ProgressEvent(BaseModel):
    receipt_id: str
    percent: int = Field(..., ge=0, le=100)
    phase: str
    message: str
    timestamp: str = Field(default_factory=utc_now_iso)


class CompleteEvent(BaseModel):
    receipt_id: str
    record: Optional[ReceiptRecord] = None
    timestamp: str = Field(default_factory=utc_now_iso)


class ErrorEvent(BaseModel):
    receipt_id: str
    message: str
    timestamp: str = Field(default_factory=utc_now_iso)


# ---------------------------------------------------------------------------
# API request / response envelopes
# ---------------------------------------------------------------------------

class ScanResponse(BaseModel):
    success: bool = True
    receipt_id: str
    message: str = "Receipt scan initiated"


class AnchorResponse(BaseModel):
    success: bool = True
    message: str
    ledger_anchor: LedgerAnchor


class AnchorVerification(BaseModel):
    receipt_id: str
    verified: bool
    anchored_hash: str
    computed_hash: str


class ReceiptHistory(BaseModel):
    success: bool = True
    count: int
    data: list[ReceiptRecord] = Field(default_factory=list)
