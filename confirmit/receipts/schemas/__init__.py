from confirmit.receipts.schemas.receipt import (
    AnchorResponse,
    AnchorVerification,
    CompleteEvent,
    ErrorEvent,
    LedgerAnchor,
    ProgressEvent,
    ReceiptHistory,
    ReceiptRecord,
    ReceiptStatus,
    ScanOptions,
    ScanResponse,
    utc_now_iso,
)

__all__ = [
    "AnchorResponse",
    "AnchorVerification",
    "CompleteEvent",
    "ErrorEvent",
    "LedgerAnchor",
    "ProgressEvent",
    "ReceiptHistory",
    "ReceiptRecord",
    "ReceiptStatus",
    "ScanOptions",
    "ScanResponse",
    "utc_now_iso",
]
