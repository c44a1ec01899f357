"""
Persistence gateway for receipt records and their forensics sidecar.

The pipeline only talks to the :class:`ReceiptStore` protocol; the SQLAlchemy
implementation below is wired in by the application and, over an in-memory
SQLite engine, by the tests.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Optional, Protocol

from sqlalchemy.orm import Session

from confirmit.receipts.errors import ReceiptNotFound
from confirmit.receipts.models import ReceiptForensicsModel, ReceiptModel
from confirmit.receipts.pipeline.sanitizer import size_bytes
from confirmit.receipts.schemas import LedgerAnchor, ReceiptRecord, ReceiptStatus

logger = logging.getLogger(__name__)

# record field -> column
UPDATABLE_FIELDS = {
    "status": "status",
    "summary": "summary_json",
    "processing_time_ms": "processing_time_ms",
    "error": "error",
    "error_at": "error_at",
    "ledger_anchor": "ledger_anchor_json",
}


class ReceiptStore(Protocol):
    def create_job(self, record: ReceiptRecord, storage_public_id: Optional[str] = None) -> None: ...

    def get_job(self, receipt_id: str) -> Optional[ReceiptRecord]: ...

    def get_sidecar(self, receipt_id: str) -> Optional[dict]: ...

    def list_user_jobs(self, user_id: str, limit: int = 50) -> list[ReceiptRecord]: ...

    def atomic_write(self, receipt_id: str, job_update: dict[str, Any], sidecar: dict) -> None: ...

    def update_field(self, receipt_id: str, field: str, value: Any) -> None: ...

    def update_fields(self, receipt_id: str, values: dict[str, Any]) -> None: ...


def _column_value(value: Any) -> Any:
    if isinstance(value, ReceiptStatus):
        return value.value
    if isinstance(value, LedgerAnchor):
        return value.model_dump()
    return value


def transform_receipt(model: ReceiptModel) -> ReceiptRecord:
    """Convert a ReceiptModel row into a ReceiptRecord."""
    anchor = None
    if model.ledger_anchor_json:
        anchor = LedgerAnchor(**model.ledger_anchor_json)

    return ReceiptRecord(
        receipt_id=model.id,
        user_id=model.user_id,
        storage_path=model.storage_path,
        status=ReceiptStatus(model.status),
        summary=model.summary_json,
        processing_time_ms=model.processing_time_ms,
        error=model.error,
        ledger_anchor=anchor,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


class SqlReceiptStore:
    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def create_job(self, record: ReceiptRecord, storage_public_id: Optional[str] = None) -> None:
        with self._session_factory() as db:
            db.add(
                ReceiptModel(
                    id=record.receipt_id,
                    user_id=record.user_id,
                    storage_path=record.storage_path,
                    storage_public_id=storage_public_id,
                    status=_column_value(record.status),
                    summary_json=record.summary,
                    error=record.error,
                    ledger_anchor_json=_column_value(record.ledger_anchor),
                )
            )
            db.commit()
        logger.info("Created receipt %s", record.receipt_id)

    def get_job(self, receipt_id: str) -> Optional[ReceiptRecord]:
        with self._session_factory() as db:
            row = db.query(ReceiptModel).filter(ReceiptModel.id == receipt_id).first()
            if row is None:
                return None
            return transform_receipt(row)

    def get_sidecar(self, receipt_id: str) -> Optional[dict]:
        with self._session_factory() as db:
            row = (
                db.query(ReceiptForensicsModel)
                .filter(ReceiptForensicsModel.receipt_id == receipt_id)
                .first()
            )
            return row.payload_json if row else None

    def list_user_jobs(self, user_id: str, limit: int = 50) -> list[ReceiptRecord]:
        with self._session_factory() as db:
            rows = (
                db.query(ReceiptModel)
                .filter(ReceiptModel.user_id == user_id)
                .order_by(ReceiptModel.created_at.desc(), ReceiptModel.id.desc())
                .limit(limit)
                .all()
            )
            return [transform_receipt(r) for r in rows]

    def atomic_write(self, receipt_id: str, job_update: dict[str, Any], sidecar: dict) -> None:
        """Update the receipt and insert its sidecar in one transaction."""
        with self._session_factory() as db:
            row = self._require(db, receipt_id)
            self._apply(row, job_update)
            db.add(
                ReceiptForensicsModel(
                    receipt_id=receipt_id,
                    payload_json=sidecar,
                    size_bytes=size_bytes(sidecar),
                )
            )
            db.commit()
        logger.info("Stored receipt %s with forensics sidecar", receipt_id)

    def update_field(self, receipt_id: str, field: str, value: Any) -> None:
        self.update_fields(receipt_id, {field: value})

    def update_fields(self, receipt_id: str, values: dict[str, Any]) -> None:
        with self._session_factory() as db:
            row = self._require(db, receipt_id)
            self._apply(row, values)
            db.commit()

    @staticmethod
    def _require(db: Session, receipt_id: str) -> ReceiptModel:
        row = db.query(ReceiptModel).filter(ReceiptModel.id == receipt_id).first()
        if row is None:
            raise ReceiptNotFound(receipt_id)
        return row

    @staticmethod
    def _apply(row: ReceiptModel, values: dict[str, Any]) -> None:
        for field, value in values.items():
            column = UPDATABLE_FIELDS.get(field)
            if column is None:
                raise ValueError(f"Field is not updatable: {field}")
            setattr(row, column, _column_value(value))
        row.updated_at = datetime.utcnow()
