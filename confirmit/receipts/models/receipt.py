"""
SQLAlchemy models for receipt persistence.

``receipts`` holds the light record a client polls; ``receipt_forensics`` is
its heavy sidecar, written once in the same transaction that completes the
receipt.
"""
from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, String, Text

from confirmit.receipts.database import Base


class ReceiptModel(Base):
    __tablename__ = "receipts"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True, default="anonymous")
    storage_path = Column(String, nullable=False)
    storage_public_id = Column(String)
    status = Column(String, nullable=False, default="processing")  # processing, completed, failed
    summary_json = Column(JSON)
    processing_time_ms = Column(Integer)
    error = Column(Text)
    error_at = Column(DateTime)
    ledger_anchor_json = Column(JSON)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class ReceiptForensicsModel(Base):
    __tablename__ = "receipt_forensics"

    receipt_id = Column(String, ForeignKey("receipts.id"), primary_key=True)
    payload_json = Column(JSON, nullable=False)
    size_bytes = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
