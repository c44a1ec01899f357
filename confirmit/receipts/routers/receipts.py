"""
Receipt verification API endpoints.

POST /api/receipts/scan                  — upload image → receipt id (analysis runs in background)
GET  /api/receipts/user/{user_id}        — a user's latest receipts
GET  /api/receipts/{id}                  — current receipt record
GET  /api/receipts/{id}/forensics        — heavy forensic sidecar
POST /api/receipts/{id}/anchor           — anchor a completed receipt to the ledger
GET  /api/receipts/{id}/anchor/verify    — recompute and compare the anchored hash
WS   /api/receipts/ws                    — per-receipt progress channel
"""
from __future__ import annotations

import json
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, WebSocket, WebSocketDisconnect
from starlette.requests import HTTPConnection

from confirmit.config import settings
from confirmit.receipts.errors import AnchorFailed, IntakeError, ReceiptNotFound, ReceiptNotReady
from confirmit.receipts.pipeline import ReceiptPipeline
from confirmit.receipts.pipeline.progress import Subscriber
from confirmit.receipts.schemas import (
    AnchorResponse,
    AnchorVerification,
    ReceiptHistory,
    ReceiptRecord,
    ScanOptions,
    ScanResponse,
)

logger = logging.getLogger(__name__)
router = APIRouter()

HISTORY_LIMIT = 50


def get_pipeline(connection: HTTPConnection) -> ReceiptPipeline:
    return connection.app.state.pipeline


# ── POST /api/receipts/scan ──────────────────────────────────────────────
@router.post("/receipts/scan", response_model=ScanResponse)
async def scan_receipt(
    file: UploadFile = File(...),
    anchor_on_ledger: bool = Form(False),
    user_id: Optional[str] = Form(None),
    pipeline: ReceiptPipeline = Depends(get_pipeline),
):
    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")
    if len(content) > settings.MAX_UPLOAD_BYTES:
        raise HTTPException(
            status_code=413,
            detail=f"File exceeds {settings.MAX_UPLOAD_BYTES // (1024 * 1024)}MB limit",
        )
    content_type = (file.content_type or "").lower()
    if content_type not in settings.ALLOWED_CONTENT_TYPES:
        raise HTTPException(
            status_code=415,
            detail="Invalid image format. Please upload a JPG, PNG, or PDF file.",
        )

    logger.info("Scan: filename=%s  type=%s  size=%d", file.filename, content_type, len(content))
    try:
        receipt_id = await pipeline.submit(
            content,
            filename=file.filename or "",
            content_type=content_type,
            options=ScanOptions(anchor_on_ledger=anchor_on_ledger, user_id=user_id),
        )
    except IntakeError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return ScanResponse(receipt_id=receipt_id)


# ── WS /api/receipts/ws ──────────────────────────────────────────────────
@router.websocket("/receipts/ws")
async def receipt_progress(websocket: WebSocket, pipeline: ReceiptPipeline = Depends(get_pipeline)):
    await websocket.accept()
    subscriber = Subscriber(subscriber_id=uuid.uuid4().hex, send=websocket.send_json)
    logger.info("Progress client connected: %s", subscriber.subscriber_id)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                message = None
            if not isinstance(message, dict):
                message = {}

            event = message.get("event")
            receipt_id = message.get("receipt_id")
            if event == "subscribe" and isinstance(receipt_id, str) and receipt_id:
                await pipeline.channel.subscribe(receipt_id, subscriber)
            elif event == "unsubscribe" and isinstance(receipt_id, str) and receipt_id:
                await pipeline.channel.unsubscribe(receipt_id, subscriber)
            else:
                await websocket.send_json(
                    {
                        "event": "invalid_message",
                        "data": {"message": "Expected {\"event\": \"subscribe\", \"receipt_id\": ...}"},
                    }
                )
    except WebSocketDisconnect:
        pass
    finally:
        await pipeline.channel.disconnect(subscriber)
        logger.info("Progress client disconnected: %s", subscriber.subscriber_id)


# ── GET /api/receipts/user/{user_id} ─────────────────────────────────────
@router.get("/receipts/user/{user_id}", response_model=ReceiptHistory)
async def list_user_receipts(user_id: str, pipeline: ReceiptPipeline = Depends(get_pipeline)):
    records = pipeline.list_user_receipts(user_id, limit=HISTORY_LIMIT)
    logger.info("Found %d receipts for user %s", len(records), user_id)
    return ReceiptHistory(count=len(records), data=records)


# ── GET /api/receipts/{receipt_id} ───────────────────────────────────────
@router.get("/receipts/{receipt_id}", response_model=ReceiptRecord)
async def get_receipt(receipt_id: str, pipeline: ReceiptPipeline = Depends(get_pipeline)):
    try:
        return pipeline.get(receipt_id)
    except ReceiptNotFound:
        logger.warning("Receipt not found: %s", receipt_id)
        raise HTTPException(status_code=404, detail="Receipt not found")


# ── GET /api/receipts/{receipt_id}/forensics ─────────────────────────────
@router.get("/receipts/{receipt_id}/forensics")
async def get_receipt_forensics(receipt_id: str, pipeline: ReceiptPipeline = Depends(get_pipeline)):
    try:
        return pipeline.get_forensics(receipt_id)
    except ReceiptNotFound:
        raise HTTPException(status_code=404, detail="Receipt not found")
    except ReceiptNotReady as e:
        raise HTTPException(status_code=404, detail=str(e))


# ── POST /api/receipts/{receipt_id}/anchor ───────────────────────────────
@router.post("/receipts/{receipt_id}/anchor", response_model=AnchorResponse)
async def anchor_receipt(receipt_id: str, pipeline: ReceiptPipeline = Depends(get_pipeline)):
    logger.info("Anchoring receipt %s to ledger", receipt_id)
    try:
        anchor, already_anchored = await pipeline.anchor(receipt_id)
    except ReceiptNotFound:
        raise HTTPException(status_code=404, detail="Receipt not found")
    except ReceiptNotReady as e:
        raise HTTPException(status_code=409, detail=str(e))
    except AnchorFailed as e:
        raise HTTPException(status_code=502, detail=str(e))

    message = "Receipt already anchored" if already_anchored else "Successfully anchored to ledger"
    return AnchorResponse(message=message, ledger_anchor=anchor)


# ── GET /api/receipts/{receipt_id}/anchor/verify ─────────────────────────
@router.get("/receipts/{receipt_id}/anchor/verify", response_model=AnchorVerification)
async def verify_receipt_anchor(receipt_id: str, pipeline: ReceiptPipeline = Depends(get_pipeline)):
    try:
        return pipeline.verify_anchor(receipt_id)
    except ReceiptNotFound:
        raise HTTPException(status_code=404, detail="Receipt not found")
    except ReceiptNotReady as e:
        raise HTTPException(status_code=409, detail=str(e))
