"""
Receipt verification pipeline.

Orchestrates: store image → analyze → split → persist → (anchor) → notify.

``submit`` returns the receipt id as soon as the image is stored and the
record exists; the rest runs on a background task whose outcome is only
visible through the receipt record and the progress channel.
"""
from __future__ import annotations

import asyncio
import logging
import secrets
import string
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError

from confirmit.receipts.clients.ledger import compute_hash
from confirmit.receipts.errors import (
    ANCHOR_MESSAGE,
    INTERNAL_MESSAGE,
    INTERRUPTED_MESSAGE,
    PAYLOAD_TOO_LARGE_MESSAGE,
    PERSISTENCE_MESSAGE,
    AnchorFailed,
    ErrorKind,
    IntakeError,
    PayloadTooLarge,
    PipelineError,
    ReceiptNotFound,
    ReceiptNotReady,
    StageResult,
)
from confirmit.receipts.pipeline.progress import (
    COMPLETE,
    ERROR,
    PROGRESS,
    ProgressChannel,
)
from confirmit.receipts.pipeline.sanitizer import (
    EXCERPT_LIMIT,
    MAX_SUMMARY_BYTES,
    size_bytes,
    split,
)
from confirmit.receipts.pipeline.store import ReceiptStore
from confirmit.receipts.schemas import (
    AnchorVerification,
    CompleteEvent,
    ErrorEvent,
    LedgerAnchor,
    ProgressEvent,
    ReceiptRecord,
    ReceiptStatus,
    ScanOptions,
)

logger = logging.getLogger(__name__)

ANONYMOUS_USER = "anonymous"

# (percent, phase, message). The id reaches the client only after intake, so
# the stream starts at analysis.
ANALYZING = (20, "analyzing", "Extracting text and running forensic analysis...")
ANALYSIS_COMPLETE = (80, "analysis_complete", "Analysis complete!")
STORING = (85, "storing", "Saving verification result...")
LEDGER_ANCHORING = (90, "ledger_anchoring", "Anchoring to blockchain...")
LEDGER_ANCHORED = (100, "ledger_anchored", "Verified on blockchain!")
VERIFIED = (100, "complete", "Verification complete!")
VERIFIED_UNANCHORED = (100, "complete", "Verification complete! Blockchain anchoring can be retried later.")

_ID_ALPHABET = string.digits + string.ascii_uppercase


def _base36(value: int) -> str:
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_ID_ALPHABET[rem])
    return "".join(reversed(digits)) or "0"


def generate_receipt_id() -> str:
    """``RCP-`` + fixed-width base36 millisecond clock + random suffix.

    Ids sort by creation time; the suffix keeps same-millisecond ids apart.
    """
    timestamp = _base36(int(time.time() * 1000)).rjust(9, "0")
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(8))
    return f"RCP-{timestamp}{suffix}"


class ProgressReporter:
    """One receipt's view of the channel.

    Percent never goes backwards and exactly one terminal event is sent.
    """

    def __init__(self, channel: ProgressChannel, receipt_id: str):
        self.channel = channel
        self.receipt_id = receipt_id
        self.percent = 0
        self.finished = False
        # Set once status=completed is committed; the receipt can no longer fail.
        self.stored = False

    async def progress(self, percent: int, phase: str, message: str) -> None:
        if self.finished:
            return
        self.percent = max(self.percent, percent)
        event = ProgressEvent(
            receipt_id=self.receipt_id, percent=self.percent, phase=phase, message=message
        )
        logger.debug("Progress %s: %d%% %s", self.receipt_id, self.percent, phase)
        await self.channel.emit(self.receipt_id, PROGRESS, event.model_dump(mode="json"))

    async def complete(self, record: Optional[ReceiptRecord]) -> None:
        if self._close():
            event = CompleteEvent(receipt_id=self.receipt_id, record=record)
            await self.channel.emit(self.receipt_id, COMPLETE, event.model_dump(mode="json"))

    async def error(self, message: str) -> None:
        if self._close():
            event = ErrorEvent(receipt_id=self.receipt_id, message=message)
            await self.channel.emit(self.receipt_id, ERROR, event.model_dump(mode="json"))

    def _close(self) -> bool:
        if self.finished:
            return False
        self.finished = True
        return True


class ReceiptPipeline:
    def __init__(
        self,
        store: ReceiptStore,
        storage: Any,
        analyzer: Any,
        ledger: Any,
        channel: ProgressChannel,
        max_summary_bytes: int = MAX_SUMMARY_BYTES,
        excerpt_limit: int = EXCERPT_LIMIT,
    ):
        self.store = store
        self.storage = storage
        self.analyzer = analyzer
        self.ledger = ledger
        self.channel = channel
        self.max_summary_bytes = max_summary_bytes
        self.excerpt_limit = excerpt_limit
        self._tasks: set[asyncio.Task] = set()
        self._anchor_locks: dict[str, tuple[asyncio.Lock, int]] = {}

    # ── Intake ───────────────────────────────────────────────────────────
    async def submit(
        self,
        content: bytes,
        filename: str = "",
        content_type: str = "",
        options: Optional[ScanOptions] = None,
    ) -> str:
        """Store the image, create the receipt and start analysis.

        Raises :class:`IntakeError` if the image or the record cannot be
        stored; no background work is started in that case.
        """
        options = options or ScanOptions()
        receipt_id = generate_receipt_id()
        reporter = ProgressReporter(self.channel, receipt_id)
        logger.info("Starting receipt scan: %s", receipt_id)

        blob = await self.storage.store(content, filename, content_type)
        logger.info("Receipt image for %s stored at %s", receipt_id, blob.url)

        record = ReceiptRecord(
            receipt_id=receipt_id,
            user_id=options.user_id or ANONYMOUS_USER,
            storage_path=blob.url,
        )
        try:
            self.store.create_job(record, storage_public_id=blob.public_id)
        except SQLAlchemyError as e:
            logger.exception("Could not create receipt %s", receipt_id)
            raise IntakeError("Failed to register the receipt. Please try again.") from e

        task = asyncio.create_task(
            self._run(receipt_id, blob.url, options, reporter), name=f"receipt-{receipt_id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return receipt_id

    # ── Background task ──────────────────────────────────────────────────
    async def _run(
        self, receipt_id: str, image_url: str, options: ScanOptions, reporter: ProgressReporter
    ) -> None:
        started = time.monotonic()
        try:
            error = await self._process(receipt_id, image_url, options, reporter, started)
        except asyncio.CancelledError:
            await self._fail(
                receipt_id, reporter, PipelineError(ErrorKind.INTERRUPTED, INTERRUPTED_MESSAGE)
            )
            raise
        except Exception as e:
            logger.exception("Receipt analysis crashed for %s", receipt_id)
            error = PipelineError(ErrorKind.INTERNAL, INTERNAL_MESSAGE, detail=repr(e))

        if error is not None:
            await self._fail(receipt_id, reporter, error)
        else:
            logger.info(
                "Receipt analysis completed: %s in %dms",
                receipt_id,
                int((time.monotonic() - started) * 1000),
            )

    async def _process(
        self,
        receipt_id: str,
        image_url: str,
        options: ScanOptions,
        reporter: ProgressReporter,
        started: float,
    ) -> Optional[PipelineError]:
        await reporter.progress(*ANALYZING)
        analysis = await self.analyzer.analyze(image_url, receipt_id)
        if not analysis.ok:
            return analysis.error
        await reporter.progress(*ANALYSIS_COMPLETE)

        split_result = self._sanitize(receipt_id, analysis.value)
        if not split_result.ok:
            return split_result.error
        summary, sidecar = split_result.value

        await reporter.progress(*STORING)
        job_update = {
            "status": ReceiptStatus.COMPLETED,
            "summary": summary,
            "processing_time_ms": int((time.monotonic() - started) * 1000),
            "error": None,
        }
        persisted = self._persist(receipt_id, job_update, sidecar)
        if not persisted.ok:
            return persisted.error
        reporter.stored = True

        if options.anchor_on_ledger:
            await reporter.progress(*LEDGER_ANCHORING)
            anchored = await self._anchor_stage(receipt_id, summary)
            if anchored.ok:
                await reporter.progress(*LEDGER_ANCHORED)
            elif anchored.error.fatal:
                return anchored.error
            else:
                # The receipt stays completed without an anchor.
                logger.warning(
                    "Receipt %s completed without ledger anchor: %s",
                    receipt_id,
                    anchored.error.detail or anchored.error.message,
                )
                await reporter.progress(*VERIFIED_UNANCHORED)
        else:
            await reporter.progress(*VERIFIED)

        await reporter.complete(self._final_record(receipt_id))
        return None

    def _sanitize(self, receipt_id: str, raw: Any) -> StageResult[tuple[dict, dict]]:
        try:
            summary, sidecar = split(raw, self.max_summary_bytes, self.excerpt_limit)
        except PayloadTooLarge as e:
            logger.error("Summary too large for %s: %s", receipt_id, e)
            return StageResult.failure(ErrorKind.PAYLOAD_TOO_LARGE, PAYLOAD_TOO_LARGE_MESSAGE, str(e))
        logger.info(
            "Split %s: summary %.2fKB, sidecar %.2fKB",
            receipt_id,
            size_bytes(summary) / 1024,
            size_bytes(sidecar) / 1024,
        )
        return StageResult.success((summary, sidecar))

    def _persist(self, receipt_id: str, job_update: dict, sidecar: dict) -> StageResult[None]:
        try:
            self.store.atomic_write(receipt_id, job_update, sidecar)
        except (SQLAlchemyError, ReceiptNotFound) as e:
            logger.exception("Atomic write failed for %s", receipt_id)
            return StageResult.failure(ErrorKind.PERSISTENCE, PERSISTENCE_MESSAGE, repr(e))
        return StageResult.success(None)

    async def _anchor_stage(
        self, receipt_id: str, summary: Any
    ) -> StageResult[tuple[LedgerAnchor, bool]]:
        """Anchor once per receipt. The value is ``(anchor, already_anchored)``."""
        async with self._anchor_lock(receipt_id):
            try:
                existing = self.store.get_job(receipt_id)
                if existing is not None and existing.ledger_anchor is not None:
                    return StageResult.success((existing.ledger_anchor, True))

                result = await self.ledger.anchor(receipt_id, summary)
                if not result.ok:
                    return StageResult(error=result.error)
                self.store.update_field(receipt_id, "ledger_anchor", result.value)
                return StageResult.success((result.value, False))
            except (SQLAlchemyError, ReceiptNotFound) as e:
                logger.exception("Could not record ledger anchor for %s", receipt_id)
                return StageResult.failure(ErrorKind.ANCHOR, ANCHOR_MESSAGE, repr(e))
            except Exception as e:
                logger.exception("Ledger anchoring crashed for %s", receipt_id)
                return StageResult.failure(ErrorKind.ANCHOR, ANCHOR_MESSAGE, repr(e))

    @asynccontextmanager
    async def _anchor_lock(self, receipt_id: str):
        """Serialize anchoring per receipt; the entry is dropped with its last user."""
        lock, users = self._anchor_locks.get(receipt_id, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._anchor_locks[receipt_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._anchor_locks[receipt_id]
            if users == 1:
                del self._anchor_locks[receipt_id]
            else:
                self._anchor_locks[receipt_id] = (lock, users - 1)

    def _final_record(self, receipt_id: str) -> Optional[ReceiptRecord]:
        try:
            return self.store.get_job(receipt_id)
        except SQLAlchemyError:
            logger.exception("Could not reload receipt %s", receipt_id)
            return None

    async def _fail(self, receipt_id: str, reporter: ProgressReporter, error: PipelineError) -> None:
        if reporter.finished:
            logger.error(
                "Late failure for %s after terminal event [%s]: %s",
                receipt_id,
                error.kind.value,
                error.detail or error.message,
            )
            return
        if reporter.stored:
            logger.warning(
                "Receipt %s stays completed despite [%s] after storing: %s",
                receipt_id,
                error.kind.value,
                error.detail or error.message,
            )
            await reporter.complete(self._final_record(receipt_id))
            return
        logger.error(
            "Receipt analysis failed for %s [%s]: %s",
            receipt_id,
            error.kind.value,
            error.detail or error.message,
        )
        try:
            self.store.update_fields(
                receipt_id,
                {
                    "status": ReceiptStatus.FAILED,
                    "error": error.message,
                    "error_at": datetime.utcnow(),
                },
            )
        except (SQLAlchemyError, ReceiptNotFound):
            logger.exception("Could not record failure for %s", receipt_id)
        await reporter.error(error.message)

    # ── Queries and follow-up operations ─────────────────────────────────
    def get(self, receipt_id: str) -> ReceiptRecord:
        record = self.store.get_job(receipt_id)
        if record is None:
            raise ReceiptNotFound(receipt_id)
        return record

    def get_forensics(self, receipt_id: str) -> dict:
        record = self.get(receipt_id)
        sidecar = self.store.get_sidecar(receipt_id)
        if sidecar is None:
            raise ReceiptNotReady(f"Forensic details are not available (status: {record.status.value})")
        return sidecar

    def list_user_receipts(self, user_id: str, limit: int = 50) -> list[ReceiptRecord]:
        return self.store.list_user_jobs(user_id, limit=limit)

    async def anchor(self, receipt_id: str) -> tuple[LedgerAnchor, bool]:
        """Anchor a completed receipt. Returns ``(anchor, already_anchored)``."""
        record = self.get(receipt_id)
        if record.ledger_anchor is not None:
            return record.ledger_anchor, True
        if record.status != ReceiptStatus.COMPLETED:
            raise ReceiptNotReady(f"Receipt analysis is not complete (status: {record.status.value})")

        result = await self._anchor_stage(receipt_id, record.summary)
        if not result.ok:
            raise AnchorFailed(result.error.message)
        return result.value

    def verify_anchor(self, receipt_id: str) -> AnchorVerification:
        record = self.get(receipt_id)
        if record.ledger_anchor is None:
            raise ReceiptNotReady("Receipt is not anchored")
        computed = compute_hash(record.summary)
        return AnchorVerification(
            receipt_id=receipt_id,
            verified=computed == record.ledger_anchor.message_hash,
            anchored_hash=record.ledger_anchor.message_hash,
            computed_hash=computed,
        )

    # ── Task lifecycle ───────────────────────────────────────────────────
    @property
    def running(self) -> int:
        return len(self._tasks)

    async def wait_idle(self) -> None:
        """Wait until every background analysis has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self, grace_seconds: float) -> None:
        """Give running analyses ``grace_seconds``, then interrupt the rest."""
        if not self._tasks:
            return
        _, pending = await asyncio.wait(list(self._tasks), timeout=grace_seconds)
        if pending:
            logger.warning("Interrupting %d running receipt analyses", len(pending))
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
