"""
Receipt image storage.

Images are written under ``UPLOAD_DIR/receipts`` and served back from
``/uploads`` so the analyzer can fetch them by URL.
"""
from __future__ import annotations

import logging
import mimetypes
import uuid
from dataclasses import dataclass
from pathlib import Path

from starlette.concurrency import run_in_threadpool

from confirmit.receipts.errors import IntakeError

logger = logging.getLogger(__name__)

RECEIPTS_FOLDER = "receipts"


@dataclass(frozen=True)
class StoredBlob:
    url: str
    public_id: str


class LocalBlobStorage:
    def __init__(self, upload_dir: str | Path, public_base_url: str):
        self.upload_dir = Path(upload_dir)
        self.public_base_url = public_base_url.rstrip("/")

    async def store(self, content: bytes, filename: str = "", content_type: str = "") -> StoredBlob:
        """Persist ``content`` and return its public URL.

        Raises :class:`IntakeError` when the file cannot be written.
        """
        suffix = Path(filename or "").suffix.lower()
        if not suffix and content_type:
            suffix = mimetypes.guess_extension(content_type) or ""
        public_id = f"{RECEIPTS_FOLDER}/{uuid.uuid4().hex}{suffix}"
        target = self.upload_dir / public_id

        try:
            await run_in_threadpool(self._write, target, content)
        except OSError as e:
            logger.error("Failed to store receipt image %s: %s", public_id, e)
            raise IntakeError("Failed to store the receipt image. Please try again.") from e

        logger.info("Stored receipt image %s (%d bytes)", public_id, len(content))
        return StoredBlob(url=f"{self.public_base_url}/uploads/{public_id}", public_id=public_id)

    @staticmethod
    def _write(target: Path, content: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)
