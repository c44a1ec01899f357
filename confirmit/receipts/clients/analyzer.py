"""
HTTP client for the forensic / OCR analyzer service.

One call per receipt, bounded by a total deadline (minutes, not seconds:
the analyzer runs OCR plus several forensic techniques). Failures come back
classified instead of raised:

* deadline exceeded           -> ANALYZER_TIMEOUT
* connection refused / DNS    -> ANALYZER_UNAVAILABLE
* non-2xx or unusable body    -> ANALYZER_REJECTED (upstream message kept)
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import httpx

from confirmit.receipts.errors import (
    ANALYZER_REJECTED_MESSAGE,
    ANALYZER_TIMEOUT_MESSAGE,
    ANALYZER_UNAVAILABLE_MESSAGE,
    ErrorKind,
    StageResult,
)

logger = logging.getLogger(__name__)

ANALYZE_PATH = "/api/analyze-receipt"


class AnalyzerClient:
    def __init__(
        self,
        base_url: str,
        timeout: float = 180.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def analyze(self, image_url: str, receipt_id: str) -> StageResult[dict[str, Any]]:
        url = f"{self.base_url}{ANALYZE_PATH}"
        logger.info("Calling analyzer for %s at %s", receipt_id, url)

        try:
            response = await asyncio.wait_for(
                self._client.post(url, json={"image_url": image_url, "receipt_id": receipt_id}),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            logger.error("Analyzer timed out for %s after %.0fs", receipt_id, self.timeout)
            return StageResult.failure(
                ErrorKind.ANALYZER_TIMEOUT, ANALYZER_TIMEOUT_MESSAGE, detail=repr(e)
            )
        except httpx.TransportError as e:
            logger.error("Analyzer unreachable for %s: %r", receipt_id, e)
            return StageResult.failure(
                ErrorKind.ANALYZER_UNAVAILABLE, ANALYZER_UNAVAILABLE_MESSAGE, detail=repr(e)
            )

        if response.is_error:
            upstream = self._upstream_message(response)
            logger.error(
                "Analyzer rejected %s: HTTP %d %s", receipt_id, response.status_code, upstream or ""
            )
            return StageResult.failure(
                ErrorKind.ANALYZER_REJECTED,
                upstream or ANALYZER_REJECTED_MESSAGE,
                detail=f"HTTP {response.status_code}",
            )

        try:
            payload = response.json()
        except ValueError as e:
            logger.error("Analyzer returned a non-JSON body for %s", receipt_id)
            return StageResult.failure(
                ErrorKind.ANALYZER_REJECTED, ANALYZER_REJECTED_MESSAGE, detail=repr(e)
            )
        if not isinstance(payload, dict):
            logger.error("Analyzer returned %s instead of an object for %s", type(payload).__name__, receipt_id)
            return StageResult.failure(
                ErrorKind.ANALYZER_REJECTED, ANALYZER_REJECTED_MESSAGE, detail="body is not an object"
            )

        logger.info(
            "Analyzer responded for %s: trust_score=%s verdict=%s keys=%s",
            receipt_id,
            payload.get("trust_score"),
            payload.get("verdict"),
            sorted(payload),
        )
        return StageResult.success(payload)

    async def aclose(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _upstream_message(response: httpx.Response) -> Optional[str]:
        try:
            body = response.json()
        except ValueError:
            return None
        if not isinstance(body, dict):
            return None
        for key in ("detail", "message"):
            value = body.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return None
