"""
Ledger anchor client.

Submits the SHA-256 of a receipt summary to a consensus-service topic through
the ledger gateway's HTTP API and returns the transaction reference.
"""
from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Optional

import httpx

from confirmit.receipts.errors import ANCHOR_MESSAGE, ErrorKind, StageResult
from confirmit.receipts.schemas import LedgerAnchor, utc_now_iso

logger = logging.getLogger(__name__)

EXPLORER_URL = "https://hashscan.io/{network}/transaction/{transaction_id}"


def compute_hash(payload: Any) -> str:
    """Stable SHA-256 of ``payload`` (sorted keys, compact separators)."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class LedgerClient:
    def __init__(
        self,
        base_url: str,
        topic_id: str,
        network: str = "testnet",
        api_key: str = "",
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.topic_id = topic_id
        self.network = network
        self.api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.topic_id)

    def explorer_url(self, transaction_id: str) -> str:
        return EXPLORER_URL.format(network=self.network, transaction_id=transaction_id)

    async def anchor(self, entity_id: str, payload: Any) -> StageResult[LedgerAnchor]:
        if not self.configured:
            logger.warning("Ledger anchoring requested for %s but no ledger is configured", entity_id)
            return StageResult.failure(
                ErrorKind.ANCHOR, ANCHOR_MESSAGE, detail="LEDGER_URL / LEDGER_TOPIC_ID not set"
            )

        data_hash = compute_hash(payload)
        message = {"entity_id": entity_id, "data_hash": data_hash, "timestamp": utc_now_iso()}
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        url = f"{self.base_url}/api/v1/topics/{self.topic_id}/messages"
        logger.info("Anchoring %s to ledger topic %s", entity_id, self.topic_id)

        try:
            response = await self._client.post(url, json=message, headers=headers)
            response.raise_for_status()
            body = response.json()
            transaction_id = str(body["transaction_id"])
            anchor = LedgerAnchor(
                transaction_id=transaction_id,
                consensus_timestamp=str(body["consensus_timestamp"]),
                message_hash=data_hash,
                explorer_url=body.get("explorer_url") or self.explorer_url(transaction_id),
            )
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            logger.warning("Ledger anchoring failed for %s: %r", entity_id, e)
            return StageResult.failure(ErrorKind.ANCHOR, ANCHOR_MESSAGE, detail=repr(e))

        logger.info("Anchored %s: transaction %s", entity_id, anchor.transaction_id)
        return StageResult.success(anchor)

    async def aclose(self) -> None:
        await self._client.aclose()
