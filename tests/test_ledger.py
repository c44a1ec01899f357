"""
Tests for the ledger anchor client.
"""
import asyncio
import json

import httpx

from confirmit.receipts.clients.ledger import LedgerClient, compute_hash
from confirmit.receipts.errors import ErrorKind

SUMMARY = {"trust_score": 92, "verdict": "authentic", "issues": []}


def _anchor(handler, **kwargs):
    options = {"base_url": "http://ledger.test", "topic_id": "0.0.4821", "api_key": "secret"}
    options.update(kwargs)

    async def scenario():
        client = LedgerClient(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)), **options)
        try:
            return await client.anchor("RCP-1", SUMMARY)
        finally:
            await client.aclose()

    return asyncio.run(scenario())


class TestComputeHash:
    def test_key_order_does_not_matter(self):
        assert compute_hash({"a": 1, "b": [1, 2]}) == compute_hash({"b": [1, 2], "a": 1})

    def test_content_changes_hash(self):
        assert compute_hash({"a": 1}) != compute_hash({"a": 2})

    def test_hex_digest(self):
        digest = compute_hash(SUMMARY)
        assert len(digest) == 64
        int(digest, 16)


class TestAnchor:
    def test_success(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["auth"] = request.headers.get("authorization")
            seen["body"] = json.loads(request.read())
            return httpx.Response(
                200,
                json={"transaction_id": "0.0.4821@1700000000.1", "consensus_timestamp": "1700000000.2"},
            )

        result = _anchor(handler)
        assert result.ok
        anchor = result.value
        assert anchor.transaction_id == "0.0.4821@1700000000.1"
        assert anchor.message_hash == compute_hash(SUMMARY)
        assert anchor.explorer_url == "https://hashscan.io/testnet/transaction/0.0.4821@1700000000.1"
        assert seen["path"] == "/api/v1/topics/0.0.4821/messages"
        assert seen["auth"] == "Bearer secret"
        assert seen["body"]["entity_id"] == "RCP-1"
        assert seen["body"]["data_hash"] == compute_hash(SUMMARY)

    def test_http_failure(self):
        def handler(request):
            return httpx.Response(503, json={"error": "consensus node busy"})

        result = _anchor(handler)
        assert not result.ok
        assert result.error.kind == ErrorKind.ANCHOR
        assert not result.error.fatal

    def test_malformed_response(self):
        def handler(request):
            return httpx.Response(200, json={"status": "ok"})

        result = _anchor(handler)
        assert result.error.kind == ErrorKind.ANCHOR

    def test_unconfigured(self):
        def handler(request):
            raise AssertionError("no request expected")

        result = _anchor(handler, base_url="", topic_id="")
        assert result.error.kind == ErrorKind.ANCHOR
