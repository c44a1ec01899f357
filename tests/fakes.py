"""
Test doubles for the pipeline's collaborators.
"""
import asyncio
import copy
import threading

from confirmit.receipts.clients.ledger import compute_hash
from confirmit.receipts.clients.storage import StoredBlob
from confirmit.receipts.errors import ANCHOR_MESSAGE, ErrorKind, IntakeError, StageResult
from confirmit.receipts.pipeline.progress import ProgressChannel, Subscriber
from confirmit.receipts.schemas import LedgerAnchor

AUTHENTIC_RESULT = {
    "ocr_text": "SHOPRITE LEKKI\nBREAD 1,200.00\nMILK 850.00\nTOTAL 2,050.00",
    "trust_score": 92,
    "verdict": "authentic",
    "issues": [],
    "recommendation": "Receipt appears genuine.",
    "merchant": {"name": "Shoprite Lekki", "verified": True},
    "forensic_details": {"manipulation_score": 0.02},
}


class FakeBlobStorage:
    def __init__(self, fail=False):
        self.fail = fail
        self.stored = []

    async def store(self, content, filename="", content_type=""):
        if self.fail:
            raise IntakeError("Failed to store the receipt image. Please try again.")
        self.stored.append(content)
        public_id = f"receipts/{len(self.stored)}.jpg"
        return StoredBlob(url=f"http://testserver/uploads/{public_id}", public_id=public_id)


class FakeAnalyzer:
    """Canned analyzer: fixed result or error, optional delay or gate."""

    def __init__(self, result=None, error=None, delay=0.0):
        self.result = AUTHENTIC_RESULT if result is None else result
        self.error = error
        self.delay = delay
        self.delays = {}
        self.gate = None
        self.calls = []

    async def analyze(self, image_url, receipt_id):
        self.calls.append((image_url, receipt_id))
        if self.gate is not None:
            while not self.gate.is_set():
                await asyncio.sleep(0.01)
        delay = self.delays.get(image_url, self.delay)
        if delay:
            await asyncio.sleep(delay)
        if self.error is not None:
            return StageResult(error=self.error)
        return StageResult.success(copy.deepcopy(self.result))

    def hold(self):
        self.gate = threading.Event()
        return self.gate


class FakeLedger:
    """Canned ledger: anchors, fails, or raises; optionally held per receipt."""

    configured = True

    def __init__(self, fail=False, crash=None):
        self.fail = fail
        self.crash = crash
        self.gates = {}
        self.calls = []

    async def anchor(self, entity_id, payload):
        self.calls.append(entity_id)
        number = len(self.calls)
        gate = self.gates.get(entity_id, self.gates.get(None))
        if gate is not None:
            while not gate.is_set():
                await asyncio.sleep(0.01)
        if self.crash is not None:
            raise self.crash
        if self.fail:
            return StageResult.failure(ErrorKind.ANCHOR, ANCHOR_MESSAGE, detail="ledger unreachable")
        transaction_id = f"0.0.4821@1700000000.{number:09d}"
        return StageResult.success(
            LedgerAnchor(
                transaction_id=transaction_id,
                consensus_timestamp="1700000000.000000001",
                message_hash=compute_hash(payload),
                explorer_url=f"https://hashscan.io/testnet/transaction/{transaction_id}",
            )
        )

    def hold(self, entity_id=None):
        gate = threading.Event()
        self.gates[entity_id] = gate
        return gate

    async def aclose(self):
        pass


class RecordingChannel(ProgressChannel):
    """Channel that also keeps every emitted event, subscribed or not."""

    def __init__(self):
        super().__init__()
        self.emitted = []

    async def emit(self, receipt_id, event, data):
        self.emitted.append((receipt_id, event, data))
        return await super().emit(receipt_id, event, data)

    def events_for(self, receipt_id):
        return [(event, data) for rid, event, data in self.emitted if rid == receipt_id]


def make_subscriber(name="client"):
    messages = []

    async def send(message):
        messages.append(message)

    return Subscriber(subscriber_id=name, send=send), messages


