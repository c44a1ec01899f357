from confirmit.receipts.clients.analyzer import AnalyzerClient
from confirmit.receipts.clients.ledger import LedgerClient, compute_hash
from confirmit.receipts.clients.storage import LocalBlobStorage, StoredBlob

__all__ = ["AnalyzerClient", "LedgerClient", "LocalBlobStorage", "StoredBlob", "compute_hash"]
