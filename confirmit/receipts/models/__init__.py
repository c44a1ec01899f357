from confirmit.receipts.models.receipt import ReceiptForensicsModel, ReceiptModel

__all__ = ["ReceiptModel", "ReceiptForensicsModel"]
