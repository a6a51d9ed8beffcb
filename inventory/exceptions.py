from decimal import Decimal


class StockLedgerError(Exception):
    """Base class for every failure reported by ``validate_document``."""

    code = "stock_ledger_error"
    default_message = "Stock ledger operation failed."

    def __init__(self, message=None):
        super().__init__(message or self.default_message)

    @property
    def message(self):
        return str(self)

    def details(self):
        return None


class DocumentNotFound(StockLedgerError):
    code = "not_found"
    default_message = "Document not found."

    def __init__(self, document_id):
        self.document_id = document_id
        super().__init__(f"Document {document_id} not found.")

    def details(self):
        return {"document_id": str(self.document_id)}


class AlreadyValidated(StockLedgerError):
    code = "already_validated"
    default_message = "Document is already validated."


class DocumentCanceled(StockLedgerError):
    code = "document_canceled"
    default_message = "Cannot validate a canceled document."


class MissingWarehouse(StockLedgerError):
    code = "missing_warehouse"

    def __init__(self, doc_type, *fields):
        self.doc_type = doc_type
        self.fields = fields
        super().__init__(f"{doc_type.title()} requires {' and '.join(fields)}.")

    def details(self):
        return {field: ["This field is required for this document type."] for field in self.fields}


class SameWarehouse(StockLedgerError):
    code = "same_warehouse"
    default_message = "Source and destination warehouses cannot be the same."


class InsufficientStock(StockLedgerError):
    code = "insufficient_stock"

    def __init__(self, product_id, available, requested, warehouse_id=None):
        self.product_id = product_id
        self.warehouse_id = warehouse_id
        self.available = Decimal(available)
        self.requested = Decimal(requested)
        super().__init__(
            f"Insufficient stock for product {product_id}. Available: {self.available}, Requested: {self.requested}"
        )

    def details(self):
        payload = {
            "product_id": str(self.product_id),
            "available": str(self.available),
            "requested": str(self.requested),
        }
        if self.warehouse_id is not None:
            payload["warehouse_id"] = str(self.warehouse_id)
        return payload


class UnknownDocumentType(StockLedgerError):
    code = "unknown_document_type"

    def __init__(self, doc_type):
        self.doc_type = doc_type
        super().__init__(f"Unknown document type: {doc_type}")
