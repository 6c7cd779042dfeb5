from decimal import Decimal
from typing import Any


class StockEngineError(Exception):
    """Base for every failure a stock primitive can report.

    ``kind`` is the stable machine-readable code returned to callers and used
    by the HTTP adapter to choose a status code.
    """

    kind = "stock_engine_error"
    status_code = 400

    def __init__(self, message: str, *, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details


class StockValidationError(StockEngineError):
    kind = "validation_error"
    status_code = 422


class NotFound(StockEngineError):
    kind = "not_found"
    status_code = 404


class ProductNotFound(NotFound):
    def __init__(self, product_id: str):
        super().__init__("Product not found", details={"product_id": product_id})


class BatchNotFound(NotFound):
    def __init__(self, batch_id: str):
        super().__init__("Batch not found", details={"batch_id": batch_id})


class WarehouseNotFound(NotFound):
    def __init__(self, warehouse_id: str):
        super().__init__("Warehouse not found", details={"warehouse_id": warehouse_id})


class InsufficientStock(StockEngineError):
    kind = "insufficient_stock"
    status_code = 409

    def __init__(
        self,
        *,
        available: Decimal,
        requested: Decimal,
        scope: str = "product",
        message: str | None = None,
    ):
        self.available = available
        self.requested = requested
        super().__init__(
            message or f"Insufficient {scope} stock. Available: {available}, Requested: {requested}",
            details={"available": str(available), "requested": str(requested), "scope": scope},
        )


class WarehouseResolutionFailed(StockEngineError):
    kind = "warehouse_resolution_failed"
    status_code = 500


class AccountingImbalance(StockEngineError):
    kind = "accounting_imbalance"
    status_code = 422

    def __init__(self, *, total_debit: Decimal, total_credit: Decimal):
        self.total_debit = total_debit
        self.total_credit = total_credit
        super().__init__(
            f"GL posting unbalanced: debit {total_debit} != credit {total_credit}",
            details={"total_debit": str(total_debit), "total_credit": str(total_credit)},
        )


class AccountingPostingFailed(StockEngineError):
    kind = "accounting_posting_failed"
    status_code = 500


class PrimitiveFailed(StockEngineError):
    """Re-raised form of a structured failure returned by a primitive."""

    def __init__(self, *, kind: str, message: str, status_code: int, details: dict[str, Any] | None = None):
        super().__init__(message, details=details)
        self.kind = kind
        self.status_code = status_code


class ImmutableRecordError(StockEngineError):
    kind = "immutable_record"
    status_code = 500
