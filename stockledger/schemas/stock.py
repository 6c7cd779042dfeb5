from datetime import date, datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from stockledger.schemas.common import JsonDecimal, PaginationMeta

ValuationMethod = Literal["FEFO", "FIFO"]


def _clean_serials(values: list[str] | None) -> list[str]:
    if not values:
        return []
    cleaned = [str(value).strip() for value in values if str(value).strip()]
    if len(set(cleaned)) != len(cleaned):
        raise ValueError("serial_numbers must not contain duplicates")
    return cleaned


def _clean_optional(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned or None


class _SerialsMixin(BaseModel):
    serial_numbers: list[str] = Field(default_factory=list)

    @field_validator("serial_numbers", mode="before")
    @classmethod
    def normalize_serials(cls, value: list[str] | None) -> list[str]:
        return _clean_serials(value)


# ---------------------------------------------------------------------------
# Add (stock-in)
# ---------------------------------------------------------------------------


class AddStockRequest(_SerialsMixin):
    product_id: str
    warehouse_id: str | None = None
    state: str | None = Field(default=None, max_length=30)
    quantity: Decimal = Field(gt=0, decimal_places=4)
    unit_cost: Decimal = Field(default=Decimal("0"), ge=0)
    unit: str | None = Field(default=None, max_length=20)
    batch_number: str | None = Field(default=None, max_length=100)
    manufacturing_date: date | None = None
    expiry_date: date | None = None
    notes: str | None = Field(default=None, max_length=500)
    reference_type: str = Field(default="purchase", min_length=1, max_length=50)
    reference_id: str | None = Field(default=None, max_length=36)

    @field_validator("batch_number", "unit", "state", "notes", mode="before")
    @classmethod
    def normalize_optional_strings(cls, value: str | None) -> str | None:
        return _clean_optional(value)

    @model_validator(mode="after")
    def validate_dates(self) -> "AddStockRequest":
        if self.manufacturing_date and self.expiry_date and self.expiry_date < self.manufacturing_date:
            raise ValueError("expiry_date cannot be before manufacturing_date")
        return self

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "product_id": "product-id-here",
                "quantity": 10,
                "unit_cost": 100.0,
                "batch_number": "LOT-2026-01",
                "expiry_date": "2027-01-31",
                "reference_type": "purchase",
                "reference_id": "purchase-id-here",
            }
        }
    )


class AddStockIn(AddStockRequest):
    business_id: str


class AddStockOut(BaseModel):
    new_stock: JsonDecimal
    new_cost_price: JsonDecimal
    batch_id: str | None = None
    movement_id: str


# ---------------------------------------------------------------------------
# Remove (stock-out)
# ---------------------------------------------------------------------------


class RemoveStockRequest(_SerialsMixin):
    product_id: str
    warehouse_id: str | None = None
    state: str | None = Field(default=None, max_length=30)
    quantity: Decimal = Field(gt=0, decimal_places=4)
    unit: str | None = Field(default=None, max_length=20)
    batch_id: str | None = None
    valuation_method: ValuationMethod = "FEFO"
    notes: str | None = Field(default=None, max_length=500)
    reference_type: str = Field(default="sale", min_length=1, max_length=50)
    reference_id: str | None = Field(default=None, max_length=36)

    @field_validator("unit", "state", "notes", mode="before")
    @classmethod
    def normalize_optional_strings(cls, value: str | None) -> str | None:
        return _clean_optional(value)

    @model_validator(mode="after")
    def validate_target(self) -> "RemoveStockRequest":
        if self.batch_id and self.serial_numbers:
            raise ValueError("Target either batch_id or serial_numbers, not both")
        return self


class RemoveStockIn(RemoveStockRequest):
    business_id: str


class BatchAllocationOut(BaseModel):
    batch_id: str | None = None
    batch_number: str | None = None
    quantity: JsonDecimal
    unit_cost: JsonDecimal
    cost: JsonDecimal


class RemoveStockOut(BaseModel):
    new_stock: JsonDecimal
    movement_id: str
    cost_of_goods_sold: JsonDecimal
    allocations: list[BatchAllocationOut] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Transfer
# ---------------------------------------------------------------------------


class TransferStockRequest(_SerialsMixin):
    product_id: str
    from_warehouse_id: str
    to_warehouse_id: str
    quantity: Decimal = Field(gt=0, decimal_places=4)
    state: str | None = Field(default=None, max_length=30)
    batch_id: str | None = None
    notes: str | None = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def validate_warehouses(self) -> "TransferStockRequest":
        if self.from_warehouse_id == self.to_warehouse_id:
            raise ValueError("Source and destination warehouses must be different")
        return self


class TransferStockIn(TransferStockRequest):
    business_id: str


class TransferStockOut(BaseModel):
    transfer_id: str
    transfer_number: str


# ---------------------------------------------------------------------------
# Adjust
# ---------------------------------------------------------------------------


class AdjustStockRequest(_SerialsMixin):
    product_id: str
    warehouse_id: str | None = None
    state: str | None = Field(default=None, max_length=30)
    quantity_change: Decimal = Field(
        ...,
        decimal_places=4,
        description="Positive adds stock, negative removes stock. Cannot be zero.",
    )
    reason: str = Field(..., min_length=1, max_length=100)
    notes: str | None = Field(default=None, max_length=500)

    @field_validator("quantity_change")
    @classmethod
    def validate_non_zero_quantity_change(cls, value: Decimal) -> Decimal:
        if value == 0:
            raise ValueError("quantity_change cannot be zero")
        return value

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "product_id": "product-id-here",
                "quantity_change": -2,
                "reason": "damaged_stock",
                "notes": "2 pieces damaged during packaging",
            }
        }
    )


class AdjustStockIn(AdjustStockRequest):
    business_id: str


class AdjustStockOut(BaseModel):
    new_stock: JsonDecimal
    movement_id: str


# ---------------------------------------------------------------------------
# Reservations
# ---------------------------------------------------------------------------


class ReserveStockRequest(BaseModel):
    product_id: str
    quantity: Decimal = Field(gt=0, decimal_places=4)
    warehouse_id: str | None = None
    batch_id: str | None = None


class ReserveStockIn(ReserveStockRequest):
    business_id: str


class ReleaseStockRequest(BaseModel):
    product_id: str
    quantity: Decimal = Field(gt=0, decimal_places=4)
    batch_id: str | None = None


class ReleaseStockIn(ReleaseStockRequest):
    business_id: str


class BatchReservationOut(BaseModel):
    batch_id: str
    quantity: JsonDecimal


class ReservationOut(BaseModel):
    ok: bool = True
    reservations: list[BatchReservationOut] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


class LocationLevelOut(BaseModel):
    warehouse_id: str
    warehouse_name: str
    state: str
    quantity: float


class StockLevelOut(BaseModel):
    product_id: str
    unit: str
    stock: float
    cost_price: float
    locations: list[LocationLevelOut]


class BatchOut(BaseModel):
    id: str
    batch_number: str
    warehouse_id: str | None = None
    quantity: float
    reserved_quantity: float
    available_quantity: float
    cost_price: float
    manufacturing_date: date | None = None
    expiry_date: date | None = None


class InventoryLedgerEntryOut(BaseModel):
    id: str
    product_id: str
    warehouse_id: str | None = None
    transaction_type: str
    quantity_change: float
    running_balance: float
    unit_cost: float | None = None
    total_value: float | None = None
    batch_number: str | None = None
    reference_type: str | None = None
    reference_id: str | None = None
    note: str | None = None
    created_at: datetime


class InventoryLedgerListOut(BaseModel):
    items: list[InventoryLedgerEntryOut]
    pagination: PaginationMeta


class StockMovementOut(BaseModel):
    id: str
    product_id: str
    warehouse_id: str | None = None
    warehouse_name: str | None = None
    batch_id: str | None = None
    batch_number: str | None = None
    movement_type: str
    transaction_type: str
    quantity_change: float
    unit_cost: float | None = None
    reference_type: str | None = None
    reference_id: str | None = None
    note: str | None = None
    created_at: datetime


class StockMovementListOut(BaseModel):
    items: list[StockMovementOut]
    pagination: PaginationMeta


class StockValuationRowOut(BaseModel):
    product_id: str
    name: str
    sku: str | None = None
    stock: float
    cost_price: float
    selling_price: float
    stock_value: float
    potential_revenue: float
    potential_profit: float


class StockValuationTotalsOut(BaseModel):
    stock_value: float
    potential_revenue: float
    potential_profit: float
    items: int
    units: float


class StockValuationOut(BaseModel):
    items: list[StockValuationRowOut]
    totals: StockValuationTotalsOut

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "items": [
                    {
                        "product_id": "product-id",
                        "name": "Paracetamol 500mg",
                        "sku": "PARA-500",
                        "stock": 40,
                        "cost_price": 2.5,
                        "selling_price": 4.0,
                        "stock_value": 100.0,
                        "potential_revenue": 160.0,
                        "potential_profit": 60.0,
                    }
                ],
                "totals": {
                    "stock_value": 100.0,
                    "potential_revenue": 160.0,
                    "potential_profit": 60.0,
                    "items": 1,
                    "units": 40,
                },
            }
        }
    )


class LowStockProductOut(BaseModel):
    product_id: str
    name: str
    sku: str | None = None
    stock: float
    reorder_level: float


class LowStockListOut(BaseModel):
    items: list[LowStockProductOut]
    pagination: PaginationMeta
