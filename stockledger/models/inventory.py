from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Index, Numeric, String, func
from sqlalchemy.orm import Mapped, mapped_column

from stockledger.db.base import Base


class StockMovement(Base):
    """
    One row per physical event. Positive quantity_change = stock in, negative = stock out.
    Write-once; corrections are new movements.
    """
    __tablename__ = "stock_movements"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    business_id: Mapped[str] = mapped_column(String(36), ForeignKey("businesses.id"), index=True)
    product_id: Mapped[str] = mapped_column(String(36), ForeignKey("products.id"), index=True)
    warehouse_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("warehouses.id"), nullable=True)
    batch_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("product_batches.id"), nullable=True)

    # "in", "out", "transfer_in", "transfer_out", "adjustment_in", "adjustment_out"
    movement_type: Mapped[str] = mapped_column(String(30), nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(50), nullable=False)  # "purchase", "sale", "transfer"
    quantity_change: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    unit_cost: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 4), nullable=True)
    reference_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    reference_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    note: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_stock_movements_business_product_created_at", "business_id", "product_id", "created_at"),
        Index("ix_stock_movements_reference", "business_id", "reference_type", "reference_id"),
    )


class InventoryLedger(Base):
    """
    Append-only book of record for stock. Each row snapshots the running balance
    after its change; rows are never updated or deleted.
    """
    __tablename__ = "inventory_ledger"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    business_id: Mapped[str] = mapped_column(String(36), ForeignKey("businesses.id"), index=True)
    warehouse_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("warehouses.id"), nullable=True)
    product_id: Mapped[str] = mapped_column(String(36), ForeignKey("products.id"), index=True)

    transaction_type: Mapped[str] = mapped_column(String(50), nullable=False)
    reference_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    reference_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    quantity_change: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    running_balance: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    unit_cost: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 4), nullable=True)
    total_value: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)
    batch_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    note: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_inventory_ledger_business_created_at", "business_id", "created_at"),
        Index(
            "ix_inventory_ledger_business_product_created_at",
            "business_id",
            "product_id",
            "created_at",
        ),
    )
