"""
Decides which batches a stock-out consumes and what it costs.

Allocation only plans: it reads (and locks) the candidate batches and returns
an ordered list of takes. ``apply_allocation`` performs the guarded decrements.
"""

from collections import OrderedDict
from dataclasses import dataclass, field
from decimal import Decimal

from sqlalchemy import case, or_, select
from sqlalchemy.orm import Session

from stockledger.core.errors import BatchNotFound, InsufficientStock, StockValidationError
from stockledger.core.money import ZERO_QTY, to_cost, to_money
from stockledger.models.product import Batch, Serial
from stockledger.services import ledger_store

FEFO = "FEFO"
FIFO = "FIFO"


@dataclass(frozen=True)
class BatchTake:
    batch_id: str | None
    batch_number: str | None
    quantity: Decimal
    unit_cost: Decimal

    @property
    def cost(self) -> Decimal:
        return to_money(self.quantity * self.unit_cost)


@dataclass(frozen=True)
class Allocation:
    takes: tuple[BatchTake, ...] = field(default_factory=tuple)

    @property
    def cost_of_goods_sold(self) -> Decimal:
        return to_money(sum((take.quantity * take.unit_cost for take in self.takes), ZERO_QTY))

    @property
    def quantity(self) -> Decimal:
        return sum((take.quantity for take in self.takes), ZERO_QTY)

    @property
    def primary_batch_id(self) -> str | None:
        batch_ids = [take.batch_id for take in self.takes if take.batch_id]
        return batch_ids[0] if len(batch_ids) == 1 else None

    @property
    def primary_batch_number(self) -> str | None:
        numbers = [take.batch_number for take in self.takes if take.batch_number]
        return numbers[0] if len(numbers) == 1 else None


def _candidate_batches(
    db: Session,
    *,
    business_id: str,
    product_id: str,
    warehouse_id: str | None,
    method: str,
) -> list[Batch]:
    stmt = select(Batch).where(
        Batch.business_id == business_id,
        Batch.product_id == product_id,
        Batch.is_active.is_(True),
        Batch.quantity > 0,
    )
    if warehouse_id:
        # Warehouse-less batches predate warehouse tracking and stay eligible everywhere.
        stmt = stmt.where(or_(Batch.warehouse_id == warehouse_id, Batch.warehouse_id.is_(None)))

    if method == FIFO:
        stmt = stmt.order_by(Batch.created_at.asc(), Batch.id.asc())
    else:
        stmt = stmt.order_by(
            case((Batch.expiry_date.is_(None), 1), else_=0),
            Batch.expiry_date.asc(),
            Batch.created_at.asc(),
            Batch.id.asc(),
        )
    return list(
        db.execute(stmt.with_for_update().execution_options(populate_existing=True)).scalars().all()
    )


def allocate(
    db: Session,
    *,
    business_id: str,
    product_id: str,
    quantity: Decimal,
    fallback_cost: Decimal,
    warehouse_id: str | None = None,
    method: str = FEFO,
) -> Allocation:
    """
    Walk batches in policy order taking ``min(batch.quantity, remaining)`` from each.

    Whatever the batches cannot cover is a batch-less take costed at
    ``fallback_cost`` (the product's weighted average).
    """
    takes: list[BatchTake] = []
    remaining = quantity
    for batch in _candidate_batches(
        db,
        business_id=business_id,
        product_id=product_id,
        warehouse_id=warehouse_id,
        method=method,
    ):
        if remaining <= 0:
            break
        take = min(batch.quantity, remaining)
        takes.append(
            BatchTake(
                batch_id=batch.id,
                batch_number=batch.batch_number,
                quantity=take,
                unit_cost=to_cost(batch.cost_price),
            )
        )
        remaining -= take

    if remaining > 0:
        takes.append(BatchTake(batch_id=None, batch_number=None, quantity=remaining, unit_cost=to_cost(fallback_cost)))
    return Allocation(takes=tuple(takes))


def allocate_from_batch(
    db: Session,
    *,
    business_id: str,
    product_id: str,
    batch_id: str,
    quantity: Decimal,
    warehouse_id: str | None = None,
) -> Allocation:
    batch = ledger_store.get_batch(
        db,
        business_id=business_id,
        product_id=product_id,
        batch_id=batch_id,
        lock=True,
    )
    if batch is None or not batch.is_active:
        raise BatchNotFound(batch_id)
    if warehouse_id and batch.warehouse_id not in (None, warehouse_id):
        raise StockValidationError(
            "Batch is not stored in the requested warehouse",
            details={"batch_id": batch_id, "warehouse_id": warehouse_id},
        )
    if batch.quantity < quantity:
        raise InsufficientStock(
            available=batch.quantity,
            requested=quantity,
            scope="batch",
            message=f"Insufficient quantity in batch {batch.batch_number}. "
            f"Available: {batch.quantity}, Requested: {quantity}",
        )
    return Allocation(
        takes=(
            BatchTake(
                batch_id=batch.id,
                batch_number=batch.batch_number,
                quantity=quantity,
                unit_cost=to_cost(batch.cost_price),
            ),
        )
    )


def allocate_serials(
    db: Session,
    serials: list[Serial],
    *,
    business_id: str,
    product_id: str,
    fallback_cost: Decimal,
) -> Allocation:
    """One take per distinct batch of the listed serials, plus one for batch-less serials."""
    counts: "OrderedDict[str | None, int]" = OrderedDict()
    for serial in serials:
        counts[serial.batch_id] = counts.get(serial.batch_id, 0) + 1

    takes: list[BatchTake] = []
    for batch_id, count in counts.items():
        if batch_id is None:
            takes.append(
                BatchTake(batch_id=None, batch_number=None, quantity=Decimal(count), unit_cost=to_cost(fallback_cost))
            )
            continue
        batch = ledger_store.get_batch(
            db,
            business_id=business_id,
            product_id=product_id,
            batch_id=batch_id,
            lock=True,
        )
        if batch is None:
            raise BatchNotFound(batch_id)
        takes.append(
            BatchTake(
                batch_id=batch.id,
                batch_number=batch.batch_number,
                quantity=Decimal(count),
                unit_cost=to_cost(batch.cost_price),
            )
        )
    return Allocation(takes=tuple(takes))


def apply_allocation(db: Session, allocation: Allocation, *, business_id: str, product_id: str) -> None:
    for take in allocation.takes:
        if take.batch_id is None:
            continue
        batch = ledger_store.get_batch(
            db,
            business_id=business_id,
            product_id=product_id,
            batch_id=take.batch_id,
        )
        if batch is None:
            raise BatchNotFound(take.batch_id)
        ledger_store.decrease_batch(db, batch, quantity=take.quantity)
