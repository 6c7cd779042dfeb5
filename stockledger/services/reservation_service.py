"""
Soft holds on batch quantity. Reservations never move physical stock, and
stock-in/stock-out do not consult them.
"""

import logging
from decimal import Decimal

from sqlalchemy import case, select, update
from sqlalchemy.orm import Session

from stockledger.core.errors import BatchNotFound, InsufficientStock
from stockledger.core.money import ZERO_QTY
from stockledger.core.observability import log_event
from stockledger.models.product import Batch
from stockledger.schemas.stock import BatchReservationOut, ReleaseStockIn, ReservationOut, ReserveStockIn
from stockledger.services import ledger_store

logger = logging.getLogger("stockledger.reservations")


def _fefo_batches(db: Session, *, business_id: str, product_id: str, warehouse_id: str | None = None) -> list[Batch]:
    stmt = select(Batch).where(
        Batch.business_id == business_id,
        Batch.product_id == product_id,
        Batch.is_active.is_(True),
    )
    if warehouse_id:
        stmt = stmt.where((Batch.warehouse_id == warehouse_id) | Batch.warehouse_id.is_(None))
    stmt = stmt.order_by(
        case((Batch.expiry_date.is_(None), 1), else_=0),
        Batch.expiry_date.asc(),
        Batch.created_at.asc(),
        Batch.id.asc(),
    )
    return list(db.execute(stmt.with_for_update().execution_options(populate_existing=True)).scalars().all())


def _reserve_on_batch(db: Session, batch: Batch, *, quantity: Decimal) -> None:
    db.flush()
    result = db.execute(
        update(Batch)
        .where(
            Batch.id == batch.id,
            Batch.quantity - Batch.reserved_quantity >= quantity,
        )
        .values(reserved_quantity=Batch.reserved_quantity + quantity)
        .execution_options(synchronize_session=False)
    )
    db.refresh(batch, attribute_names=["quantity", "reserved_quantity"])
    if result.rowcount != 1:
        raise InsufficientStock(
            available=batch.quantity - batch.reserved_quantity,
            requested=quantity,
            scope="batch",
            message=f"Not enough unreserved quantity in batch {batch.batch_number}. "
            f"Available: {batch.quantity - batch.reserved_quantity}, Requested: {quantity}",
        )


def _release_on_batch(db: Session, batch: Batch, *, quantity: Decimal) -> Decimal:
    released = min(batch.reserved_quantity, quantity)
    db.flush()
    db.execute(
        update(Batch)
        .where(Batch.id == batch.id)
        .values(
            reserved_quantity=case(
                (Batch.reserved_quantity > quantity, Batch.reserved_quantity - quantity),
                else_=0,
            )
        )
        .execution_options(synchronize_session=False)
    )
    db.refresh(batch, attribute_names=["reserved_quantity"])
    return released


def reserve_stock(db: Session, payload: ReserveStockIn) -> tuple[ReservationOut, None]:
    quantity = ledger_store.positive_quantity(payload.quantity)
    ledger_store.get_product(db, business_id=payload.business_id, product_id=payload.product_id)

    reservations: list[BatchReservationOut] = []
    if payload.batch_id:
        batch = ledger_store.get_batch(
            db,
            business_id=payload.business_id,
            product_id=payload.product_id,
            batch_id=payload.batch_id,
            lock=True,
        )
        if batch is None:
            raise BatchNotFound(payload.batch_id)
        _reserve_on_batch(db, batch, quantity=quantity)
        reservations.append(BatchReservationOut(batch_id=batch.id, quantity=quantity))
    else:
        batches = _fefo_batches(
            db,
            business_id=payload.business_id,
            product_id=payload.product_id,
            warehouse_id=payload.warehouse_id,
        )
        free_total = sum((batch.quantity - batch.reserved_quantity for batch in batches), ZERO_QTY)
        if free_total < quantity:
            raise InsufficientStock(
                available=free_total,
                requested=quantity,
                scope="reservable",
                message=f"Not enough unreserved batch stock. Available: {free_total}, Requested: {quantity}",
            )
        remaining = quantity
        for batch in batches:
            if remaining <= 0:
                break
            take = min(batch.quantity - batch.reserved_quantity, remaining)
            if take <= 0:
                continue
            _reserve_on_batch(db, batch, quantity=take)
            reservations.append(BatchReservationOut(batch_id=batch.id, quantity=take))
            remaining -= take

    log_event(
        logger,
        "stock.reserved",
        business_id=payload.business_id,
        product_id=payload.product_id,
        quantity=str(quantity),
        batches=[item.batch_id for item in reservations],
    )
    return ReservationOut(ok=True, reservations=reservations), None


def release_stock(db: Session, payload: ReleaseStockIn) -> tuple[ReservationOut, None]:
    quantity = ledger_store.positive_quantity(payload.quantity)
    ledger_store.get_product(db, business_id=payload.business_id, product_id=payload.product_id)

    releases: list[BatchReservationOut] = []
    if payload.batch_id:
        batch = ledger_store.get_batch(
            db,
            business_id=payload.business_id,
            product_id=payload.product_id,
            batch_id=payload.batch_id,
            lock=True,
        )
        if batch is None:
            raise BatchNotFound(payload.batch_id)
        released = _release_on_batch(db, batch, quantity=quantity)
        releases.append(BatchReservationOut(batch_id=batch.id, quantity=released))
    else:
        # Holds placed FEFO are released newest-expiry first.
        remaining = quantity
        for batch in reversed(
            _fefo_batches(db, business_id=payload.business_id, product_id=payload.product_id)
        ):
            if remaining <= 0:
                break
            if batch.reserved_quantity <= 0:
                continue
            released = _release_on_batch(db, batch, quantity=remaining)
            releases.append(BatchReservationOut(batch_id=batch.id, quantity=released))
            remaining -= released

    log_event(
        logger,
        "stock.released",
        business_id=payload.business_id,
        product_id=payload.product_id,
        quantity=str(quantity),
        batches=[item.batch_id for item in releases],
    )
    return ReservationOut(ok=True, reservations=releases), None
