"""
Row-level reads and writes shared by the stock primitives.

Every decrement here is a guarded conditional UPDATE (``... WHERE quantity >=
:take``) whose rowcount is checked, so two concurrent callers can never drive
a quantity negative, even on engines that ignore ``FOR UPDATE``. Callers must
hold the product row lock (``get_product(..., lock=True)``) before calling any
mutator in this module.
"""

import logging
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import case, select, update
from sqlalchemy.orm import Session

from stockledger.core.config import settings
from stockledger.core.errors import (
    InsufficientStock,
    ProductNotFound,
    StockValidationError,
    WarehouseNotFound,
    WarehouseResolutionFailed,
)
from stockledger.core.id_utils import new_id
from stockledger.core.money import ZERO_QTY, to_cost, to_money, to_qty, weighted_average_cost
from stockledger.core.observability import log_event
from stockledger.models.business import Business, Warehouse
from stockledger.models.inventory import InventoryLedger, StockMovement
from stockledger.models.location import StockLocation
from stockledger.models.product import SERIAL_AVAILABLE, SERIAL_SOLD, Batch, Product, Serial

logger = logging.getLogger("stockledger.ledger")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Products and units
# ---------------------------------------------------------------------------


def get_product(db: Session, *, business_id: str, product_id: str, lock: bool = False) -> Product:
    stmt = select(Product).where(
        Product.id == product_id,
        Product.business_id == business_id,
    )
    if lock:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    product = db.execute(stmt).scalar_one_or_none()
    if not product:
        raise ProductNotFound(product_id)
    return product


def positive_quantity(value: Decimal, *, field: str = "quantity") -> Decimal:
    """Round to stored precision; anything that rounds to nothing is rejected."""
    quantity = to_qty(value)
    if quantity <= 0:
        raise StockValidationError(
            f"{field} is below the smallest storable quantity",
            details={"field": field, "value": str(value), "smallest": "0.0001"},
        )
    return quantity


def convert_to_base_unit(
    product: Product,
    *,
    quantity: Decimal,
    unit_cost: Decimal | None = None,
    unit: str | None = None,
) -> tuple[Decimal, Decimal | None]:
    """Scale an entry-unit quantity (and per-unit cost) into the product's base unit."""
    if not unit or unit.lower() == (product.unit or "").lower():
        return positive_quantity(quantity), to_cost(unit_cost) if unit_cost is not None else None

    conversions = {str(key).lower(): value for key, value in (product.unit_conversions or {}).items()}
    raw_factor = conversions.get(unit.lower())
    if raw_factor is None:
        raise StockValidationError(
            f"Unknown unit '{unit}' for product",
            details={"unit": unit, "base_unit": product.unit, "known_units": sorted(conversions)},
        )
    factor = Decimal(str(raw_factor))
    if factor <= 0:
        raise StockValidationError(f"Unit conversion factor for '{unit}' must be positive")

    converted_cost = to_cost(unit_cost / factor) if unit_cost is not None else None
    return positive_quantity(quantity * factor), converted_cost


def increase_product_stock(
    db: Session,
    product: Product,
    *,
    quantity: Decimal,
    unit_cost: Decimal | None = None,
) -> Decimal:
    """Add to the aggregate and, when a cost is given, roll the weighted average."""
    old_stock = product.stock or ZERO_QTY
    if unit_cost is not None:
        product.cost_price = weighted_average_cost(old_stock, product.cost_price or ZERO_QTY, quantity, unit_cost)
    product.stock = Product.stock + quantity
    db.flush()
    db.refresh(product, attribute_names=["stock"])
    return product.stock


def decrease_product_stock(db: Session, product: Product, *, quantity: Decimal) -> Decimal:
    db.flush()
    result = db.execute(
        update(Product)
        .where(
            Product.id == product.id,
            Product.stock >= quantity,
        )
        .values(stock=Product.stock - quantity)
        .execution_options(synchronize_session=False)
    )
    db.refresh(product, attribute_names=["stock"])
    if result.rowcount != 1:
        raise InsufficientStock(available=product.stock, requested=quantity)
    return product.stock


# ---------------------------------------------------------------------------
# Warehouses
# ---------------------------------------------------------------------------


def get_warehouse(db: Session, *, business_id: str, warehouse_id: str) -> Warehouse:
    warehouse = db.execute(
        select(Warehouse).where(
            Warehouse.id == warehouse_id,
            Warehouse.business_id == business_id,
            Warehouse.is_active.is_(True),
        )
    ).scalar_one_or_none()
    if not warehouse:
        raise WarehouseNotFound(warehouse_id)
    return warehouse


def _get_primary_warehouse(db: Session, *, business_id: str) -> Warehouse | None:
    return db.execute(
        select(Warehouse).where(
            Warehouse.business_id == business_id,
            Warehouse.is_primary.is_(True),
        )
    ).scalar_one_or_none()


def resolve_warehouse(db: Session, *, business_id: str, warehouse_id: str | None = None) -> Warehouse:
    """
    Return the requested warehouse, else the business's primary one.

    A business with no primary warehouse gets one created on the spot. The
    business row is locked first so concurrent first stock-ins create it once.
    """
    if warehouse_id:
        return get_warehouse(db, business_id=business_id, warehouse_id=warehouse_id)

    primary = _get_primary_warehouse(db, business_id=business_id)
    if primary:
        return primary

    business = db.execute(
        select(Business).where(Business.id == business_id).with_for_update()
    ).scalar_one_or_none()
    if not business:
        raise WarehouseResolutionFailed(
            "Cannot resolve a warehouse for an unknown business",
            details={"business_id": business_id},
        )

    primary = _get_primary_warehouse(db, business_id=business_id)
    if primary:
        return primary

    primary = Warehouse(
        id=new_id(),
        business_id=business_id,
        name=settings.default_warehouse_name,
        code=settings.default_warehouse_code,
        is_primary=True,
        is_active=True,
    )
    db.add(primary)
    db.flush()
    log_event(logger, "warehouse.auto_created", business_id=business_id, warehouse_id=primary.id)
    return primary


# ---------------------------------------------------------------------------
# Locations
# ---------------------------------------------------------------------------


def get_location(
    db: Session,
    *,
    business_id: str,
    warehouse_id: str,
    product_id: str,
    state: str,
    lock: bool = False,
) -> StockLocation | None:
    stmt = select(StockLocation).where(
        StockLocation.business_id == business_id,
        StockLocation.warehouse_id == warehouse_id,
        StockLocation.product_id == product_id,
        StockLocation.state == state,
    )
    if lock:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    return db.execute(stmt).scalar_one_or_none()


def increase_location(
    db: Session,
    *,
    business_id: str,
    warehouse_id: str,
    product_id: str,
    state: str,
    quantity: Decimal,
) -> StockLocation:
    location = get_location(
        db,
        business_id=business_id,
        warehouse_id=warehouse_id,
        product_id=product_id,
        state=state,
        lock=True,
    )
    if location is None:
        location = StockLocation(
            id=new_id(),
            business_id=business_id,
            warehouse_id=warehouse_id,
            product_id=product_id,
            state=state,
            quantity=quantity,
        )
        db.add(location)
        db.flush()
        return location

    location.quantity = StockLocation.quantity + quantity
    db.flush()
    db.refresh(location, attribute_names=["quantity"])
    return location


def decrease_location(db: Session, location: StockLocation, *, quantity: Decimal) -> Decimal:
    db.flush()
    result = db.execute(
        update(StockLocation)
        .where(
            StockLocation.id == location.id,
            StockLocation.quantity >= quantity,
        )
        .values(quantity=StockLocation.quantity - quantity)
        .execution_options(synchronize_session=False)
    )
    db.refresh(location, attribute_names=["quantity"])
    if result.rowcount != 1:
        raise InsufficientStock(available=location.quantity, requested=quantity, scope="location")
    return location.quantity


def draw_from_locations(
    db: Session,
    *,
    business_id: str,
    product_id: str,
    state: str,
    quantity: Decimal,
) -> list[tuple[str, Decimal]]:
    """Take ``quantity`` from the product's rows in ``state``, primary warehouse first."""
    rows = db.execute(
        select(StockLocation)
        .join(Warehouse, Warehouse.id == StockLocation.warehouse_id)
        .where(
            StockLocation.business_id == business_id,
            StockLocation.product_id == product_id,
            StockLocation.state == state,
            StockLocation.quantity > 0,
        )
        .order_by(Warehouse.is_primary.desc(), Warehouse.created_at.asc(), StockLocation.created_at.asc())
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalars().all()

    available = sum((row.quantity for row in rows), ZERO_QTY)
    if available < quantity:
        raise InsufficientStock(available=available, requested=quantity, scope="location")

    drawn: list[tuple[str, Decimal]] = []
    remaining = quantity
    for row in rows:
        if remaining <= 0:
            break
        take = min(row.quantity, remaining)
        decrease_location(db, row, quantity=take)
        drawn.append((row.warehouse_id, take))
        remaining -= take
    return drawn


# ---------------------------------------------------------------------------
# Batches
# ---------------------------------------------------------------------------


def get_batch(
    db: Session,
    *,
    business_id: str,
    product_id: str,
    batch_id: str,
    lock: bool = False,
) -> Batch | None:
    stmt = select(Batch).where(
        Batch.id == batch_id,
        Batch.business_id == business_id,
        Batch.product_id == product_id,
    )
    if lock:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    return db.execute(stmt).scalar_one_or_none()


def upsert_batch(
    db: Session,
    *,
    business_id: str,
    product_id: str,
    warehouse_id: str,
    batch_number: str,
    quantity: Decimal,
    unit_cost: Decimal,
    manufacturing_date: date | None = None,
    expiry_date: date | None = None,
    notes: str | None = None,
) -> Batch:
    batch = db.execute(
        select(Batch)
        .where(
            Batch.business_id == business_id,
            Batch.product_id == product_id,
            Batch.batch_number == batch_number,
        )
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()

    if batch is None:
        batch = Batch(
            id=new_id(),
            business_id=business_id,
            product_id=product_id,
            warehouse_id=warehouse_id,
            batch_number=batch_number,
            quantity=quantity,
            reserved_quantity=ZERO_QTY,
            cost_price=unit_cost,
            manufacturing_date=manufacturing_date,
            expiry_date=expiry_date,
            is_active=True,
            notes=notes,
            created_at=_utcnow(),
        )
        db.add(batch)
        db.flush()
        return batch

    if batch.warehouse_id not in (None, warehouse_id):
        # An emptied batch follows its next receipt; a stocked one stays put.
        if batch.quantity > 0:
            raise StockValidationError(
                f"Batch {batch_number} is stocked in another warehouse",
                details={"batch_id": batch.id, "warehouse_id": batch.warehouse_id},
            )
        batch.warehouse_id = warehouse_id

    batch.cost_price = weighted_average_cost(batch.quantity, batch.cost_price, quantity, unit_cost)
    batch.quantity = Batch.quantity + quantity
    batch.is_active = True
    if manufacturing_date is not None:
        batch.manufacturing_date = manufacturing_date
    if expiry_date is not None:
        batch.expiry_date = expiry_date
    db.flush()
    db.refresh(batch, attribute_names=["quantity"])
    return batch


def decrease_batch(db: Session, batch: Batch, *, quantity: Decimal) -> Decimal:
    """
    Guarded batch decrement. Reserved quantity is clamped to what remains so
    ``0 <= reserved_quantity <= quantity`` keeps holding.
    """
    db.flush()
    remaining = Batch.quantity - quantity
    result = db.execute(
        update(Batch)
        .where(
            Batch.id == batch.id,
            Batch.quantity >= quantity,
        )
        .values(
            quantity=remaining,
            reserved_quantity=case(
                (Batch.reserved_quantity > remaining, remaining),
                else_=Batch.reserved_quantity,
            ),
        )
        .execution_options(synchronize_session=False)
    )
    db.refresh(batch, attribute_names=["quantity", "reserved_quantity"])
    if result.rowcount != 1:
        raise InsufficientStock(
            available=batch.quantity,
            requested=quantity,
            scope="batch",
            message=f"Insufficient quantity in batch {batch.batch_number}. "
            f"Available: {batch.quantity}, Requested: {quantity}",
        )
    return batch.quantity


# ---------------------------------------------------------------------------
# Serials
# ---------------------------------------------------------------------------


def register_serials(
    db: Session,
    *,
    business_id: str,
    product_id: str,
    warehouse_id: str,
    serial_numbers: list[str],
    batch_id: str | None = None,
    reference_type: str | None = None,
    reference_id: str | None = None,
    notes: str | None = None,
) -> list[Serial]:
    if not serial_numbers:
        return []

    existing = db.execute(
        select(Serial.serial_number).where(
            Serial.business_id == business_id,
            Serial.serial_number.in_(serial_numbers),
        )
    ).scalars().all()
    if existing:
        raise StockValidationError(
            "Serial numbers already registered",
            details={"serial_numbers": sorted(existing)},
        )

    serials = [
        Serial(
            id=new_id(),
            business_id=business_id,
            product_id=product_id,
            warehouse_id=warehouse_id,
            batch_id=batch_id,
            serial_number=serial_number,
            status=SERIAL_AVAILABLE,
            reference_type=reference_type,
            reference_id=reference_id,
            notes=notes,
        )
        for serial_number in serial_numbers
    ]
    db.add_all(serials)
    db.flush()
    return serials


def get_available_serials(
    db: Session,
    *,
    business_id: str,
    product_id: str,
    serial_numbers: list[str],
    warehouse_id: str | None = None,
) -> list[Serial]:
    stmt = select(Serial).where(
        Serial.business_id == business_id,
        Serial.product_id == product_id,
        Serial.serial_number.in_(serial_numbers),
        Serial.status == SERIAL_AVAILABLE,
    )
    if warehouse_id:
        stmt = stmt.where(Serial.warehouse_id == warehouse_id)
    serials = db.execute(stmt.with_for_update().execution_options(populate_existing=True)).scalars().all()

    found = {serial.serial_number for serial in serials}
    missing = [number for number in serial_numbers if number not in found]
    if missing:
        raise StockValidationError(
            "Serial numbers are not available for this product",
            details={"serial_numbers": missing},
        )
    return list(serials)


def mark_serials_sold(
    db: Session,
    serials: list[Serial],
    *,
    reference_type: str | None,
    reference_id: str | None,
    notes: str | None = None,
) -> None:
    if not serials:
        return
    db.flush()
    ids = [serial.id for serial in serials]
    result = db.execute(
        update(Serial)
        .where(
            Serial.id.in_(ids),
            Serial.status == SERIAL_AVAILABLE,
        )
        .values(
            status=SERIAL_SOLD,
            reference_type=reference_type,
            reference_id=reference_id,
            notes=notes,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != len(ids):
        raise StockValidationError("Serial numbers were sold concurrently", details={"serial_ids": ids})
    for serial in serials:
        db.refresh(serial)


def move_serials(db: Session, serials: list[Serial], *, warehouse_id: str) -> None:
    for serial in serials:
        serial.warehouse_id = warehouse_id
    db.flush()


# ---------------------------------------------------------------------------
# Movements and ledger
# ---------------------------------------------------------------------------


def append_movement(
    db: Session,
    *,
    business_id: str,
    product_id: str,
    movement_type: str,
    transaction_type: str,
    quantity_change: Decimal,
    unit_cost: Decimal | None = None,
    warehouse_id: str | None = None,
    batch_id: str | None = None,
    reference_type: str | None = None,
    reference_id: str | None = None,
    note: str | None = None,
) -> StockMovement:
    movement = StockMovement(
        id=new_id(),
        business_id=business_id,
        product_id=product_id,
        warehouse_id=warehouse_id,
        batch_id=batch_id,
        movement_type=movement_type,
        transaction_type=transaction_type,
        quantity_change=quantity_change,
        unit_cost=unit_cost,
        reference_type=reference_type,
        reference_id=reference_id,
        note=note,
        created_at=_utcnow(),
    )
    db.add(movement)
    return movement


def append_ledger_entry(
    db: Session,
    *,
    business_id: str,
    product_id: str,
    transaction_type: str,
    quantity_change: Decimal,
    running_balance: Decimal,
    unit_cost: Decimal | None = None,
    warehouse_id: str | None = None,
    batch_number: str | None = None,
    reference_type: str | None = None,
    reference_id: str | None = None,
    note: str | None = None,
) -> InventoryLedger:
    total_value = None
    if unit_cost is not None:
        total_value = to_money(abs(quantity_change) * unit_cost)
    entry = InventoryLedger(
        id=new_id(),
        business_id=business_id,
        warehouse_id=warehouse_id,
        product_id=product_id,
        transaction_type=transaction_type,
        reference_type=reference_type,
        reference_id=reference_id,
        quantity_change=quantity_change,
        running_balance=running_balance,
        unit_cost=unit_cost,
        total_value=total_value,
        batch_number=batch_number,
        note=note,
        created_at=_utcnow(),
    )
    db.add(entry)
    return entry
