"""
Add, Remove, Transfer and Adjust.

Each function runs inside the caller's transaction and either returns its
result together with the ``StockChangeEvent`` to hand to the hooks after
commit, or raises a ``StockEngineError``. Nothing here commits or rolls back;
``engine.StockEngine`` owns the transaction boundary.
"""

import logging
from decimal import Decimal

from sqlalchemy.orm import Session

from stockledger.core.errors import BatchNotFound, InsufficientStock, StockValidationError
from stockledger.core.id_utils import generate_transfer_number, new_id
from stockledger.core.money import to_cost, to_money
from stockledger.core.observability import log_event
from stockledger.db.capabilities import SchemaCapabilities
from stockledger.models.location import STOCK_STATES, StockTransfer
from stockledger.models.product import Product
from stockledger.schemas.stock import (
    AddStockIn,
    AddStockOut,
    AdjustStockIn,
    AdjustStockOut,
    BatchAllocationOut,
    RemoveStockIn,
    RemoveStockOut,
    TransferStockIn,
    TransferStockOut,
)
from stockledger.services import batch_allocator, gl_service, ledger_store
from stockledger.services.hook_service import StockChangeEvent

logger = logging.getLogger("stockledger.stock")

PURCHASE = "purchase"
PRODUCTION = "production"
PRODUCTION_CONSUMPTION = "production_consumption"


def _resolve_state(capabilities: SchemaCapabilities, requested: str | None) -> str:
    state = capabilities.resolve_state(requested)
    if state not in STOCK_STATES:
        raise StockValidationError(
            f"Unknown stock state '{state}'",
            details={"state": state, "allowed": list(STOCK_STATES)},
        )
    return state


def _check_serial_count(serial_numbers: list[str], quantity: Decimal) -> None:
    if serial_numbers and Decimal(len(serial_numbers)) != quantity:
        raise StockValidationError(
            "Number of serial numbers must match quantity",
            details={"serial_count": len(serial_numbers), "quantity": str(quantity)},
        )


def _insufficient_at_location(state: str, available: Decimal, requested: Decimal) -> InsufficientStock:
    return InsufficientStock(
        available=available,
        requested=requested,
        scope="location",
        message=f"Insufficient {state} stock. Available: {available}, Requested: {requested}",
    )


def _target_warehouse_id(
    db: Session,
    *,
    business_id: str,
    product_id: str,
    serial_numbers: list[str],
    batch_id: str | None = None,
) -> str | None:
    """Warehouse holding the named serials or batch, for requests that name no warehouse."""
    if serial_numbers:
        serials = ledger_store.get_available_serials(
            db,
            business_id=business_id,
            product_id=product_id,
            serial_numbers=serial_numbers,
        )
        homes = {serial.warehouse_id for serial in serials}
        if len(homes) > 1:
            raise StockValidationError(
                "Serial numbers are stored in more than one warehouse",
                details={"warehouse_ids": sorted(str(home) for home in homes)},
            )
        return homes.pop()
    if batch_id:
        batch = ledger_store.get_batch(db, business_id=business_id, product_id=product_id, batch_id=batch_id)
        if batch is not None:
            return batch.warehouse_id
    return None


# ---------------------------------------------------------------------------
# Add
# ---------------------------------------------------------------------------


def _stock_in_gl_lines(reference_type: str, value: Decimal) -> list[gl_service.GLLine]:
    if reference_type == PURCHASE:
        return [
            gl_service.debit(gl_service.ROLE_INVENTORY, value),
            gl_service.credit(gl_service.ROLE_AP, value),
        ]
    if reference_type == PRODUCTION:
        return [
            gl_service.debit(gl_service.ROLE_INVENTORY, value),
            gl_service.credit(gl_service.ROLE_EXPENSE, value),
        ]
    return []


def add_stock(
    db: Session,
    payload: AddStockIn,
    *,
    capabilities: SchemaCapabilities,
) -> tuple[AddStockOut, StockChangeEvent]:
    product = ledger_store.get_product(db, business_id=payload.business_id, product_id=payload.product_id, lock=True)
    quantity, unit_cost = ledger_store.convert_to_base_unit(
        product,
        quantity=payload.quantity,
        unit_cost=payload.unit_cost,
        unit=payload.unit,
    )
    _check_serial_count(payload.serial_numbers, quantity)
    state = _resolve_state(capabilities, payload.state)
    warehouse = ledger_store.resolve_warehouse(db, business_id=payload.business_id, warehouse_id=payload.warehouse_id)

    new_stock = ledger_store.increase_product_stock(db, product, quantity=quantity, unit_cost=unit_cost)

    batch = None
    if payload.batch_number:
        batch = ledger_store.upsert_batch(
            db,
            business_id=payload.business_id,
            product_id=product.id,
            warehouse_id=warehouse.id,
            batch_number=payload.batch_number,
            quantity=quantity,
            unit_cost=unit_cost,
            manufacturing_date=payload.manufacturing_date,
            expiry_date=payload.expiry_date,
            notes=payload.notes,
        )

    ledger_store.increase_location(
        db,
        business_id=payload.business_id,
        warehouse_id=warehouse.id,
        product_id=product.id,
        state=state,
        quantity=quantity,
    )
    ledger_store.register_serials(
        db,
        business_id=payload.business_id,
        product_id=product.id,
        warehouse_id=warehouse.id,
        serial_numbers=payload.serial_numbers,
        batch_id=batch.id if batch else None,
    )

    movement = ledger_store.append_movement(
        db,
        business_id=payload.business_id,
        product_id=product.id,
        movement_type="in",
        transaction_type=payload.reference_type,
        quantity_change=quantity,
        unit_cost=unit_cost,
        warehouse_id=warehouse.id,
        batch_id=batch.id if batch else None,
        reference_type=payload.reference_type,
        reference_id=payload.reference_id,
        note=payload.notes,
    )
    ledger_store.append_ledger_entry(
        db,
        business_id=payload.business_id,
        product_id=product.id,
        transaction_type=payload.reference_type,
        quantity_change=quantity,
        running_balance=new_stock,
        unit_cost=unit_cost,
        warehouse_id=warehouse.id,
        batch_number=batch.batch_number if batch else None,
        reference_type=payload.reference_type,
        reference_id=payload.reference_id,
        note=payload.notes,
    )

    value = to_money(quantity * unit_cost)
    lines = _stock_in_gl_lines(payload.reference_type, value) if value > 0 else []
    if lines:
        gl_service.post_gl_entry(
            db,
            business_id=payload.business_id,
            lines=lines,
            reference_type=payload.reference_type,
            reference_id=payload.reference_id or movement.id,
            description=f"Stock in: {product.name}",
        )
    db.flush()

    log_event(
        logger,
        "stock.added",
        business_id=payload.business_id,
        product_id=product.id,
        warehouse_id=warehouse.id,
        quantity=str(quantity),
        new_stock=str(new_stock),
    )
    result = AddStockOut(
        new_stock=new_stock,
        new_cost_price=product.cost_price,
        batch_id=batch.id if batch else None,
        movement_id=movement.id,
    )
    event = StockChangeEvent(
        business_id=payload.business_id,
        product_id=product.id,
        operation="add",
        quantity_change=quantity,
        new_stock=new_stock,
        warehouse_id=warehouse.id,
        reference_type=payload.reference_type,
        reference_id=payload.reference_id,
        movement_ids=(movement.id,),
    )
    return result, event


# ---------------------------------------------------------------------------
# Remove
# ---------------------------------------------------------------------------


def _stock_out_gl_lines(reference_type: str, value: Decimal) -> list[gl_service.GLLine]:
    debit_role = gl_service.ROLE_EXPENSE if reference_type == PRODUCTION_CONSUMPTION else gl_service.ROLE_COGS
    return [
        gl_service.debit(debit_role, value),
        gl_service.credit(gl_service.ROLE_INVENTORY, value),
    ]


def _plan_allocation(
    db: Session,
    payload: RemoveStockIn,
    product: Product,
    *,
    quantity: Decimal,
    warehouse_id: str | None,
) -> tuple[batch_allocator.Allocation, list]:
    if payload.serial_numbers:
        serials = ledger_store.get_available_serials(
            db,
            business_id=payload.business_id,
            product_id=product.id,
            serial_numbers=payload.serial_numbers,
            warehouse_id=warehouse_id,
        )
        allocation = batch_allocator.allocate_serials(
            db,
            serials,
            business_id=payload.business_id,
            product_id=product.id,
            fallback_cost=product.cost_price,
        )
        return allocation, serials

    if payload.batch_id:
        allocation = batch_allocator.allocate_from_batch(
            db,
            business_id=payload.business_id,
            product_id=product.id,
            batch_id=payload.batch_id,
            quantity=quantity,
            warehouse_id=warehouse_id,
        )
        return allocation, []

    allocation = batch_allocator.allocate(
        db,
        business_id=payload.business_id,
        product_id=product.id,
        quantity=quantity,
        fallback_cost=product.cost_price,
        warehouse_id=warehouse_id,
        method=payload.valuation_method,
    )
    return allocation, []


def remove_stock(
    db: Session,
    payload: RemoveStockIn,
    *,
    capabilities: SchemaCapabilities,
) -> tuple[RemoveStockOut, StockChangeEvent]:
    product = ledger_store.get_product(db, business_id=payload.business_id, product_id=payload.product_id, lock=True)
    quantity, _ = ledger_store.convert_to_base_unit(product, quantity=payload.quantity, unit=payload.unit)
    _check_serial_count(payload.serial_numbers, quantity)
    state = _resolve_state(capabilities, payload.state)
    scope_id = payload.warehouse_id or _target_warehouse_id(
        db,
        business_id=payload.business_id,
        product_id=product.id,
        serial_numbers=payload.serial_numbers,
        batch_id=payload.batch_id,
    )

    warehouse = None
    location = None
    if scope_id:
        warehouse = ledger_store.get_warehouse(db, business_id=payload.business_id, warehouse_id=scope_id)
        location = ledger_store.get_location(
            db,
            business_id=payload.business_id,
            warehouse_id=warehouse.id,
            product_id=product.id,
            state=state,
            lock=True,
        )
        available = location.quantity if location else Decimal("0")
        if available < quantity:
            raise _insufficient_at_location(state, available, quantity)
    elif product.stock < quantity:
        raise InsufficientStock(available=product.stock, requested=quantity)

    new_stock = ledger_store.decrease_product_stock(db, product, quantity=quantity)

    allocation, serials = _plan_allocation(
        db,
        payload,
        product,
        quantity=quantity,
        warehouse_id=warehouse.id if warehouse else None,
    )
    batch_allocator.apply_allocation(db, allocation, business_id=payload.business_id, product_id=product.id)

    if location is not None:
        ledger_store.decrease_location(db, location, quantity=quantity)
        movement_warehouse_id = location.warehouse_id
    else:
        drawn = ledger_store.draw_from_locations(
            db,
            business_id=payload.business_id,
            product_id=product.id,
            state=state,
            quantity=quantity,
        )
        movement_warehouse_id = drawn[0][0] if len(drawn) == 1 else None

    ledger_store.mark_serials_sold(
        db,
        serials,
        reference_type=payload.reference_type,
        reference_id=payload.reference_id,
        notes=payload.notes,
    )

    cost_of_goods_sold = allocation.cost_of_goods_sold
    unit_cost = to_cost(cost_of_goods_sold / quantity)
    movement = ledger_store.append_movement(
        db,
        business_id=payload.business_id,
        product_id=product.id,
        movement_type="out",
        transaction_type=payload.reference_type,
        quantity_change=-quantity,
        unit_cost=unit_cost,
        warehouse_id=movement_warehouse_id,
        batch_id=allocation.primary_batch_id,
        reference_type=payload.reference_type,
        reference_id=payload.reference_id,
        note=payload.notes,
    )
    ledger_store.append_ledger_entry(
        db,
        business_id=payload.business_id,
        product_id=product.id,
        transaction_type=payload.reference_type,
        quantity_change=-quantity,
        running_balance=new_stock,
        unit_cost=unit_cost,
        warehouse_id=movement_warehouse_id,
        batch_number=allocation.primary_batch_number,
        reference_type=payload.reference_type,
        reference_id=payload.reference_id,
        note=payload.notes,
    )

    if cost_of_goods_sold > 0:
        gl_service.post_gl_entry(
            db,
            business_id=payload.business_id,
            lines=_stock_out_gl_lines(payload.reference_type, cost_of_goods_sold),
            reference_type=payload.reference_type,
            reference_id=payload.reference_id or movement.id,
            description=f"Stock out: {product.name}",
        )
    db.flush()

    log_event(
        logger,
        "stock.removed",
        business_id=payload.business_id,
        product_id=product.id,
        warehouse_id=movement_warehouse_id,
        quantity=str(quantity),
        new_stock=str(new_stock),
        cost_of_goods_sold=str(cost_of_goods_sold),
    )
    result = RemoveStockOut(
        new_stock=new_stock,
        movement_id=movement.id,
        cost_of_goods_sold=cost_of_goods_sold,
        allocations=[
            BatchAllocationOut(
                batch_id=take.batch_id,
                batch_number=take.batch_number,
                quantity=take.quantity,
                unit_cost=take.unit_cost,
                cost=take.cost,
            )
            for take in allocation.takes
        ],
    )
    event = StockChangeEvent(
        business_id=payload.business_id,
        product_id=product.id,
        operation="remove",
        quantity_change=-quantity,
        new_stock=new_stock,
        warehouse_id=movement_warehouse_id,
        reference_type=payload.reference_type,
        reference_id=payload.reference_id,
        movement_ids=(movement.id,),
    )
    return result, event


# ---------------------------------------------------------------------------
# Transfer
# ---------------------------------------------------------------------------


def transfer_stock(
    db: Session,
    payload: TransferStockIn,
    *,
    capabilities: SchemaCapabilities,
) -> tuple[TransferStockOut, StockChangeEvent]:
    product = ledger_store.get_product(db, business_id=payload.business_id, product_id=payload.product_id, lock=True)
    source = ledger_store.get_warehouse(db, business_id=payload.business_id, warehouse_id=payload.from_warehouse_id)
    destination = ledger_store.get_warehouse(db, business_id=payload.business_id, warehouse_id=payload.to_warehouse_id)
    quantity = ledger_store.positive_quantity(payload.quantity)
    state = _resolve_state(capabilities, payload.state)
    _check_serial_count(payload.serial_numbers, quantity)

    source_location = ledger_store.get_location(
        db,
        business_id=payload.business_id,
        warehouse_id=source.id,
        product_id=product.id,
        state=state,
        lock=True,
    )
    available = source_location.quantity if source_location else Decimal("0")
    if source_location is None or available < quantity:
        raise _insufficient_at_location(state, available, quantity)

    batch = None
    if payload.batch_id:
        batch = ledger_store.get_batch(
            db,
            business_id=payload.business_id,
            product_id=product.id,
            batch_id=payload.batch_id,
            lock=True,
        )
        if batch is None:
            raise BatchNotFound(payload.batch_id)
        if batch.warehouse_id not in (None, source.id):
            raise StockValidationError(
                "Batch is not stored in the source warehouse",
                details={"batch_id": batch.id, "warehouse_id": source.id},
            )
        if batch.quantity < quantity:
            raise InsufficientStock(available=batch.quantity, requested=quantity, scope="batch")

    serials = []
    if payload.serial_numbers:
        serials = ledger_store.get_available_serials(
            db,
            business_id=payload.business_id,
            product_id=product.id,
            serial_numbers=payload.serial_numbers,
            warehouse_id=source.id,
        )

    transfer = StockTransfer(
        id=new_id(),
        business_id=payload.business_id,
        transfer_number=generate_transfer_number(),
        product_id=product.id,
        batch_id=batch.id if batch else None,
        from_warehouse_id=source.id,
        to_warehouse_id=destination.id,
        state=state,
        quantity=quantity,
        status="completed",
        note=payload.notes,
    )
    db.add(transfer)

    source_balance = ledger_store.decrease_location(db, source_location, quantity=quantity)
    ledger_store.increase_location(
        db,
        business_id=payload.business_id,
        warehouse_id=destination.id,
        product_id=product.id,
        state=state,
        quantity=quantity,
    )

    # Batch numbers are unique per product, so only a whole batch can change warehouse.
    if batch is not None and batch.quantity == quantity:
        batch.warehouse_id = destination.id
    ledger_store.move_serials(db, serials, warehouse_id=destination.id)

    note = payload.notes or f"Transfer {transfer.transfer_number}"
    ledger_store.append_ledger_entry(
        db,
        business_id=payload.business_id,
        product_id=product.id,
        transaction_type="transfer",
        quantity_change=-quantity,
        running_balance=source_balance,
        unit_cost=product.cost_price,
        warehouse_id=source.id,
        batch_number=batch.batch_number if batch else None,
        reference_type="transfer",
        reference_id=transfer.id,
        note=note,
    )
    movement_out = ledger_store.append_movement(
        db,
        business_id=payload.business_id,
        product_id=product.id,
        movement_type="transfer_out",
        transaction_type="transfer",
        quantity_change=-quantity,
        unit_cost=product.cost_price,
        warehouse_id=source.id,
        batch_id=batch.id if batch else None,
        reference_type="transfer",
        reference_id=transfer.id,
        note=note,
    )
    movement_in = ledger_store.append_movement(
        db,
        business_id=payload.business_id,
        product_id=product.id,
        movement_type="transfer_in",
        transaction_type="transfer",
        quantity_change=quantity,
        unit_cost=product.cost_price,
        warehouse_id=destination.id,
        batch_id=batch.id if batch else None,
        reference_type="transfer",
        reference_id=transfer.id,
        note=note,
    )
    db.flush()

    log_event(
        logger,
        "stock.transferred",
        business_id=payload.business_id,
        product_id=product.id,
        transfer_number=transfer.transfer_number,
        from_warehouse_id=source.id,
        to_warehouse_id=destination.id,
        quantity=str(quantity),
    )
    result = TransferStockOut(transfer_id=transfer.id, transfer_number=transfer.transfer_number)
    event = StockChangeEvent(
        business_id=payload.business_id,
        product_id=product.id,
        operation="transfer",
        quantity_change=Decimal("0"),
        new_stock=product.stock,
        warehouse_id=source.id,
        to_warehouse_id=destination.id,
        reference_type="transfer",
        reference_id=transfer.id,
        movement_ids=(movement_out.id, movement_in.id),
    )
    return result, event


# ---------------------------------------------------------------------------
# Adjust
# ---------------------------------------------------------------------------


def adjust_stock(
    db: Session,
    payload: AdjustStockIn,
    *,
    capabilities: SchemaCapabilities,
) -> tuple[AdjustStockOut, StockChangeEvent]:
    product = ledger_store.get_product(db, business_id=payload.business_id, product_id=payload.product_id, lock=True)
    magnitude = ledger_store.positive_quantity(abs(payload.quantity_change), field="quantity_change")
    change = magnitude if payload.quantity_change > 0 else -magnitude
    state = _resolve_state(capabilities, payload.state)
    _check_serial_count(payload.serial_numbers, magnitude)

    if product.stock + change < 0:
        raise InsufficientStock(
            available=product.stock,
            requested=magnitude,
            message=f"Adjustment would make stock negative. Available: {product.stock}, Requested: {magnitude}",
        )

    note = f"{payload.reason}: {payload.notes}" if payload.notes else payload.reason

    if change > 0:
        warehouse = ledger_store.resolve_warehouse(
            db, business_id=payload.business_id, warehouse_id=payload.warehouse_id
        )
        new_stock = ledger_store.increase_product_stock(db, product, quantity=magnitude)
        ledger_store.increase_location(
            db,
            business_id=payload.business_id,
            warehouse_id=warehouse.id,
            product_id=product.id,
            state=state,
            quantity=magnitude,
        )
        ledger_store.register_serials(
            db,
            business_id=payload.business_id,
            product_id=product.id,
            warehouse_id=warehouse.id,
            serial_numbers=payload.serial_numbers,
            reference_type="adjustment",
            notes=note,
        )
        movement_warehouse_id = warehouse.id
    else:
        location = None
        scope_id = payload.warehouse_id or _target_warehouse_id(
            db,
            business_id=payload.business_id,
            product_id=product.id,
            serial_numbers=payload.serial_numbers,
        )
        if scope_id:
            warehouse = ledger_store.get_warehouse(db, business_id=payload.business_id, warehouse_id=scope_id)
            location = ledger_store.get_location(
                db,
                business_id=payload.business_id,
                warehouse_id=warehouse.id,
                product_id=product.id,
                state=state,
                lock=True,
            )
            available = location.quantity if location else Decimal("0")
            if location is None or available < magnitude:
                raise _insufficient_at_location(state, available, magnitude)

        serials = []
        if payload.serial_numbers:
            serials = ledger_store.get_available_serials(
                db,
                business_id=payload.business_id,
                product_id=product.id,
                serial_numbers=payload.serial_numbers,
                warehouse_id=scope_id,
            )

        new_stock = ledger_store.decrease_product_stock(db, product, quantity=magnitude)
        if location is not None:
            ledger_store.decrease_location(db, location, quantity=magnitude)
            movement_warehouse_id = location.warehouse_id
        else:
            drawn = ledger_store.draw_from_locations(
                db,
                business_id=payload.business_id,
                product_id=product.id,
                state=state,
                quantity=magnitude,
            )
            movement_warehouse_id = drawn[0][0] if len(drawn) == 1 else None
        ledger_store.mark_serials_sold(
            db,
            serials,
            reference_type="adjustment",
            reference_id=None,
            notes=f"Adjustment: {payload.reason}",
        )

    unit_cost = to_cost(product.cost_price)
    movement = ledger_store.append_movement(
        db,
        business_id=payload.business_id,
        product_id=product.id,
        movement_type="adjustment_in" if change > 0 else "adjustment_out",
        transaction_type="adjustment",
        quantity_change=change,
        unit_cost=unit_cost,
        warehouse_id=movement_warehouse_id,
        reference_type="adjustment",
        note=note,
    )
    ledger_store.append_ledger_entry(
        db,
        business_id=payload.business_id,
        product_id=product.id,
        transaction_type="adjustment",
        quantity_change=change,
        running_balance=new_stock,
        unit_cost=unit_cost,
        warehouse_id=movement_warehouse_id,
        reference_type="adjustment",
        reference_id=movement.id,
        note=note,
    )

    value = to_money(magnitude * unit_cost)
    if value > 0:
        if change > 0:
            lines = [
                gl_service.debit(gl_service.ROLE_INVENTORY, value),
                gl_service.credit(gl_service.ROLE_REVENUE, value),
            ]
        else:
            lines = [
                gl_service.debit(gl_service.ROLE_COGS, value),
                gl_service.credit(gl_service.ROLE_INVENTORY, value),
            ]
        gl_service.post_gl_entry(
            db,
            business_id=payload.business_id,
            lines=lines,
            reference_type="adjustment",
            reference_id=movement.id,
            description=f"Stock adjustment ({payload.reason}): {product.name}",
        )
    db.flush()

    log_event(
        logger,
        "stock.adjusted",
        business_id=payload.business_id,
        product_id=product.id,
        quantity_change=str(change),
        new_stock=str(new_stock),
        reason=payload.reason,
    )
    result = AdjustStockOut(new_stock=new_stock, movement_id=movement.id)
    event = StockChangeEvent(
        business_id=payload.business_id,
        product_id=product.id,
        operation="adjust",
        quantity_change=change,
        new_stock=new_stock,
        warehouse_id=movement_warehouse_id,
        reference_type="adjustment",
        reference_id=movement.id,
        movement_ids=(movement.id,),
    )
    return result, event
