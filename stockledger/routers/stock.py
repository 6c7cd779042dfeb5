from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from stockledger.core.access import BusinessAccess, get_business_access
from stockledger.core.api_docs import error_responses
from stockledger.core.deps import get_db, get_stock_engine
from stockledger.models.business import Warehouse
from stockledger.models.inventory import InventoryLedger
from stockledger.models.location import StockLocation
from stockledger.models.product import Batch, Product
from stockledger.schemas.common import PaginationMeta
from stockledger.schemas.stock import (
    AddStockIn,
    AddStockOut,
    AddStockRequest,
    AdjustStockIn,
    AdjustStockOut,
    AdjustStockRequest,
    BatchOut,
    InventoryLedgerEntryOut,
    InventoryLedgerListOut,
    LocationLevelOut,
    LowStockListOut,
    LowStockProductOut,
    ReleaseStockIn,
    ReleaseStockRequest,
    RemoveStockIn,
    RemoveStockOut,
    RemoveStockRequest,
    ReservationOut,
    ReserveStockIn,
    ReserveStockRequest,
    StockLevelOut,
    StockMovementListOut,
    StockMovementOut,
    StockValuationOut,
    StockValuationRowOut,
    StockValuationTotalsOut,
    TransferStockIn,
    TransferStockOut,
    TransferStockRequest,
)
from stockledger.services import stock_report_service
from stockledger.services.engine import StockEngine

router = APIRouter(prefix="/stock", tags=["stock"])


def _get_product_in_business(db: Session, *, business_id: str, product_id: str) -> Product:
    product = db.execute(
        select(Product).where(
            Product.id == product_id,
            Product.business_id == business_id,
        )
    ).scalar_one_or_none()
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


@router.post(
    "/add",
    response_model=AddStockOut,
    summary="Receive stock into a warehouse",
    responses=error_responses(404, 422, 500, path="/stock/add"),
)
def add_stock(
    payload: AddStockRequest,
    access: BusinessAccess = Depends(get_business_access),
    stock_engine: StockEngine = Depends(get_stock_engine),
):
    data = AddStockIn(**payload.model_dump(), business_id=access.business.id)
    return stock_engine.add_stock(data).unwrap()


@router.post(
    "/remove",
    response_model=RemoveStockOut,
    summary="Issue stock with FEFO/FIFO batch costing",
    responses=error_responses(404, 409, 422, 500, path="/stock/remove"),
)
def remove_stock(
    payload: RemoveStockRequest,
    access: BusinessAccess = Depends(get_business_access),
    stock_engine: StockEngine = Depends(get_stock_engine),
):
    data = RemoveStockIn(**payload.model_dump(), business_id=access.business.id)
    return stock_engine.remove_stock(data).unwrap()


@router.post(
    "/transfer",
    response_model=TransferStockOut,
    summary="Move stock between warehouses",
    responses=error_responses(404, 409, 422, 500, path="/stock/transfer"),
)
def transfer_stock(
    payload: TransferStockRequest,
    access: BusinessAccess = Depends(get_business_access),
    stock_engine: StockEngine = Depends(get_stock_engine),
):
    data = TransferStockIn(**payload.model_dump(), business_id=access.business.id)
    return stock_engine.transfer_stock(data).unwrap()


@router.post(
    "/adjust",
    response_model=AdjustStockOut,
    summary="Manual stock adjustment",
    responses=error_responses(404, 409, 422, 500, path="/stock/adjust"),
)
def adjust_stock(
    payload: AdjustStockRequest,
    access: BusinessAccess = Depends(get_business_access),
    stock_engine: StockEngine = Depends(get_stock_engine),
):
    data = AdjustStockIn(**payload.model_dump(), business_id=access.business.id)
    return stock_engine.adjust_stock(data).unwrap()


@router.post(
    "/reserve",
    response_model=ReservationOut,
    summary="Place a soft hold on batch quantity",
    responses=error_responses(404, 409, 422, 500, path="/stock/reserve"),
)
def reserve_stock(
    payload: ReserveStockRequest,
    access: BusinessAccess = Depends(get_business_access),
    stock_engine: StockEngine = Depends(get_stock_engine),
):
    data = ReserveStockIn(**payload.model_dump(), business_id=access.business.id)
    return stock_engine.reserve_stock(data).unwrap()


@router.post(
    "/release",
    response_model=ReservationOut,
    summary="Release a soft hold on batch quantity",
    responses=error_responses(404, 422, 500, path="/stock/release"),
)
def release_stock(
    payload: ReleaseStockRequest,
    access: BusinessAccess = Depends(get_business_access),
    stock_engine: StockEngine = Depends(get_stock_engine),
):
    data = ReleaseStockIn(**payload.model_dump(), business_id=access.business.id)
    return stock_engine.release_stock(data).unwrap()


@router.get(
    "/products/{product_id}",
    response_model=StockLevelOut,
    summary="Aggregate and per-location stock for a product",
    responses=error_responses(404, 422, 500, path="/stock/products/{product_id}"),
)
def get_stock_level(
    product_id: str,
    db: Session = Depends(get_db),
    access: BusinessAccess = Depends(get_business_access),
):
    product = _get_product_in_business(db, business_id=access.business.id, product_id=product_id)
    rows = db.execute(
        select(StockLocation, Warehouse.name)
        .join(Warehouse, Warehouse.id == StockLocation.warehouse_id)
        .where(
            StockLocation.business_id == access.business.id,
            StockLocation.product_id == product.id,
        )
        .order_by(Warehouse.is_primary.desc(), Warehouse.name.asc(), StockLocation.state.asc())
    ).all()
    return StockLevelOut(
        product_id=product.id,
        unit=product.unit,
        stock=float(product.stock),
        cost_price=float(product.cost_price),
        locations=[
            LocationLevelOut(
                warehouse_id=location.warehouse_id,
                warehouse_name=warehouse_name,
                state=location.state,
                quantity=float(location.quantity),
            )
            for location, warehouse_name in rows
        ],
    )


@router.get(
    "/products/{product_id}/batches",
    response_model=list[BatchOut],
    summary="Active batches in FEFO order",
    responses=error_responses(404, 422, 500, path="/stock/products/{product_id}/batches"),
)
def list_batches(
    product_id: str,
    db: Session = Depends(get_db),
    access: BusinessAccess = Depends(get_business_access),
):
    _get_product_in_business(db, business_id=access.business.id, product_id=product_id)
    batches = db.execute(
        select(Batch)
        .where(
            Batch.business_id == access.business.id,
            Batch.product_id == product_id,
            Batch.is_active.is_(True),
            Batch.quantity > 0,
        )
        .order_by(Batch.expiry_date.is_(None), Batch.expiry_date.asc(), Batch.created_at.asc())
    ).scalars().all()
    return [
        BatchOut(
            id=batch.id,
            batch_number=batch.batch_number,
            warehouse_id=batch.warehouse_id,
            quantity=float(batch.quantity),
            reserved_quantity=float(batch.reserved_quantity),
            available_quantity=float(batch.quantity - batch.reserved_quantity),
            cost_price=float(batch.cost_price),
            manufacturing_date=batch.manufacturing_date,
            expiry_date=batch.expiry_date,
        )
        for batch in batches
    ]


@router.get(
    "/ledger",
    response_model=InventoryLedgerListOut,
    summary="List inventory ledger entries",
    responses=error_responses(404, 422, 500, path="/stock/ledger"),
)
def list_inventory_ledger(
    product_id: str | None = Query(default=None, description="Optional product filter"),
    limit: int = Query(default=50, ge=1, le=200, description="Page size"),
    offset: int = Query(default=0, ge=0, description="Pagination offset"),
    db: Session = Depends(get_db),
    access: BusinessAccess = Depends(get_business_access),
):
    business_id = access.business.id
    if product_id:
        _get_product_in_business(db, business_id=business_id, product_id=product_id)

    count_stmt = select(func.count(InventoryLedger.id)).where(InventoryLedger.business_id == business_id)
    stmt = select(InventoryLedger).where(InventoryLedger.business_id == business_id)
    if product_id:
        count_stmt = count_stmt.where(InventoryLedger.product_id == product_id)
        stmt = stmt.where(InventoryLedger.product_id == product_id)

    total = int(db.execute(count_stmt).scalar_one())
    stmt = stmt.order_by(InventoryLedger.created_at.desc(), InventoryLedger.id.desc()).offset(offset).limit(limit)
    rows = db.execute(stmt).scalars().all()
    items = [
        InventoryLedgerEntryOut(
            id=row.id,
            product_id=row.product_id,
            warehouse_id=row.warehouse_id,
            transaction_type=row.transaction_type,
            quantity_change=float(row.quantity_change),
            running_balance=float(row.running_balance),
            unit_cost=float(row.unit_cost) if row.unit_cost is not None else None,
            total_value=float(row.total_value) if row.total_value is not None else None,
            batch_number=row.batch_number,
            reference_type=row.reference_type,
            reference_id=row.reference_id,
            note=row.note,
            created_at=row.created_at,
        )
        for row in rows
    ]
    count = len(items)
    return InventoryLedgerListOut(
        items=items,
        pagination=PaginationMeta(
            total=total,
            limit=limit,
            offset=offset,
            count=count,
            has_next=(offset + count) < total,
        ),
    )


@router.get(
    "/products/{product_id}/movements",
    response_model=StockMovementListOut,
    summary="Movement history for a product, newest first",
    responses=error_responses(404, 422, 500, path="/stock/products/{product_id}/movements"),
)
def list_product_movements(
    product_id: str,
    limit: int = Query(default=50, ge=1, le=200, description="Page size"),
    offset: int = Query(default=0, ge=0, description="Pagination offset"),
    db: Session = Depends(get_db),
    access: BusinessAccess = Depends(get_business_access),
):
    _get_product_in_business(db, business_id=access.business.id, product_id=product_id)
    rows, total = stock_report_service.list_movements(
        db,
        business_id=access.business.id,
        product_id=product_id,
        limit=limit,
        offset=offset,
    )
    items = [
        StockMovementOut(
            id=row.movement.id,
            product_id=row.movement.product_id,
            warehouse_id=row.movement.warehouse_id,
            warehouse_name=row.warehouse_name,
            batch_id=row.movement.batch_id,
            batch_number=row.batch_number,
            movement_type=row.movement.movement_type,
            transaction_type=row.movement.transaction_type,
            quantity_change=float(row.movement.quantity_change),
            unit_cost=float(row.movement.unit_cost) if row.movement.unit_cost is not None else None,
            reference_type=row.movement.reference_type,
            reference_id=row.movement.reference_id,
            note=row.movement.note,
            created_at=row.movement.created_at,
        )
        for row in rows
    ]
    count = len(items)
    return StockMovementListOut(
        items=items,
        pagination=PaginationMeta(
            total=total,
            limit=limit,
            offset=offset,
            count=count,
            has_next=(offset + count) < total,
        ),
    )


@router.get(
    "/valuation",
    response_model=StockValuationOut,
    summary="Stock value at weighted-average cost",
    responses=error_responses(404, 422, 500, path="/stock/valuation"),
)
def get_stock_valuation(
    warehouse_id: str | None = Query(default=None, description="Only count stock held in this warehouse"),
    db: Session = Depends(get_db),
    access: BusinessAccess = Depends(get_business_access),
):
    if warehouse_id:
        warehouse = db.execute(
            select(Warehouse.id).where(
                Warehouse.id == warehouse_id,
                Warehouse.business_id == access.business.id,
            )
        ).scalar_one_or_none()
        if not warehouse:
            raise HTTPException(status_code=404, detail="Warehouse not found")

    rows, totals = stock_report_service.stock_valuation(
        db, business_id=access.business.id, warehouse_id=warehouse_id
    )
    return StockValuationOut(
        items=[
            StockValuationRowOut(
                product_id=row.product_id,
                name=row.name,
                sku=row.sku,
                stock=float(row.stock),
                cost_price=float(row.cost_price),
                selling_price=float(row.selling_price),
                stock_value=float(row.stock_value),
                potential_revenue=float(row.potential_revenue),
                potential_profit=float(row.potential_profit),
            )
            for row in rows
        ],
        totals=StockValuationTotalsOut(
            stock_value=float(totals.stock_value),
            potential_revenue=float(totals.potential_revenue),
            potential_profit=float(totals.potential_profit),
            items=totals.items,
            units=float(totals.units),
        ),
    )


@router.get(
    "/low-stock",
    response_model=LowStockListOut,
    summary="List products at or below their reorder level",
    responses=error_responses(404, 422, 500, path="/stock/low-stock"),
)
def list_low_stock_products(
    threshold: Decimal | None = Query(
        default=None,
        ge=0,
        description="Optional global threshold override. Defaults to product reorder level or configured default.",
    ),
    offset: int = Query(default=0, ge=0, description="Pagination offset"),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    access: BusinessAccess = Depends(get_business_access),
):
    result = stock_report_service.low_stock_products(db, business_id=access.business.id, threshold=threshold)
    total = len(result)
    page = result[offset : offset + limit]
    return LowStockListOut(
        items=[
            LowStockProductOut(
                product_id=product.id,
                name=product.name,
                sku=product.sku,
                stock=float(product.stock),
                reorder_level=float(limit_threshold),
            )
            for product, limit_threshold in page
        ],
        pagination=PaginationMeta(
            total=total,
            limit=limit,
            offset=offset,
            count=len(page),
            has_next=(offset + len(page)) < total,
        ),
    )
