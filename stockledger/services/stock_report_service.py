from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from stockledger.core.config import settings
from stockledger.core.money import ZERO_MONEY, to_money
from stockledger.models.business import Warehouse
from stockledger.models.inventory import StockMovement
from stockledger.models.location import StockLocation
from stockledger.models.product import Batch, Product


@dataclass(frozen=True)
class ValuationRow:
    product_id: str
    name: str
    sku: str | None
    stock: Decimal
    cost_price: Decimal
    selling_price: Decimal

    @property
    def stock_value(self) -> Decimal:
        return to_money(self.stock * self.cost_price)

    @property
    def potential_revenue(self) -> Decimal:
        return to_money(self.stock * self.selling_price)

    @property
    def potential_profit(self) -> Decimal:
        return self.potential_revenue - self.stock_value


@dataclass(frozen=True)
class ValuationTotals:
    stock_value: Decimal
    potential_revenue: Decimal
    potential_profit: Decimal
    items: int
    units: Decimal


@dataclass(frozen=True)
class MovementRow:
    movement: StockMovement
    warehouse_name: str | None
    batch_number: str | None


def low_stock_threshold(product: Product, override: Decimal | None = None) -> Decimal:
    if override is not None:
        return override
    if product.reorder_level > 0:
        return product.reorder_level
    return Decimal(settings.low_stock_default_threshold)


def stock_valuation(
    db: Session,
    *,
    business_id: str,
    warehouse_id: str | None = None,
) -> tuple[list[ValuationRow], ValuationTotals]:
    """
    Value active products at weighted-average cost.
    With a warehouse, only that warehouse's location quantities count.
    """
    products = db.execute(
        select(Product)
        .where(Product.business_id == business_id, Product.is_active.is_(True))
        .order_by(Product.name.asc(), Product.id.asc())
    ).scalars().all()

    stock_by_product: dict[str, Decimal] = {}
    if warehouse_id:
        location_rows = db.execute(
            select(StockLocation.product_id, func.coalesce(func.sum(StockLocation.quantity), 0))
            .where(
                StockLocation.business_id == business_id,
                StockLocation.warehouse_id == warehouse_id,
            )
            .group_by(StockLocation.product_id)
        ).all()
        stock_by_product = {product_id: Decimal(str(quantity)) for product_id, quantity in location_rows}

    rows: list[ValuationRow] = []
    for product in products:
        if warehouse_id:
            if product.id not in stock_by_product:
                continue
            stock = stock_by_product[product.id]
        else:
            stock = product.stock
        rows.append(
            ValuationRow(
                product_id=product.id,
                name=product.name,
                sku=product.sku,
                stock=stock,
                cost_price=product.cost_price,
                selling_price=product.selling_price or Decimal("0"),
            )
        )

    totals = ValuationTotals(
        stock_value=sum((row.stock_value for row in rows), ZERO_MONEY),
        potential_revenue=sum((row.potential_revenue for row in rows), ZERO_MONEY),
        potential_profit=sum((row.potential_profit for row in rows), ZERO_MONEY),
        items=len(rows),
        units=sum((row.stock for row in rows), Decimal("0")),
    )
    return rows, totals


def list_movements(
    db: Session,
    *,
    business_id: str,
    product_id: str,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[MovementRow], int]:
    total = int(
        db.execute(
            select(func.count(StockMovement.id)).where(
                StockMovement.business_id == business_id,
                StockMovement.product_id == product_id,
            )
        ).scalar_one()
    )
    rows = db.execute(
        select(StockMovement, Warehouse.name, Batch.batch_number)
        .outerjoin(Warehouse, Warehouse.id == StockMovement.warehouse_id)
        .outerjoin(Batch, Batch.id == StockMovement.batch_id)
        .where(
            StockMovement.business_id == business_id,
            StockMovement.product_id == product_id,
        )
        .order_by(StockMovement.created_at.desc(), StockMovement.id.desc())
        .offset(offset)
        .limit(limit)
    ).all()
    return [
        MovementRow(movement=movement, warehouse_name=warehouse_name, batch_number=batch_number)
        for movement, warehouse_name, batch_number in rows
    ], total


def low_stock_products(
    db: Session,
    *,
    business_id: str,
    threshold: Decimal | None = None,
) -> list[tuple[Product, Decimal]]:
    products = db.execute(
        select(Product)
        .where(Product.business_id == business_id, Product.is_active.is_(True))
        .order_by(Product.stock.asc(), Product.name.asc())
    ).scalars().all()

    result: list[tuple[Product, Decimal]] = []
    for product in products:
        limit_threshold = low_stock_threshold(product, threshold)
        if product.stock <= limit_threshold:
            result.append((product, limit_threshold))
    return result
