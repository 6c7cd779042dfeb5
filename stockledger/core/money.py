from decimal import Decimal, ROUND_HALF_UP

MONEY_QUANT = Decimal("0.01")
ZERO_MONEY = Decimal("0.00")

# Quantities and unit costs keep four places so unit conversions and
# weighted averages do not drift at cent precision.
QTY_QUANT = Decimal("0.0001")
COST_QUANT = Decimal("0.0001")
ZERO_QTY = Decimal("0")


def to_money(value: Decimal | int | float | str) -> Decimal:
    return Decimal(str(value)).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def to_qty(value: Decimal | int | float | str) -> Decimal:
    return Decimal(str(value)).quantize(QTY_QUANT, rounding=ROUND_HALF_UP)


def to_cost(value: Decimal | int | float | str) -> Decimal:
    return Decimal(str(value)).quantize(COST_QUANT, rounding=ROUND_HALF_UP)


def weighted_average_cost(
    old_qty: Decimal,
    old_cost: Decimal,
    add_qty: Decimal,
    add_cost: Decimal,
) -> Decimal:
    """Moving weighted average; falls back to the incoming cost when the result has no stock."""
    new_qty = old_qty + add_qty
    if new_qty <= 0:
        return to_cost(add_cost)
    total_value = (old_qty * old_cost) + (add_qty * add_cost)
    return to_cost(total_value / new_qty)
