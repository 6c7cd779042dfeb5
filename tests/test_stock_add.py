from decimal import Decimal

from sqlalchemy import func, select

from stockledger.core.money import weighted_average_cost
from stockledger.models.accounting import GLAccount, GLEntry
from stockledger.models.business import Warehouse
from stockledger.models.inventory import InventoryLedger, StockMovement
from stockledger.models.location import StockLocation
from stockledger.models.product import Batch, Product, Serial


def _gl_lines(db, business_id, reference_type, reference_id):
    rows = db.execute(
        select(GLAccount.code, GLEntry.debit, GLEntry.credit)
        .join(GLAccount, GLAccount.id == GLEntry.account_id)
        .where(
            GLEntry.business_id == business_id,
            GLEntry.reference_type == reference_type,
            GLEntry.reference_id == reference_id,
        )
        .order_by(GLAccount.code.asc())
    ).all()
    return [(code, Decimal(debit), Decimal(credit)) for code, debit, credit in rows]


def test_weighted_average_cost_falls_back_to_incoming_cost():
    assert weighted_average_cost(Decimal("10"), Decimal("100"), Decimal("10"), Decimal("200")) == Decimal("150")
    assert weighted_average_cost(Decimal("0"), Decimal("0"), Decimal("5"), Decimal("12.5")) == Decimal("12.5")
    assert weighted_average_cost(Decimal("-3"), Decimal("10"), Decimal("3"), Decimal("7")) == Decimal("7")


def test_add_stock_creates_primary_warehouse_and_rows(stock_engine, session_local, business_id, make_product):
    product_id = make_product()

    outcome = stock_engine.add_stock(
        {
            "business_id": business_id,
            "product_id": product_id,
            "quantity": 10,
            "unit_cost": 100,
            "reference_type": "purchase",
            "reference_id": "po-1",
        }
    )

    assert outcome.ok, outcome.failure
    assert outcome.value.new_stock == Decimal("10")
    assert outcome.value.new_cost_price == Decimal("100")
    assert outcome.value.batch_id is None

    with session_local() as db:
        warehouses = db.execute(select(Warehouse).where(Warehouse.business_id == business_id)).scalars().all()
        assert len(warehouses) == 1
        assert warehouses[0].name == "Main Warehouse"
        assert warehouses[0].is_primary is True

        location = db.execute(select(StockLocation).where(StockLocation.product_id == product_id)).scalar_one()
        assert location.warehouse_id == warehouses[0].id
        assert location.state == "sellable"
        assert location.quantity == Decimal("10")

        movement = db.get(StockMovement, outcome.value.movement_id)
        assert movement.movement_type == "in"
        assert movement.quantity_change == Decimal("10")

        ledger = db.execute(select(InventoryLedger).where(InventoryLedger.product_id == product_id)).scalar_one()
        assert ledger.running_balance == Decimal("10")
        assert ledger.total_value == Decimal("1000.00")

        assert _gl_lines(db, business_id, "purchase", "po-1") == [
            ("1200", Decimal("1000.00"), Decimal("0.00")),
            ("2001", Decimal("0.00"), Decimal("1000.00")),
        ]


def test_add_stock_rolls_weighted_average(stock_engine, business_id, make_product):
    product_id = make_product()
    base = {"business_id": business_id, "product_id": product_id}

    stock_engine.add_stock({**base, "quantity": 10, "unit_cost": 100}).unwrap()
    result = stock_engine.add_stock({**base, "quantity": 10, "unit_cost": 200}).unwrap()

    assert result.new_stock == Decimal("20")
    assert result.new_cost_price == Decimal("150")


def test_add_stock_into_named_batch_accumulates(stock_engine, session_local, business_id, make_product):
    product_id = make_product()
    base = {"business_id": business_id, "product_id": product_id, "batch_number": "LOT-1"}

    first = stock_engine.add_stock({**base, "quantity": 4, "unit_cost": 10, "expiry_date": "2027-01-31"}).unwrap()
    second = stock_engine.add_stock({**base, "quantity": 6, "unit_cost": 20}).unwrap()

    assert first.batch_id == second.batch_id
    with session_local() as db:
        batch = db.get(Batch, first.batch_id)
        assert batch.quantity == Decimal("10")
        assert batch.cost_price == Decimal("16")
        assert str(batch.expiry_date) == "2027-01-31"


def test_add_stock_converts_entry_unit(stock_engine, business_id, make_product):
    product_id = make_product(unit="pcs", unit_conversions={"box": 12})

    result = stock_engine.add_stock(
        {"business_id": business_id, "product_id": product_id, "quantity": 2, "unit_cost": 120, "unit": "box"}
    ).unwrap()

    assert result.new_stock == Decimal("24")
    assert result.new_cost_price == Decimal("10")


def test_add_stock_rejects_unknown_unit_without_writing(stock_engine, session_local, business_id, make_product):
    product_id = make_product(unit="pcs", unit_conversions={"box": 12})

    outcome = stock_engine.add_stock(
        {"business_id": business_id, "product_id": product_id, "quantity": 1, "unit_cost": 5, "unit": "crate"}
    )

    assert not outcome.ok
    assert outcome.failure.kind == "validation_error"
    with session_local() as db:
        assert db.get(Product, product_id).stock == Decimal("0")
        assert db.execute(select(func.count(StockMovement.id))).scalar_one() == 0


def test_add_stock_registers_serials(stock_engine, session_local, business_id, make_product):
    product_id = make_product()

    stock_engine.add_stock(
        {
            "business_id": business_id,
            "product_id": product_id,
            "quantity": 2,
            "unit_cost": 300,
            "serial_numbers": ["SN-1", "SN-2"],
        }
    ).unwrap()

    with session_local() as db:
        serials = db.execute(select(Serial).where(Serial.product_id == product_id)).scalars().all()
        assert sorted(serial.serial_number for serial in serials) == ["SN-1", "SN-2"]
        assert {serial.status for serial in serials} == {"available"}


def test_add_stock_serial_count_must_match_quantity(stock_engine, business_id, make_product):
    product_id = make_product()

    outcome = stock_engine.add_stock(
        {"business_id": business_id, "product_id": product_id, "quantity": 3, "serial_numbers": ["SN-1"]}
    )

    assert outcome.failure.kind == "validation_error"


def test_add_stock_unknown_product_is_not_found(stock_engine, business_id):
    outcome = stock_engine.add_stock({"business_id": business_id, "product_id": "missing", "quantity": 1})

    assert outcome.failure.kind == "not_found"
    assert outcome.failure.status_code == 404


def test_add_stock_rejects_non_positive_quantity_before_touching_storage(stock_engine, business_id, make_product):
    product_id = make_product()

    outcome = stock_engine.add_stock({"business_id": business_id, "product_id": product_id, "quantity": 0})

    assert outcome.failure.kind == "validation_error"
    assert outcome.failure.details[0]["field"] == "quantity"


def test_production_receipt_credits_manufacturing_cost(stock_engine, session_local, business_id, make_product):
    product_id = make_product()

    stock_engine.add_stock(
        {
            "business_id": business_id,
            "product_id": product_id,
            "quantity": 5,
            "unit_cost": 20,
            "reference_type": "production",
            "reference_id": "run-7",
        }
    ).unwrap()

    with session_local() as db:
        assert _gl_lines(db, business_id, "production", "run-7") == [
            ("1200", Decimal("100.00"), Decimal("0.00")),
            ("5001", Decimal("0.00"), Decimal("100.00")),
        ]


def test_add_stock_rejects_quantity_finer_than_storage(stock_engine, session_local, business_id, make_product):
    product_id = make_product(unit="g", unit_conversions={"mg": 0.00001})

    too_fine = stock_engine.add_stock(
        {"business_id": business_id, "product_id": product_id, "quantity": "0.00001", "unit_cost": 10}
    )
    converted_to_nothing = stock_engine.add_stock(
        {"business_id": business_id, "product_id": product_id, "quantity": 1, "unit_cost": 10, "unit": "mg"}
    )

    assert too_fine.failure.kind == "validation_error"
    assert too_fine.failure.details[0]["field"] == "quantity"
    assert converted_to_nothing.failure.kind == "validation_error"
    assert converted_to_nothing.failure.details["field"] == "quantity"
    with session_local() as db:
        product = db.get(Product, product_id)
        assert product.stock == Decimal("0")
        assert product.cost_price == Decimal("0")
        assert db.execute(select(func.count(StockMovement.id))).scalar_one() == 0
        assert db.execute(select(func.count(InventoryLedger.id))).scalar_one() == 0


def test_stocked_batch_cannot_be_received_into_another_warehouse(
    stock_engine, session_local, business_id, make_product, make_warehouse
):
    product_id = make_product()
    main_id = make_warehouse("Main", "MAIN", is_primary=True)
    annex_id = make_warehouse("Annex", "ANNEX")
    base = {"business_id": business_id, "product_id": product_id, "batch_number": "LOT-9", "unit_cost": 5}
    received = stock_engine.add_stock({**base, "quantity": 3, "warehouse_id": main_id}).unwrap()

    outcome = stock_engine.add_stock({**base, "quantity": 2, "warehouse_id": annex_id})

    assert outcome.failure.kind == "validation_error"
    with session_local() as db:
        batch = db.get(Batch, received.batch_id)
        assert (batch.warehouse_id, batch.quantity) == (main_id, Decimal("3"))
        assert db.execute(
            select(func.count(StockLocation.id)).where(StockLocation.warehouse_id == annex_id)
        ).scalar_one() == 0


def test_emptied_batch_follows_its_next_receipt(
    stock_engine, session_local, business_id, make_product, make_warehouse
):
    product_id = make_product()
    main_id = make_warehouse("Main", "MAIN", is_primary=True)
    annex_id = make_warehouse("Annex", "ANNEX")
    base = {"business_id": business_id, "product_id": product_id, "batch_number": "LOT-9", "unit_cost": 5}
    received = stock_engine.add_stock({**base, "quantity": 3, "warehouse_id": main_id}).unwrap()
    stock_engine.remove_stock(
        {"business_id": business_id, "product_id": product_id, "quantity": 3, "batch_id": received.batch_id}
    ).unwrap()

    again = stock_engine.add_stock({**base, "quantity": 2, "warehouse_id": annex_id}).unwrap()

    assert again.batch_id == received.batch_id
    with session_local() as db:
        batch = db.get(Batch, received.batch_id)
        assert (batch.warehouse_id, batch.quantity) == (annex_id, Decimal("2"))
