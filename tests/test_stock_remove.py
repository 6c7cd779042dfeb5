from decimal import Decimal

from sqlalchemy import func, select

from stockledger.models.accounting import GLAccount, GLEntry
from stockledger.models.inventory import InventoryLedger, StockMovement
from stockledger.models.location import StockLocation
from stockledger.models.product import Batch, Product, Serial


def _receive(stock_engine, business_id, product_id, **fields):
    payload = {"business_id": business_id, "product_id": product_id, **fields}
    return stock_engine.add_stock(payload).unwrap()


def _account_lines(db, business_id, reference_type, reference_id):
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


def test_add_then_remove_restores_stock(stock_engine, session_local, business_id, make_product):
    product_id = make_product()
    _receive(stock_engine, business_id, product_id, quantity=10, unit_cost=50)

    result = stock_engine.remove_stock(
        {"business_id": business_id, "product_id": product_id, "quantity": 10}
    ).unwrap()

    assert result.new_stock == Decimal("0")
    with session_local() as db:
        assert db.get(Product, product_id).stock == Decimal("0")
        location = db.execute(select(StockLocation).where(StockLocation.product_id == product_id)).scalar_one()
        assert location.quantity == Decimal("0")
        balances = db.execute(
            select(InventoryLedger.running_balance)
            .where(InventoryLedger.product_id == product_id)
            .order_by(InventoryLedger.created_at.asc())
        ).scalars().all()
        assert balances == [Decimal("10"), Decimal("0")]


def test_remove_more_than_available_reports_exact_figures(stock_engine, session_local, business_id, make_product):
    product_id = make_product()
    _receive(stock_engine, business_id, product_id, quantity=3, unit_cost=10)

    outcome = stock_engine.remove_stock({"business_id": business_id, "product_id": product_id, "quantity": 5})

    assert outcome.failure.kind == "insufficient_stock"
    assert outcome.failure.status_code == 409
    assert Decimal(outcome.failure.details["available"]) == Decimal("3")
    assert Decimal(outcome.failure.details["requested"]) == Decimal("5")
    with session_local() as db:
        assert db.get(Product, product_id).stock == Decimal("3")
        assert db.execute(select(func.count(StockMovement.id))).scalar_one() == 1


def test_remove_consumes_batches_first_expiry_first(stock_engine, session_local, business_id, make_product):
    product_id = make_product()
    later = _receive(
        stock_engine, business_id, product_id, quantity=5, unit_cost=20, batch_number="LATE", expiry_date="2027-06-01"
    )
    sooner = _receive(
        stock_engine, business_id, product_id, quantity=5, unit_cost=10, batch_number="SOON", expiry_date="2026-12-01"
    )

    result = stock_engine.remove_stock(
        {"business_id": business_id, "product_id": product_id, "quantity": 7, "reference_id": "so-1"}
    ).unwrap()

    assert [(take.batch_id, take.quantity) for take in result.allocations] == [
        (sooner.batch_id, Decimal("5")),
        (later.batch_id, Decimal("2")),
    ]
    assert result.cost_of_goods_sold == Decimal("90.00")

    with session_local() as db:
        assert db.get(Batch, sooner.batch_id).quantity == Decimal("0")
        assert db.get(Batch, later.batch_id).quantity == Decimal("3")
        assert _account_lines(db, business_id, "sale", "so-1") == [
            ("1200", Decimal("0.00"), Decimal("90.00")),
            ("5000", Decimal("90.00"), Decimal("0.00")),
        ]


def test_batches_without_expiry_are_consumed_last(stock_engine, business_id, make_product):
    product_id = make_product()
    undated = _receive(stock_engine, business_id, product_id, quantity=5, unit_cost=1, batch_number="UNDATED")
    dated = _receive(
        stock_engine, business_id, product_id, quantity=5, unit_cost=2, batch_number="DATED", expiry_date="2030-01-01"
    )

    result = stock_engine.remove_stock(
        {"business_id": business_id, "product_id": product_id, "quantity": 6}
    ).unwrap()

    assert [take.batch_id for take in result.allocations] == [dated.batch_id, undated.batch_id]


def test_fifo_valuation_ignores_expiry(stock_engine, business_id, make_product):
    product_id = make_product()
    oldest = _receive(
        stock_engine, business_id, product_id, quantity=5, unit_cost=20, batch_number="OLD", expiry_date="2027-06-01"
    )
    _receive(
        stock_engine, business_id, product_id, quantity=5, unit_cost=10, batch_number="NEW", expiry_date="2026-12-01"
    )

    result = stock_engine.remove_stock(
        {"business_id": business_id, "product_id": product_id, "quantity": 3, "valuation_method": "FIFO"}
    ).unwrap()

    assert [take.batch_id for take in result.allocations] == [oldest.batch_id]
    assert result.cost_of_goods_sold == Decimal("60.00")


def test_explicit_batch_does_not_spill_over(stock_engine, session_local, business_id, make_product):
    product_id = make_product()
    small = _receive(stock_engine, business_id, product_id, quantity=2, unit_cost=10, batch_number="SMALL")
    _receive(stock_engine, business_id, product_id, quantity=8, unit_cost=10, batch_number="BIG")

    outcome = stock_engine.remove_stock(
        {"business_id": business_id, "product_id": product_id, "quantity": 3, "batch_id": small.batch_id}
    )

    assert outcome.failure.kind == "insufficient_stock"
    assert outcome.failure.details["scope"] == "batch"
    with session_local() as db:
        assert db.get(Product, product_id).stock == Decimal("10")
        assert db.get(Batch, small.batch_id).quantity == Decimal("2")


def test_unbatched_shortfall_is_costed_at_average(stock_engine, business_id, make_product):
    product_id = make_product()
    _receive(stock_engine, business_id, product_id, quantity=10, unit_cost=50)

    result = stock_engine.remove_stock(
        {"business_id": business_id, "product_id": product_id, "quantity": 4}
    ).unwrap()

    assert len(result.allocations) == 1
    assert result.allocations[0].batch_id is None
    assert result.cost_of_goods_sold == Decimal("200.00")


def test_production_consumption_debits_manufacturing_cost(stock_engine, session_local, business_id, make_product):
    product_id = make_product()
    _receive(stock_engine, business_id, product_id, quantity=10, unit_cost=5)

    stock_engine.remove_stock(
        {
            "business_id": business_id,
            "product_id": product_id,
            "quantity": 4,
            "reference_type": "production_consumption",
            "reference_id": "run-1",
        }
    ).unwrap()

    with session_local() as db:
        assert _account_lines(db, business_id, "production_consumption", "run-1") == [
            ("1200", Decimal("0.00"), Decimal("20.00")),
            ("5001", Decimal("20.00"), Decimal("0.00")),
        ]


def test_zero_cost_removal_posts_nothing(stock_engine, session_local, business_id, make_product):
    product_id = make_product()
    _receive(stock_engine, business_id, product_id, quantity=3, unit_cost=0, reference_type="donation")

    stock_engine.remove_stock({"business_id": business_id, "product_id": product_id, "quantity": 1}).unwrap()

    with session_local() as db:
        assert db.execute(select(func.count(GLEntry.id))).scalar_one() == 0


def test_remove_by_serials_marks_them_sold(stock_engine, session_local, business_id, make_product):
    product_id = make_product()
    received = _receive(
        stock_engine,
        business_id,
        product_id,
        quantity=3,
        unit_cost=100,
        batch_number="PHONES",
        serial_numbers=["IMEI-1", "IMEI-2", "IMEI-3"],
    )

    result = stock_engine.remove_stock(
        {
            "business_id": business_id,
            "product_id": product_id,
            "quantity": 2,
            "serial_numbers": ["IMEI-1", "IMEI-3"],
            "reference_id": "inv-9",
        }
    ).unwrap()

    assert [(take.batch_id, take.quantity) for take in result.allocations] == [(received.batch_id, Decimal("2"))]
    with session_local() as db:
        statuses = dict(
            db.execute(select(Serial.serial_number, Serial.status).where(Serial.product_id == product_id)).all()
        )
        assert statuses == {"IMEI-1": "sold", "IMEI-2": "available", "IMEI-3": "sold"}
        assert db.get(Batch, received.batch_id).quantity == Decimal("1")


def test_selling_a_sold_serial_fails(stock_engine, business_id, make_product):
    product_id = make_product()
    _receive(stock_engine, business_id, product_id, quantity=1, unit_cost=100, serial_numbers=["IMEI-1"])
    base = {"business_id": business_id, "product_id": product_id, "quantity": 1, "serial_numbers": ["IMEI-1"]}

    stock_engine.remove_stock(base).unwrap()
    _receive(stock_engine, business_id, product_id, quantity=1, unit_cost=100)
    outcome = stock_engine.remove_stock(base)

    assert outcome.failure.kind == "validation_error"


def test_remove_scoped_to_warehouse_checks_location(
    stock_engine, session_local, business_id, make_product, make_warehouse
):
    product_id = make_product()
    main_id = make_warehouse("Main", "MAIN", is_primary=True)
    annex_id = make_warehouse("Annex", "ANNEX")
    _receive(stock_engine, business_id, product_id, quantity=5, unit_cost=10, warehouse_id=main_id)
    _receive(stock_engine, business_id, product_id, quantity=2, unit_cost=10, warehouse_id=annex_id)

    outcome = stock_engine.remove_stock(
        {"business_id": business_id, "product_id": product_id, "quantity": 3, "warehouse_id": annex_id}
    )

    assert outcome.failure.kind == "insufficient_stock"
    assert outcome.failure.message == "Insufficient sellable stock. Available: 2.0000, Requested: 3.0000"


def test_unscoped_remove_draws_primary_warehouse_first(
    stock_engine, session_local, business_id, make_product, make_warehouse
):
    product_id = make_product()
    main_id = make_warehouse("Main", "MAIN", is_primary=True)
    annex_id = make_warehouse("Annex", "ANNEX")
    _receive(stock_engine, business_id, product_id, quantity=4, unit_cost=10, warehouse_id=annex_id)
    _receive(stock_engine, business_id, product_id, quantity=3, unit_cost=10, warehouse_id=main_id)

    stock_engine.remove_stock({"business_id": business_id, "product_id": product_id, "quantity": 5}).unwrap()

    with session_local() as db:
        quantities = dict(
            db.execute(
                select(StockLocation.warehouse_id, StockLocation.quantity).where(StockLocation.product_id == product_id)
            ).all()
        )
        assert quantities == {main_id: Decimal("0"), annex_id: Decimal("2")}
        assert db.get(Product, product_id).stock == sum(quantities.values())


def test_remove_clamps_reservations_on_consumed_batch(stock_engine, session_local, business_id, make_product):
    product_id = make_product()
    received = _receive(stock_engine, business_id, product_id, quantity=5, unit_cost=10, batch_number="LOT")
    stock_engine.reserve_stock(
        {"business_id": business_id, "product_id": product_id, "batch_id": received.batch_id, "quantity": 4}
    ).unwrap()

    stock_engine.remove_stock(
        {"business_id": business_id, "product_id": product_id, "quantity": 3, "batch_id": received.batch_id}
    ).unwrap()

    with session_local() as db:
        batch = db.get(Batch, received.batch_id)
        assert batch.quantity == Decimal("2")
        assert batch.reserved_quantity == Decimal("2")


def _locations(db, product_id):
    return dict(
        db.execute(
            select(StockLocation.warehouse_id, StockLocation.quantity).where(StockLocation.product_id == product_id)
        ).all()
    )


def test_remove_rejects_quantity_that_rounds_to_nothing(stock_engine, session_local, business_id, make_product):
    product_id = make_product(unit="g", unit_conversions={"mg": 0.00001})
    _receive(stock_engine, business_id, product_id, quantity=5, unit_cost=10)

    too_fine = stock_engine.remove_stock(
        {"business_id": business_id, "product_id": product_id, "quantity": "0.00001"}
    )
    converted_to_nothing = stock_engine.remove_stock(
        {"business_id": business_id, "product_id": product_id, "quantity": 1, "unit": "mg"}
    )

    assert too_fine.failure.kind == "validation_error"
    assert converted_to_nothing.failure.kind == "validation_error"
    assert converted_to_nothing.failure.status_code == 422
    with session_local() as db:
        assert db.get(Product, product_id).stock == Decimal("5")
        assert db.execute(
            select(func.count(StockMovement.id)).where(StockMovement.movement_type == "out")
        ).scalar_one() == 0


def test_unscoped_serial_remove_takes_from_the_serials_warehouse(
    stock_engine, session_local, business_id, make_product, make_warehouse
):
    product_id = make_product()
    main_id = make_warehouse("Main", "MAIN", is_primary=True)
    annex_id = make_warehouse("Annex", "ANNEX")
    _receive(stock_engine, business_id, product_id, quantity=1, unit_cost=50, warehouse_id=main_id)
    _receive(
        stock_engine, business_id, product_id, quantity=1, unit_cost=50, warehouse_id=annex_id, serial_numbers=["SN-B"]
    )

    result = stock_engine.remove_stock(
        {"business_id": business_id, "product_id": product_id, "quantity": 1, "serial_numbers": ["SN-B"]}
    ).unwrap()

    with session_local() as db:
        assert _locations(db, product_id) == {main_id: Decimal("1"), annex_id: Decimal("0")}
        assert db.get(StockMovement, result.movement_id).warehouse_id == annex_id
        serial = db.execute(select(Serial).where(Serial.serial_number == "SN-B")).scalar_one()
        assert (serial.status, serial.warehouse_id) == ("sold", annex_id)


def test_serials_spread_over_warehouses_need_a_warehouse(
    stock_engine, session_local, business_id, make_product, make_warehouse
):
    product_id = make_product()
    main_id = make_warehouse("Main", "MAIN", is_primary=True)
    annex_id = make_warehouse("Annex", "ANNEX")
    _receive(stock_engine, business_id, product_id, quantity=1, warehouse_id=main_id, serial_numbers=["SN-A"])
    _receive(stock_engine, business_id, product_id, quantity=1, warehouse_id=annex_id, serial_numbers=["SN-B"])

    outcome = stock_engine.remove_stock(
        {"business_id": business_id, "product_id": product_id, "quantity": 2, "serial_numbers": ["SN-A", "SN-B"]}
    )

    assert outcome.failure.kind == "validation_error"
    with session_local() as db:
        assert _locations(db, product_id) == {main_id: Decimal("1"), annex_id: Decimal("1")}
        statuses = db.execute(select(Serial.status).where(Serial.product_id == product_id)).scalars().all()
        assert set(statuses) == {"available"}


def test_unscoped_batch_remove_takes_from_the_batch_warehouse(
    stock_engine, session_local, business_id, make_product, make_warehouse
):
    product_id = make_product()
    main_id = make_warehouse("Main", "MAIN", is_primary=True)
    annex_id = make_warehouse("Annex", "ANNEX")
    _receive(stock_engine, business_id, product_id, quantity=4, unit_cost=10, warehouse_id=main_id)
    annex_batch = _receive(
        stock_engine, business_id, product_id, quantity=2, unit_cost=30, warehouse_id=annex_id, batch_number="ANX"
    )

    result = stock_engine.remove_stock(
        {"business_id": business_id, "product_id": product_id, "quantity": 2, "batch_id": annex_batch.batch_id}
    ).unwrap()

    assert result.cost_of_goods_sold == Decimal("60.00")
    with session_local() as db:
        assert _locations(db, product_id) == {main_id: Decimal("4"), annex_id: Decimal("0")}
        assert db.get(Batch, annex_batch.batch_id).quantity == Decimal("0")
        assert db.get(StockMovement, result.movement_id).warehouse_id == annex_id


def test_scoped_batch_remove_costs_at_that_batch(
    stock_engine, session_local, business_id, make_product, make_warehouse
):
    product_id = make_product()
    main_id = make_warehouse("Main", "MAIN", is_primary=True)
    cheap = _receive(
        stock_engine, business_id, product_id, quantity=5, unit_cost=10, warehouse_id=main_id, batch_number="CHEAP"
    )
    dear = _receive(
        stock_engine, business_id, product_id, quantity=5, unit_cost=20, warehouse_id=main_id, batch_number="DEAR"
    )

    result = stock_engine.remove_stock(
        {
            "business_id": business_id,
            "product_id": product_id,
            "warehouse_id": main_id,
            "quantity": 3,
            "batch_id": dear.batch_id,
            "reference_id": "inv-42",
        }
    ).unwrap()

    assert result.cost_of_goods_sold == Decimal("60.00")
    assert [(take.batch_number, take.quantity) for take in result.allocations] == [("DEAR", Decimal("3"))]
    with session_local() as db:
        assert db.get(Batch, cheap.batch_id).quantity == Decimal("5")
        assert db.get(Batch, dear.batch_id).quantity == Decimal("2")
        assert _locations(db, product_id) == {main_id: Decimal("7")}
        assert _account_lines(db, business_id, "sale", "inv-42") == [
            ("1200", Decimal("0.00"), Decimal("60.00")),
            ("5000", Decimal("60.00"), Decimal("0.00")),
        ]
