from decimal import Decimal

import pytest
from sqlalchemy import func, select

from stockledger.core.errors import AccountingImbalance, AccountingPostingFailed, StockValidationError
from stockledger.core.id_utils import new_id
from stockledger.models.accounting import GLAccount, GLEntry
from stockledger.services import gl_service
from stockledger.services.gl_service import GLLine


def test_unbalanced_posting_writes_nothing(session_local, business_id):
    with session_local() as db:
        with pytest.raises(AccountingImbalance) as exc_info:
            gl_service.post_gl_entry(
                db,
                business_id=business_id,
                lines=[
                    gl_service.debit(gl_service.ROLE_INVENTORY, Decimal("100")),
                    gl_service.credit(gl_service.ROLE_AP, Decimal("99.98")),
                ],
                reference_type="purchase",
                reference_id="po-1",
            )
        assert exc_info.value.kind == "accounting_imbalance"
        db.commit()

        assert db.execute(select(func.count(GLEntry.id))).scalar_one() == 0
        assert db.execute(select(func.count(GLAccount.id))).scalar_one() == 0


def test_one_cent_rounding_difference_is_tolerated(session_local, business_id):
    with session_local() as db:
        result = gl_service.post_gl_entry(
            db,
            business_id=business_id,
            lines=[
                gl_service.debit(gl_service.ROLE_INVENTORY, Decimal("100.00")),
                gl_service.credit(gl_service.ROLE_AP, Decimal("99.99")),
            ],
            reference_type="purchase",
            reference_id="po-2",
        )
        db.commit()

    assert len(result.entry_ids) == 2


@pytest.mark.parametrize(
    "lines",
    [
        [GLLine(role="inventory", debit=Decimal("5"))],
        [GLLine(role="inventory", debit=Decimal("5"), credit=Decimal("5")), GLLine(role="ap", credit=Decimal("5"))],
        [GLLine(role="inventory"), GLLine(role="ap", credit=Decimal("5"))],
        [GLLine(debit=Decimal("5")), GLLine(role="ap", credit=Decimal("5"))],
    ],
)
def test_malformed_lines_are_rejected(session_local, business_id, lines):
    with session_local() as db:
        with pytest.raises(StockValidationError):
            gl_service.post_gl_entry(
                db,
                business_id=business_id,
                lines=lines,
                reference_type="manual",
                reference_id="je-1",
            )


def test_missing_role_on_existing_chart_fails(session_local, business_id):
    with session_local() as db:
        db.add(
            GLAccount(
                id=new_id(),
                business_id=business_id,
                code="1200",
                name="Stock",
                account_type="asset",
                role=gl_service.ROLE_INVENTORY,
            )
        )
        db.commit()

        with pytest.raises(AccountingPostingFailed) as exc_info:
            gl_service.post_gl_entry(
                db,
                business_id=business_id,
                lines=[
                    gl_service.debit(gl_service.ROLE_INVENTORY, Decimal("10")),
                    gl_service.credit(gl_service.ROLE_AP, Decimal("10")),
                ],
                reference_type="purchase",
                reference_id="po-3",
            )
        assert exc_info.value.details == {"missing_roles": ["ap"]}


def test_default_chart_is_provisioned_once(session_local, business_id):
    with session_local() as db:
        first = gl_service.ensure_chart_of_accounts(db, business_id=business_id)
        second = gl_service.ensure_chart_of_accounts(db, business_id=business_id)
        db.commit()

    assert {account.code for account in first} == {code for code, *_ in gl_service.DEFAULT_CHART}
    assert sorted(account.id for account in first) == sorted(account.id for account in second)


def test_repost_by_reference_replaces_previous_lines(session_local, business_id):
    with session_local() as db:
        gl_service.post_gl_entry(
            db,
            business_id=business_id,
            lines=[
                gl_service.debit(gl_service.ROLE_INVENTORY, Decimal("50")),
                gl_service.credit(gl_service.ROLE_AP, Decimal("50")),
            ],
            reference_type="purchase",
            reference_id="po-4",
        )
        db.commit()

        gl_service.repost_by_reference(
            db,
            business_id=business_id,
            lines=[
                gl_service.debit(gl_service.ROLE_INVENTORY, Decimal("80")),
                gl_service.credit(gl_service.ROLE_AP, Decimal("80")),
            ],
            reference_type="purchase",
            reference_id="po-4",
        )
        db.commit()

        entries = gl_service.list_entries_by_reference(
            db, business_id=business_id, reference_type="purchase", reference_id="po-4"
        )
        assert sorted((entry.debit, entry.credit) for entry in entries) == [
            (Decimal("0.00"), Decimal("80.00")),
            (Decimal("80.00"), Decimal("0.00")),
        ]


def test_account_balance_and_trial_balance(stock_engine, session_local, business_id, make_product):
    product_id = make_product()
    stock_engine.add_stock(
        {"business_id": business_id, "product_id": product_id, "quantity": 10, "unit_cost": 100, "reference_id": "po-5"}
    ).unwrap()
    stock_engine.remove_stock(
        {"business_id": business_id, "product_id": product_id, "quantity": 3, "reference_id": "so-5"}
    ).unwrap()

    with session_local() as db:
        inventory = db.execute(
            select(GLAccount).where(GLAccount.business_id == business_id, GLAccount.role == "inventory")
        ).scalar_one()
        assert gl_service.account_balance(db, business_id=business_id, account_id=inventory.id) == Decimal("700.00")

        rows = gl_service.trial_balance(db, business_id=business_id)
        assert sum(row.debit for row in rows) == sum(row.credit for row in rows) == Decimal("1300.00")
        by_code = {row.code: row.balance for row in rows}
        assert by_code["2001"] == Decimal("1000.00")
        assert by_code["5000"] == Decimal("300.00")
