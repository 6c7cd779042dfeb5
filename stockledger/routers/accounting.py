from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.orm import Session

from stockledger.core.access import BusinessAccess, get_business_access
from stockledger.core.api_docs import error_responses
from stockledger.core.deps import get_db
from stockledger.core.money import ZERO_MONEY
from stockledger.models.accounting import GLAccount
from stockledger.schemas.accounting import (
    AccountBalanceOut,
    GLAccountListOut,
    GLAccountOut,
    GLEntryListOut,
    GLEntryOut,
    TrialBalanceOut,
    TrialBalanceRowOut,
)
from stockledger.services import gl_service

router = APIRouter(prefix="/accounting", tags=["accounting"])


def _account_out(account: GLAccount) -> GLAccountOut:
    return GLAccountOut(
        id=account.id,
        code=account.code,
        name=account.name,
        account_type=account.account_type,
        role=account.role,
        is_active=account.is_active,
    )


@router.get(
    "/accounts",
    response_model=GLAccountListOut,
    summary="Chart of accounts",
    responses=error_responses(404, 422, 500, path="/accounting/accounts"),
)
def list_accounts(
    db: Session = Depends(get_db),
    access: BusinessAccess = Depends(get_business_access),
):
    accounts = db.execute(
        select(GLAccount).where(GLAccount.business_id == access.business.id).order_by(GLAccount.code.asc())
    ).scalars().all()
    return GLAccountListOut(items=[_account_out(account) for account in accounts])


@router.post(
    "/accounts/default",
    response_model=GLAccountListOut,
    summary="Provision the default chart of accounts",
    responses=error_responses(404, 500, path="/accounting/accounts/default"),
)
def provision_default_chart(
    db: Session = Depends(get_db),
    access: BusinessAccess = Depends(get_business_access),
):
    accounts = gl_service.ensure_chart_of_accounts(db, business_id=access.business.id)
    db.commit()
    return GLAccountListOut(items=[_account_out(account) for account in sorted(accounts, key=lambda a: a.code)])


@router.get(
    "/accounts/{account_id}/balance",
    response_model=AccountBalanceOut,
    summary="Balance of one GL account",
    responses=error_responses(404, 422, 500, path="/accounting/accounts/{account_id}/balance"),
)
def get_account_balance(
    account_id: str,
    db: Session = Depends(get_db),
    access: BusinessAccess = Depends(get_business_access),
):
    balance = gl_service.account_balance(db, business_id=access.business.id, account_id=account_id)
    return AccountBalanceOut(account_id=account_id, balance=float(balance))


@router.get(
    "/entries",
    response_model=GLEntryListOut,
    summary="GL lines posted for a document",
    responses=error_responses(404, 422, 500, path="/accounting/entries"),
)
def list_entries(
    reference_type: str = Query(..., min_length=1, description="Document type, e.g. purchase"),
    reference_id: str = Query(..., min_length=1, description="Document id"),
    db: Session = Depends(get_db),
    access: BusinessAccess = Depends(get_business_access),
):
    entries = gl_service.list_entries_by_reference(
        db,
        business_id=access.business.id,
        reference_type=reference_type,
        reference_id=reference_id,
    )
    return GLEntryListOut(
        items=[
            GLEntryOut(
                id=entry.id,
                posting_id=entry.posting_id,
                account_id=entry.account_id,
                transaction_date=entry.transaction_date,
                description=entry.description,
                debit=float(entry.debit),
                credit=float(entry.credit),
                reference_type=entry.reference_type,
                reference_id=entry.reference_id,
            )
            for entry in entries
        ]
    )


@router.get(
    "/trial-balance",
    response_model=TrialBalanceOut,
    summary="Trial balance across the chart of accounts",
    responses=error_responses(404, 422, 500, path="/accounting/trial-balance"),
)
def get_trial_balance(
    db: Session = Depends(get_db),
    access: BusinessAccess = Depends(get_business_access),
):
    rows = gl_service.trial_balance(db, business_id=access.business.id)
    total_debit = sum((row.debit for row in rows), ZERO_MONEY)
    total_credit = sum((row.credit for row in rows), ZERO_MONEY)
    return TrialBalanceOut(
        rows=[
            TrialBalanceRowOut(
                account_id=row.account_id,
                code=row.code,
                name=row.name,
                account_type=row.account_type,
                debit=float(row.debit),
                credit=float(row.credit),
                balance=float(row.balance),
            )
            for row in rows
        ],
        total_debit=float(total_debit),
        total_credit=float(total_credit),
        balanced=total_debit == total_credit,
    )
