"""
Double-entry posting against a business's chart of accounts.

Lines name either a concrete ``account_id`` or a logical ``role`` (inventory,
ap, cogs, ...) that is resolved against the chart. A posting is validated in
full before any row is written, so a rejected posting leaves no trace.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from stockledger.core.config import settings
from stockledger.core.errors import (
    AccountingImbalance,
    AccountingPostingFailed,
    NotFound,
    StockValidationError,
)
from stockledger.core.id_utils import new_id
from stockledger.core.money import ZERO_MONEY, to_money
from stockledger.core.observability import log_event
from stockledger.models.accounting import GLAccount, GLEntry
from stockledger.models.business import Business

logger = logging.getLogger("stockledger.gl")

ROLE_CASH = "cash"
ROLE_BANK = "bank"
ROLE_AR = "ar"
ROLE_INVENTORY = "inventory"
ROLE_AP = "ap"
ROLE_SALES_TAX = "sales_tax_payable"
ROLE_VAT = "vat_payable"
ROLE_EQUITY = "equity"
ROLE_REVENUE = "revenue"
ROLE_COGS = "cogs"
ROLE_EXPENSE = "expense"

# (code, name, account_type, role)
DEFAULT_CHART: tuple[tuple[str, str, str, str], ...] = (
    ("1001", "Cash", "asset", ROLE_CASH),
    ("1002", "Bank", "asset", ROLE_BANK),
    ("1100", "Accounts Receivable", "asset", ROLE_AR),
    ("1200", "Inventory Asset", "asset", ROLE_INVENTORY),
    ("2001", "Accounts Payable", "liability", ROLE_AP),
    ("2100", "Sales Tax Payable", "liability", ROLE_SALES_TAX),
    ("2101", "VAT Payable", "liability", ROLE_VAT),
    ("3000", "Owner Equity", "equity", ROLE_EQUITY),
    ("4000", "Sales Revenue", "income", ROLE_REVENUE),
    ("5000", "Cost of Goods Sold", "expense", ROLE_COGS),
    ("5001", "Manufacturing Cost", "expense", ROLE_EXPENSE),
)

DEBIT_NORMAL_TYPES = {"asset", "expense"}


@dataclass(frozen=True)
class GLLine:
    debit: Decimal = ZERO_MONEY
    credit: Decimal = ZERO_MONEY
    role: str | None = None
    account_id: str | None = None


@dataclass(frozen=True)
class PostingResult:
    posting_id: str
    entry_ids: tuple[str, ...]
    total: Decimal


@dataclass(frozen=True)
class TrialBalanceRow:
    account_id: str
    code: str
    name: str
    account_type: str
    debit: Decimal
    credit: Decimal

    @property
    def balance(self) -> Decimal:
        if self.account_type in DEBIT_NORMAL_TYPES:
            return self.debit - self.credit
        return self.credit - self.debit


def debit(role: str, amount: Decimal) -> GLLine:
    return GLLine(role=role, debit=to_money(amount))


def credit(role: str, amount: Decimal) -> GLLine:
    return GLLine(role=role, credit=to_money(amount))


# ---------------------------------------------------------------------------
# Chart of accounts
# ---------------------------------------------------------------------------


def ensure_chart_of_accounts(db: Session, *, business_id: str) -> list[GLAccount]:
    """Provision the default chart for a business that has no accounts yet."""
    accounts = db.execute(select(GLAccount).where(GLAccount.business_id == business_id)).scalars().all()
    if accounts:
        return list(accounts)

    # Serializes concurrent first postings for the same business.
    business = db.execute(
        select(Business).where(Business.id == business_id).with_for_update()
    ).scalar_one_or_none()
    if not business:
        raise AccountingPostingFailed(
            "Cannot provision a chart of accounts for an unknown business",
            details={"business_id": business_id},
        )
    accounts = db.execute(select(GLAccount).where(GLAccount.business_id == business_id)).scalars().all()
    if accounts:
        return list(accounts)

    created = [
        GLAccount(
            id=new_id(),
            business_id=business_id,
            code=code,
            name=name,
            account_type=account_type,
            role=role,
            is_active=True,
        )
        for code, name, account_type, role in DEFAULT_CHART
    ]
    db.add_all(created)
    db.flush()
    log_event(logger, "gl.chart_provisioned", business_id=business_id, accounts=len(created))
    return created


def resolve_accounts(db: Session, *, business_id: str, roles: set[str]) -> dict[str, GLAccount]:
    if not roles:
        return {}

    if settings.gl_auto_provision_chart:
        ensure_chart_of_accounts(db, business_id=business_id)

    rows = db.execute(
        select(GLAccount)
        .where(
            GLAccount.business_id == business_id,
            GLAccount.role.in_(roles),
            GLAccount.is_active.is_(True),
        )
        .order_by(GLAccount.code.asc())
    ).scalars().all()

    resolved: dict[str, GLAccount] = {}
    for account in rows:
        resolved.setdefault(account.role, account)

    missing = sorted(roles - set(resolved))
    if missing:
        raise AccountingPostingFailed(
            "Chart of accounts is missing required accounts",
            details={"missing_roles": missing},
        )
    return resolved


# ---------------------------------------------------------------------------
# Posting
# ---------------------------------------------------------------------------


def _normalize_lines(lines: list[GLLine]) -> list[GLLine]:
    if len(lines) < 2:
        raise StockValidationError("A GL posting needs at least two lines")

    normalized: list[GLLine] = []
    for index, line in enumerate(lines):
        line_debit = to_money(line.debit or 0)
        line_credit = to_money(line.credit or 0)
        if line_debit < 0 or line_credit < 0:
            raise StockValidationError("GL amounts cannot be negative", details={"line": index})
        if (line_debit > 0) == (line_credit > 0):
            raise StockValidationError(
                "Each GL line must carry exactly one of debit or credit",
                details={"line": index},
            )
        if not line.role and not line.account_id:
            raise StockValidationError("Each GL line needs a role or an account_id", details={"line": index})
        normalized.append(GLLine(debit=line_debit, credit=line_credit, role=line.role, account_id=line.account_id))

    total_debit = sum((line.debit for line in normalized), ZERO_MONEY)
    total_credit = sum((line.credit for line in normalized), ZERO_MONEY)
    if abs(total_debit - total_credit) > settings.gl_balance_tolerance:
        raise AccountingImbalance(total_debit=total_debit, total_credit=total_credit)
    return normalized


def _resolve_line_accounts(db: Session, *, business_id: str, lines: list[GLLine]) -> list[str]:
    roles = {line.role for line in lines if line.role and not line.account_id}
    by_role = resolve_accounts(db, business_id=business_id, roles=roles)

    explicit_ids = {line.account_id for line in lines if line.account_id}
    if explicit_ids:
        found = set(
            db.execute(
                select(GLAccount.id).where(
                    GLAccount.business_id == business_id,
                    GLAccount.id.in_(explicit_ids),
                )
            ).scalars().all()
        )
        unknown = sorted(explicit_ids - found)
        if unknown:
            raise AccountingPostingFailed("Unknown GL accounts", details={"account_ids": unknown})

    return [line.account_id or by_role[line.role].id for line in lines]


def post_gl_entry(
    db: Session,
    *,
    business_id: str,
    lines: list[GLLine],
    reference_type: str,
    reference_id: str,
    description: str | None = None,
    transaction_date: datetime | None = None,
) -> PostingResult:
    normalized = _normalize_lines(lines)
    account_ids = _resolve_line_accounts(db, business_id=business_id, lines=normalized)

    posting_id = new_id()
    posted_at = transaction_date or datetime.now(timezone.utc)
    entries = [
        GLEntry(
            id=new_id(),
            business_id=business_id,
            posting_id=posting_id,
            account_id=account_id,
            transaction_date=posted_at,
            description=description,
            debit=line.debit,
            credit=line.credit,
            reference_type=reference_type,
            reference_id=reference_id,
        )
        for line, account_id in zip(normalized, account_ids)
    ]
    db.add_all(entries)
    db.flush()

    total = sum((line.debit for line in normalized), ZERO_MONEY)
    log_event(
        logger,
        "gl.posted",
        business_id=business_id,
        posting_id=posting_id,
        reference_type=reference_type,
        reference_id=reference_id,
        total=str(total),
    )
    return PostingResult(posting_id=posting_id, entry_ids=tuple(entry.id for entry in entries), total=total)


def delete_postings_by_reference(
    db: Session,
    *,
    business_id: str,
    reference_type: str,
    reference_id: str,
) -> int:
    db.flush()
    result = db.execute(
        delete(GLEntry)
        .where(
            GLEntry.business_id == business_id,
            GLEntry.reference_type == reference_type,
            GLEntry.reference_id == reference_id,
        )
        .execution_options(synchronize_session="fetch")
    )
    log_event(
        logger,
        "gl.deleted_by_reference",
        business_id=business_id,
        reference_type=reference_type,
        reference_id=reference_id,
        rows=result.rowcount,
    )
    return result.rowcount


def repost_by_reference(
    db: Session,
    *,
    business_id: str,
    lines: list[GLLine],
    reference_type: str,
    reference_id: str,
    description: str | None = None,
) -> PostingResult:
    """Replace every posting for a document with a new one; used when a document is edited."""
    _normalize_lines(lines)
    delete_postings_by_reference(
        db,
        business_id=business_id,
        reference_type=reference_type,
        reference_id=reference_id,
    )
    return post_gl_entry(
        db,
        business_id=business_id,
        lines=lines,
        reference_type=reference_type,
        reference_id=reference_id,
        description=description,
    )


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


def list_entries_by_reference(
    db: Session,
    *,
    business_id: str,
    reference_type: str,
    reference_id: str,
) -> list[GLEntry]:
    return list(
        db.execute(
            select(GLEntry)
            .where(
                GLEntry.business_id == business_id,
                GLEntry.reference_type == reference_type,
                GLEntry.reference_id == reference_id,
            )
            .order_by(GLEntry.created_at.asc(), GLEntry.debit.desc())
        ).scalars().all()
    )


def account_balance(db: Session, *, business_id: str, account_id: str) -> Decimal:
    """Balance on the account's normal side (debit for assets and expenses)."""
    account = db.execute(
        select(GLAccount).where(
            GLAccount.id == account_id,
            GLAccount.business_id == business_id,
        )
    ).scalar_one_or_none()
    if not account:
        raise NotFound("GL account not found", details={"account_id": account_id})

    total_debit, total_credit = db.execute(
        select(
            func.coalesce(func.sum(GLEntry.debit), 0),
            func.coalesce(func.sum(GLEntry.credit), 0),
        ).where(
            GLEntry.business_id == business_id,
            GLEntry.account_id == account_id,
        )
    ).one()
    total_debit = to_money(total_debit)
    total_credit = to_money(total_credit)
    if account.account_type in DEBIT_NORMAL_TYPES:
        return total_debit - total_credit
    return total_credit - total_debit


def trial_balance(db: Session, *, business_id: str) -> list[TrialBalanceRow]:
    rows = db.execute(
        select(
            GLAccount.id,
            GLAccount.code,
            GLAccount.name,
            GLAccount.account_type,
            func.coalesce(func.sum(GLEntry.debit), 0),
            func.coalesce(func.sum(GLEntry.credit), 0),
        )
        .outerjoin(GLEntry, GLEntry.account_id == GLAccount.id)
        .where(GLAccount.business_id == business_id)
        .group_by(GLAccount.id, GLAccount.code, GLAccount.name, GLAccount.account_type)
        .order_by(GLAccount.code.asc())
    ).all()
    return [
        TrialBalanceRow(
            account_id=account_id,
            code=code,
            name=name,
            account_type=account_type,
            debit=to_money(total_debit),
            credit=to_money(total_credit),
        )
        for account_id, code, name, account_type, total_debit, total_credit in rows
    ]
