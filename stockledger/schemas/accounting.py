from datetime import datetime

from pydantic import BaseModel, ConfigDict


class GLAccountOut(BaseModel):
    id: str
    code: str
    name: str
    account_type: str
    role: str | None = None
    is_active: bool


class GLAccountListOut(BaseModel):
    items: list[GLAccountOut]


class GLEntryOut(BaseModel):
    id: str
    posting_id: str
    account_id: str
    transaction_date: datetime
    description: str | None = None
    debit: float
    credit: float
    reference_type: str
    reference_id: str


class GLEntryListOut(BaseModel):
    items: list[GLEntryOut]


class AccountBalanceOut(BaseModel):
    account_id: str
    balance: float


class TrialBalanceRowOut(BaseModel):
    account_id: str
    code: str
    name: str
    account_type: str
    debit: float
    credit: float
    balance: float


class TrialBalanceOut(BaseModel):
    rows: list[TrialBalanceRowOut]
    total_debit: float
    total_credit: float
    balanced: bool

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "rows": [
                    {
                        "account_id": "account-id",
                        "code": "1200",
                        "name": "Inventory Asset",
                        "account_type": "asset",
                        "debit": 1000.0,
                        "credit": 250.0,
                        "balance": 750.0,
                    }
                ],
                "total_debit": 1250.0,
                "total_credit": 1250.0,
                "balanced": True,
            }
        }
    )
