from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from stockledger.core.deps import get_db
from stockledger.models.business import Business


@dataclass(frozen=True)
class BusinessAccess:
    """Business capability handed over by the upstream auth layer."""

    business: Business


def get_business_access(
    x_business_id: str = Header(..., alias="X-Business-ID", min_length=1),
    db: Session = Depends(get_db),
) -> BusinessAccess:
    business = db.execute(select(Business).where(Business.id == x_business_id)).scalar_one_or_none()
    if not business:
        raise HTTPException(status_code=404, detail="Business not found")
    return BusinessAccess(business=business)
