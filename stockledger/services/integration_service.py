from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from stockledger.core.id_utils import new_id
from stockledger.models.integration import IntegrationOutboxEvent


def queue_outbox_event(
    db: Session,
    *,
    business_id: str,
    event_type: str,
    target_app_key: str,
    payload_json: dict[str, Any] | None = None,
) -> IntegrationOutboxEvent:
    event = IntegrationOutboxEvent(
        id=new_id(),
        business_id=business_id,
        event_type=event_type,
        target_app_key=target_app_key,
        payload_json=payload_json,
        status="pending",
    )
    db.add(event)
    return event


def list_pending_outbox_events(
    db: Session,
    *,
    business_id: str,
    event_type: str | None = None,
    limit: int = 100,
) -> list[IntegrationOutboxEvent]:
    stmt = select(IntegrationOutboxEvent).where(
        IntegrationOutboxEvent.business_id == business_id,
        IntegrationOutboxEvent.status == "pending",
    )
    if event_type:
        stmt = stmt.where(IntegrationOutboxEvent.event_type == event_type)
    stmt = stmt.order_by(IntegrationOutboxEvent.created_at.asc(), IntegrationOutboxEvent.id.asc()).limit(limit)
    return list(db.execute(stmt).scalars().all())
