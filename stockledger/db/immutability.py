"""
Flush-time guards for the write-once tables.

Movements, inventory ledger rows and GL lines are books of record: corrections
are made with new compensating rows. These listeners reject any ORM update of
them, and any ORM delete of movements and ledger rows, before SQL reaches the
database. GL lines are removed only through the reference-scoped bulk delete
in ``gl_service.delete_postings_by_reference``, which does not pass through the
unit of work.
"""

import logging

from sqlalchemy import event
from sqlalchemy.orm import Session

from stockledger.core.errors import ImmutableRecordError

logger = logging.getLogger("stockledger.db.immutability")


def _write_once_models():
    from stockledger.models.accounting import GLEntry
    from stockledger.models.inventory import InventoryLedger, StockMovement

    return (StockMovement, InventoryLedger, GLEntry)


def _append_only_models():
    from stockledger.models.inventory import InventoryLedger, StockMovement

    return (StockMovement, InventoryLedger)


def _check_write_once_before_flush(session: Session, flush_context, instances) -> None:
    write_once = _write_once_models()
    for instance in session.dirty:
        if isinstance(instance, write_once) and session.is_modified(instance, include_collections=False):
            logger.warning("blocked update of %s %s", type(instance).__name__, instance.id)
            raise ImmutableRecordError(f"{type(instance).__name__} rows are write-once")

    append_only = _append_only_models()
    for instance in session.deleted:
        if isinstance(instance, append_only):
            logger.warning("blocked delete of %s %s", type(instance).__name__, instance.id)
            raise ImmutableRecordError(f"{type(instance).__name__} rows cannot be deleted")
        if isinstance(instance, write_once):
            raise ImmutableRecordError("GL lines are removed by reference only")


def register_immutability_listeners() -> None:
    if not event.contains(Session, "before_flush", _check_write_once_before_flush):
        event.listen(Session, "before_flush", _check_write_once_before_flush)
