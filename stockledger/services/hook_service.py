"""
Post-commit orchestration hooks.

The engine hands a ``StockChangeEvent`` to the dispatcher only after its
transaction has committed. A single worker thread drains a bounded queue and
runs every handler in its own session; a handler failure is logged and rolled
back on that session only, and committed stock data is never touched.
"""

import logging
import queue
import threading
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable

from sqlalchemy.orm import Session

from stockledger.core.config import settings
from stockledger.core.observability import log_event
from stockledger.models.product import Product
from stockledger.services.integration_service import queue_outbox_event
from stockledger.services.stock_report_service import low_stock_threshold

logger = logging.getLogger("stockledger.hooks")

STOCK_LEVEL_CHANGED = "inventory.stock_level_changed"
LOW_STOCK = "inventory.low_stock"


@dataclass(frozen=True)
class StockChangeEvent:
    business_id: str
    product_id: str
    operation: str  # add, remove, transfer, adjust
    quantity_change: Decimal
    new_stock: Decimal
    warehouse_id: str | None = None
    to_warehouse_id: str | None = None
    reference_type: str | None = None
    reference_id: str | None = None
    movement_ids: tuple[str, ...] = field(default_factory=tuple)

    def as_payload(self) -> dict:
        return {
            "product_id": self.product_id,
            "operation": self.operation,
            "quantity_change": float(self.quantity_change),
            "new_stock": float(self.new_stock),
            "warehouse_id": self.warehouse_id,
            "to_warehouse_id": self.to_warehouse_id,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "movement_ids": list(self.movement_ids),
        }


HookHandler = Callable[[Session, StockChangeEvent], None]


def sync_stock_level(db: Session, event: StockChangeEvent) -> None:
    queue_outbox_event(
        db,
        business_id=event.business_id,
        event_type=STOCK_LEVEL_CHANGED,
        target_app_key=settings.stock_sync_target_app_key,
        payload_json=event.as_payload(),
    )


def evaluate_reorder_trigger(db: Session, event: StockChangeEvent) -> None:
    if event.quantity_change >= 0:
        return
    product = db.get(Product, event.product_id)
    if product is None:
        return

    threshold = low_stock_threshold(product)
    if product.stock > threshold:
        return

    queue_outbox_event(
        db,
        business_id=event.business_id,
        event_type=LOW_STOCK,
        target_app_key=settings.reorder_target_app_key,
        payload_json={
            "product_id": product.id,
            "product_name": product.name,
            "sku": product.sku,
            "stock": float(product.stock),
            "reorder_level": float(threshold),
            "reference_type": event.reference_type,
            "reference_id": event.reference_id,
        },
    )


DEFAULT_HANDLERS: tuple[HookHandler, ...] = (sync_stock_level, evaluate_reorder_trigger)


class HookDispatcher:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        handlers: tuple[HookHandler, ...] | list[HookHandler] = DEFAULT_HANDLERS,
        max_queue_size: int | None = None,
        enabled: bool | None = None,
    ):
        self._session_factory = session_factory
        self._handlers = tuple(handlers)
        self._queue: queue.Queue[StockChangeEvent | None] = queue.Queue(
            maxsize=max_queue_size or settings.hook_queue_max_size
        )
        self._enabled = settings.hooks_enabled if enabled is None else enabled
        self._worker: threading.Thread | None = None
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self._enabled

    def start(self) -> None:
        with self._lock:
            if self._worker is not None and self._worker.is_alive():
                return
            self._worker = threading.Thread(target=self._run, name="stockledger-hooks", daemon=True)
            self._worker.start()

    def submit(self, event: StockChangeEvent | None) -> bool:
        """Queue an event without blocking. Returns False when it was not queued."""
        if event is None or not self._enabled:
            return False
        self.start()
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            log_event(
                logger,
                "hooks.dropped",
                level=logging.WARNING,
                business_id=event.business_id,
                product_id=event.product_id,
                operation=event.operation,
            )
            return False
        return True

    def drain(self) -> None:
        """Block until every queued event has been handled."""
        self._queue.join()

    def shutdown(self, timeout: float = 5.0) -> None:
        with self._lock:
            worker = self._worker
            self._worker = None
        if worker is None:
            return
        self._queue.put(None)
        worker.join(timeout=timeout)

    def _run(self) -> None:
        while True:
            event = self._queue.get()
            try:
                if event is None:
                    return
                self._dispatch(event)
            finally:
                self._queue.task_done()

    def _dispatch(self, event: StockChangeEvent) -> None:
        for handler in self._handlers:
            db = self._session_factory()
            try:
                handler(db, event)
                db.commit()
            except Exception as exc:
                db.rollback()
                log_event(
                    logger,
                    "hooks.handler_failed",
                    level=logging.ERROR,
                    handler=getattr(handler, "__name__", repr(handler)),
                    business_id=event.business_id,
                    product_id=event.product_id,
                    operation=event.operation,
                    error=str(exc),
                )
            finally:
                db.close()
