"""
Transaction boundary for the stock primitives.

Each primitive validates its payload before touching the database, runs its
body in one session, and reports either a value or a structured ``Failure``.
When the caller passes its own ``Session`` the primitive joins that unit of
work and never commits or closes it. A failure still rolls the whole session
back, so the caller must stop composing on that session once a primitive
fails. Hooks fire only after the engine's own commit; callers that own the
transaction hand ``Outcome.events`` to ``StockEngine.dispatch`` after
committing.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, TypeVar

from pydantic import BaseModel, ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from stockledger.core.errors import PrimitiveFailed, StockEngineError
from stockledger.core.observability import log_event, validation_error_details
from stockledger.db.capabilities import SchemaCapabilities
from stockledger.schemas.stock import (
    AddStockIn,
    AddStockOut,
    AdjustStockIn,
    AdjustStockOut,
    ReleaseStockIn,
    RemoveStockIn,
    RemoveStockOut,
    ReservationOut,
    ReserveStockIn,
    TransferStockIn,
    TransferStockOut,
)
from stockledger.services import reservation_service, stock_service
from stockledger.services.hook_service import HookDispatcher, StockChangeEvent

logger = logging.getLogger("stockledger.engine")

T = TypeVar("T")


@dataclass(frozen=True)
class Failure:
    kind: str
    message: str
    status_code: int = 400
    details: Any = None

    @classmethod
    def from_error(cls, exc: StockEngineError) -> "Failure":
        return cls(kind=exc.kind, message=exc.message, status_code=exc.status_code, details=exc.details)


@dataclass(frozen=True)
class Outcome(Generic[T]):
    value: T | None = None
    failure: Failure | None = None
    events: tuple[StockChangeEvent, ...] = field(default_factory=tuple)

    @property
    def ok(self) -> bool:
        return self.failure is None

    def unwrap(self) -> T:
        if self.failure is not None:
            raise PrimitiveFailed(
                kind=self.failure.kind,
                message=self.failure.message,
                status_code=self.failure.status_code,
                details=self.failure.details,
            )
        return self.value


def _validation_failure(exc: ValidationError) -> Failure:
    details = validation_error_details(exc.errors(include_url=False), root="payload")
    return Failure(kind="validation_error", message="Validation failed", status_code=422, details=details)


class StockEngine:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        capabilities: SchemaCapabilities,
        dispatcher: HookDispatcher | None = None,
    ):
        self._session_factory = session_factory
        self.capabilities = capabilities
        self.dispatcher = dispatcher

    def add_stock(self, payload: AddStockIn | dict, db: Session | None = None) -> Outcome[AddStockOut]:
        return self._run(
            "add_stock",
            AddStockIn,
            payload,
            db,
            lambda session, data: stock_service.add_stock(session, data, capabilities=self.capabilities),
        )

    def remove_stock(self, payload: RemoveStockIn | dict, db: Session | None = None) -> Outcome[RemoveStockOut]:
        return self._run(
            "remove_stock",
            RemoveStockIn,
            payload,
            db,
            lambda session, data: stock_service.remove_stock(session, data, capabilities=self.capabilities),
        )

    def transfer_stock(
        self, payload: TransferStockIn | dict, db: Session | None = None
    ) -> Outcome[TransferStockOut]:
        return self._run(
            "transfer_stock",
            TransferStockIn,
            payload,
            db,
            lambda session, data: stock_service.transfer_stock(session, data, capabilities=self.capabilities),
        )

    def adjust_stock(self, payload: AdjustStockIn | dict, db: Session | None = None) -> Outcome[AdjustStockOut]:
        return self._run(
            "adjust_stock",
            AdjustStockIn,
            payload,
            db,
            lambda session, data: stock_service.adjust_stock(session, data, capabilities=self.capabilities),
        )

    def reserve_stock(self, payload: ReserveStockIn | dict, db: Session | None = None) -> Outcome[ReservationOut]:
        return self._run("reserve_stock", ReserveStockIn, payload, db, reservation_service.reserve_stock)

    def release_stock(self, payload: ReleaseStockIn | dict, db: Session | None = None) -> Outcome[ReservationOut]:
        return self._run("release_stock", ReleaseStockIn, payload, db, reservation_service.release_stock)

    def dispatch(self, events: tuple[StockChangeEvent, ...] | list[StockChangeEvent]) -> None:
        if self.dispatcher is None:
            return
        for event in events:
            self.dispatcher.submit(event)

    def _run(
        self,
        operation: str,
        schema: type[BaseModel],
        payload: BaseModel | dict,
        db: Session | None,
        body: Callable[[Session, Any], tuple[Any, StockChangeEvent | None]],
    ) -> Outcome:
        try:
            data = payload if isinstance(payload, schema) else schema.model_validate(payload)
        except ValidationError as exc:
            return Outcome(failure=_validation_failure(exc))

        owns_session = db is None
        session = self._session_factory() if owns_session else db
        try:
            value, event = body(session, data)
            if owns_session:
                session.commit()
        except StockEngineError as exc:
            session.rollback()
            log_event(
                logger,
                "primitive.failed",
                level=logging.WARNING,
                operation=operation,
                business_id=getattr(data, "business_id", None),
                kind=exc.kind,
                error=exc.message,
            )
            return Outcome(failure=Failure.from_error(exc))
        except SQLAlchemyError as exc:
            session.rollback()
            log_event(
                logger,
                "primitive.storage_error",
                level=logging.ERROR,
                operation=operation,
                business_id=getattr(data, "business_id", None),
                error=str(exc),
            )
            return Outcome(failure=Failure(kind="storage_error", message="Storage error", status_code=500))
        finally:
            if owns_session:
                session.close()

        events = (event,) if event is not None else ()
        if owns_session:
            self.dispatch(events)
        return Outcome(value=value, events=events)


_default_engine: StockEngine | None = None
_default_engine_lock = threading.Lock()


def get_default_engine() -> StockEngine:
    global _default_engine
    with _default_engine_lock:
        if _default_engine is None:
            from stockledger.db.capabilities import resolve_schema_capabilities
            from stockledger.db.session import SessionLocal, engine

            _default_engine = StockEngine(
                SessionLocal,
                capabilities=resolve_schema_capabilities(engine),
                dispatcher=HookDispatcher(SessionLocal),
            )
        return _default_engine


def set_default_engine(stock_engine: StockEngine | None) -> None:
    global _default_engine
    with _default_engine_lock:
        _default_engine = stock_engine


def add_stock(payload: AddStockIn | dict, db: Session | None = None) -> Outcome[AddStockOut]:
    return get_default_engine().add_stock(payload, db)


def remove_stock(payload: RemoveStockIn | dict, db: Session | None = None) -> Outcome[RemoveStockOut]:
    return get_default_engine().remove_stock(payload, db)


def transfer_stock(payload: TransferStockIn | dict, db: Session | None = None) -> Outcome[TransferStockOut]:
    return get_default_engine().transfer_stock(payload, db)


def adjust_stock(payload: AdjustStockIn | dict, db: Session | None = None) -> Outcome[AdjustStockOut]:
    return get_default_engine().adjust_stock(payload, db)


def reserve_stock(payload: ReserveStockIn | dict, db: Session | None = None) -> Outcome[ReservationOut]:
    return get_default_engine().reserve_stock(payload, db)


def release_stock(payload: ReleaseStockIn | dict, db: Session | None = None) -> Outcome[ReservationOut]:
    return get_default_engine().release_stock(payload, db)
