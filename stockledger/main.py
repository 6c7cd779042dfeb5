import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

import stockledger.models  # noqa: F401
from stockledger.core.config import settings
from stockledger.core.errors import StockEngineError
from stockledger.core.observability import (
    http_exception_handler,
    log_event,
    request_logging_middleware,
    setup_observability,
    stock_engine_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from stockledger.db.base import Base
from stockledger.db.session import engine
from stockledger.routers import accounting, stock
from stockledger.services.engine import get_default_engine

logger = logging.getLogger("stockledger.api")


@asynccontextmanager
async def lifespan(_app: FastAPI):
    if settings.db_auto_create:
        Base.metadata.create_all(bind=engine)
    stock_engine = get_default_engine()
    yield
    if stock_engine.dispatcher is not None:
        stock_engine.dispatcher.shutdown()


app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    description=(
        "Multi-tenant stock transaction engine.\n\n"
        "Every request names its business in the `X-Business-ID` header. "
        "Stock primitives live under `/stock`, general-ledger reads under `/accounting`."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "health", "description": "Service status and quick links."},
        {"name": "stock", "description": "Stock-in, stock-out, transfers, adjustments and reservations."},
        {"name": "accounting", "description": "Chart of accounts, GL lines and trial balance."},
    ],
)

setup_observability()
app.middleware("http")(request_logging_middleware)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(StockEngineError, stock_engine_exception_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.include_router(stock.router)
app.include_router(accounting.router)


@app.get("/", tags=["health"])
def root():
    return {
        "app": settings.app_name,
        "docs": "/docs",
        "health": "/health",
        "ready": "/ready",
    }


@app.get("/health", tags=["health"])
def health():
    return {"ok": True}


@app.get("/ready", tags=["health"])
def ready():
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        log_event(logger, "readiness_failed", level=logging.WARNING, error=str(exc))
        return {"ok": False}
    return {"ok": True}
