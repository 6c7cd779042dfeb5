from stockledger.db.session import SessionLocal
from stockledger.services.engine import StockEngine, get_default_engine


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_stock_engine() -> StockEngine:
    return get_default_engine()
