import os
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("HOOKS_ENABLED", "false")

import stockledger.models  # noqa: F401
from stockledger.core.deps import get_db, get_stock_engine
from stockledger.core.id_utils import new_id
from stockledger.db.base import Base
from stockledger.db.capabilities import resolve_schema_capabilities
from stockledger.main import app
from stockledger.models.business import Business, Warehouse
from stockledger.models.product import Product
from stockledger.services.engine import StockEngine, set_default_engine


def _seed_business(session_local) -> str:
    with session_local() as db:
        business = Business(id=new_id(), name="Acme Traders", base_currency="USD")
        db.add(business)
        db.commit()
        return business.id


def _product_factory(session_local, business_id):
    def _make(**overrides) -> str:
        values = {
            "id": new_id(),
            "business_id": business_id,
            "name": "Paracetamol 500mg",
            "sku": None,
            "unit": "pcs",
            "stock": Decimal("0"),
            "cost_price": Decimal("0"),
            "reorder_level": Decimal("0"),
        }
        values.update(overrides)
        with session_local() as db:
            db.add(Product(**values))
            db.commit()
        return values["id"]

    return _make


def _warehouse_factory(session_local, business_id):
    def _make(name: str, code: str, *, is_primary: bool = False) -> str:
        warehouse_id = new_id()
        with session_local() as db:
            db.add(
                Warehouse(
                    id=warehouse_id,
                    business_id=business_id,
                    name=name,
                    code=code,
                    is_primary=is_primary,
                    is_active=True,
                )
            )
            db.commit()
        return warehouse_id

    return _make


@pytest.fixture()
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def session_local(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine, expire_on_commit=False)


@pytest.fixture()
def stock_engine(db_engine, session_local):
    return StockEngine(session_local, capabilities=resolve_schema_capabilities(db_engine))


@pytest.fixture()
def business_id(session_local):
    return _seed_business(session_local)


@pytest.fixture()
def make_product(session_local, business_id):
    return _product_factory(session_local, business_id)


@pytest.fixture()
def make_warehouse(session_local, business_id):
    return _warehouse_factory(session_local, business_id)


@pytest.fixture()
def file_db(tmp_path):
    """File-backed database for tests that use more than one thread."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'stockledger-test.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)
    business_id = _seed_business(session_local)
    yield engine, session_local, business_id
    engine.dispose()


@pytest.fixture()
def test_context(session_local, stock_engine):
    def override_get_db():
        db = session_local()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_stock_engine] = lambda: stock_engine
    set_default_engine(stock_engine)

    with TestClient(app) as client:
        yield client, session_local

    app.dependency_overrides.clear()
    set_default_engine(None)
