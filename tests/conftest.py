import pytest
import os
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENV", "test")

import stockledger.models  # noqa: F401
from stockledger.core.deps import get_db
from stockledger.core.key_locks import stock_key_locks
from stockledger.db.base import Base
from stockledger.db.session import enable_sqlite_foreign_keys
from stockledger.main import app
from stockledger.models.product import Product
from stockledger.services.location_service import create_location

TENANT_ID = "tenant-a"
OTHER_TENANT_ID = "tenant-b"
ACTOR_ID = "user-1"


def _memory_session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_foreign_keys(engine)
    Base.metadata.create_all(bind=engine)
    return engine, sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture()
def test_context():
    engine, session_local = _memory_session_factory()

    def override_get_db():
        db = session_local()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as client:
        yield client, session_local

    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)
    stock_key_locks.clear()


@pytest.fixture()
def db_session():
    engine, session_local = _memory_session_factory()
    db = session_local()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)
        stock_key_locks.clear()


@pytest.fixture()
def file_session_factory(tmp_path):
    """File-backed SQLite for tests that hand one session to each worker thread."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'stockledger.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    enable_sqlite_foreign_keys(engine)
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()
    stock_key_locks.clear()


@pytest.fixture()
def make_location(db_session):
    def _make(
        name: str = "Main Warehouse",
        *,
        tenant_id: str = TENANT_ID,
        location_type: str = "PHYSICAL",
        is_default: bool = False,
        is_active: bool = True,
    ):
        return create_location(
            db_session,
            tenant_id=tenant_id,
            name=name,
            location_type=location_type,
            is_default=is_default,
            is_active=is_active,
            actor_id=ACTOR_ID,
        )

    return _make


@pytest.fixture()
def make_product(db_session):
    def _make(product_id: str, name: str, *, tenant_id: str = TENANT_ID, product_code: str | None = None):
        product = Product(id=product_id, tenant_id=tenant_id, name=name, product_code=product_code)
        db_session.add(product)
        db_session.commit()
        return product

    return _make


def tenant_headers(tenant_id: str = TENANT_ID, actor_id: str | None = ACTOR_ID) -> dict[str, str]:
    headers = {"X-Tenant-ID": tenant_id}
    if actor_id:
        headers["X-Actor-ID"] = actor_id
    return headers


@pytest.fixture()
def headers():
    return tenant_headers()


@pytest.fixture()
def other_headers():
    return tenant_headers(OTHER_TENANT_ID, "user-2")
