import os
import tempfile
from decimal import Decimal
from typing import Generator

# Keep the app's import-time engine and upload dir away from the working tree
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("UPLOAD_DIR", tempfile.mkdtemp(prefix="storefront-uploads-"))

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from storefront import crud, models, schemas
from storefront.auth import create_access_token
from storefront.db import Base, enable_sqlite_foreign_keys
from storefront.main import app, get_db


@pytest.fixture(scope="function")
def db_session() -> Generator:
    # Use in-memory SQLite with a single connection
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    enable_sqlite_foreign_keys(engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)
    Base.metadata.create_all(bind=engine)

    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        engine.dispose()


@pytest.fixture(scope="function")
def client(db_session):
    # Override dependency to use the same session
    def override_get_db():
        try:
            yield db_session
        finally:
            pass
    app.dependency_overrides[get_db] = override_get_db
    from fastapi.testclient import TestClient
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db_session):
    counter = {"n": 0}

    def _make(role="user", password="secret123", username=None):
        counter["n"] += 1
        name = username or f"{role}{counter['n']}"
        data = schemas.RegisterRequest(username=name, email=f"{name}@example.com", password=password, name=name.title())
        return crud.create_user(db_session, data, role=role)
    return _make


@pytest.fixture
def make_product(db_session):
    def _make(name="Widget", price="10.00", discount="0", stock=5, available=True):
        product = models.Product(
            name=name,
            price=Decimal(price),
            discount=Decimal(discount),
            stock_quantity=stock,
            is_available=available,
        )
        db_session.add(product)
        db_session.commit()
        db_session.refresh(product)
        return product
    return _make


def bearer(user) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user.id, user.role)}"}


@pytest.fixture
def user(make_user):
    return make_user()


@pytest.fixture
def admin_user(make_user):
    return make_user(role="admin")


@pytest.fixture
def user_headers(user):
    return bearer(user)


@pytest.fixture
def admin_headers(admin_user):
    return bearer(admin_user)


@pytest.fixture
def shipping():
    return {"street": "1 Main St", "city": "Springfield", "state": "IL", "zip_code": "62701", "country": "US", "phone": "555-0100"}


@pytest.fixture
def auth_for():
    return bearer
