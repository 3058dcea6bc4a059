"""Pytest configuration and fixtures."""

import os

# Point the application engine at a throwaway database before it is imported
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from decimal import Decimal
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from factory_app.core.rbac import TokenData, UserRole
from factory_app.core.security import create_access_token, get_password_hash
from factory_app.db.base import Base
from factory_app.db.session import enable_sqlite_foreign_keys, get_db
from factory_app.main import app
# Import all models to ensure they're registered with Base.metadata
from factory_app.models import *  # noqa: F401,F403
from factory_app.models.catalog import InventoryItem, Unit
from factory_app.models.user import User
from factory_app.schemas.requisition import RequisitionCreate
from factory_app.services.requisition_service import RequisitionService

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite:///:memory:"
TEST_PASSWORD = "testpass123"
# bcrypt is slow on purpose, hash once for every fixture user
TEST_PASSWORD_HASH = get_password_hash(TEST_PASSWORD)


@pytest.fixture(scope="function")
def db_engine():
    """Create a test database engine."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_foreign_keys(engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """Create a test database session."""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def client(db_session: Session) -> Generator[TestClient, None, None]:
    """Create a test client with database override."""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    # Disable rate limiting during tests to avoid flaky failures
    from factory_app.core.rate_limit import limiter
    limiter.enabled = False
    # Don't raise server exceptions so we can test error status codes
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    limiter.enabled = True
    app.dependency_overrides.clear()


def _create_user(db: Session, username: str, role: UserRole, department: str = "Production") -> User:
    user = User(
        username=username,
        email=f"{username}@example.com",
        password_hash=TEST_PASSWORD_HASH,
        role=role,
        department=department,
        is_active=True,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def admin_user(db_session: Session) -> User:
    return _create_user(db_session, "admin", UserRole.ADMIN, "Management")


@pytest.fixture
def manager_user(db_session: Session) -> User:
    return _create_user(db_session, "manager", UserRole.MANAGER)


@pytest.fixture
def test_user(db_session: Session) -> User:
    """A plain user who creates requisitions."""
    return _create_user(db_session, "alice", UserRole.USER)


@pytest.fixture
def other_user(db_session: Session) -> User:
    return _create_user(db_session, "bob", UserRole.USER, "Maintenance")


def as_actor(user: User) -> TokenData:
    """The authenticated-caller view of a user, as the API dependency builds it."""
    return TokenData(user_id=user.id, email=user.email, role=user.role, username=user.username)


def auth_headers_for(user: User) -> dict:
    token = create_access_token(
        data={"sub": str(user.id), "email": user.email, "role": user.role.value}
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers(admin_user: User) -> dict:
    return auth_headers_for(admin_user)


@pytest.fixture
def manager_headers(manager_user: User) -> dict:
    return auth_headers_for(manager_user)


@pytest.fixture
def user_headers(test_user: User) -> dict:
    return auth_headers_for(test_user)


@pytest.fixture
def other_headers(other_user: User) -> dict:
    return auth_headers_for(other_user)


@pytest.fixture
def test_unit(db_session: Session) -> Unit:
    unit = Unit(name="Kilogram", abbreviation="kg")
    db_session.add(unit)
    db_session.commit()
    db_session.refresh(unit)
    return unit


@pytest.fixture
def test_inventory_item(db_session: Session, test_unit: Unit) -> InventoryItem:
    item = InventoryItem(
        name="Steel Sheet 2mm",
        sku="STL-002",
        unit_id=test_unit.id,
        unit_cost=Decimal("12.50"),
        is_active=True,
    )
    db_session.add(item)
    db_session.commit()
    db_session.refresh(item)
    return item


def requisition_payload(**overrides) -> dict:
    """A valid create body: two lines, 10 x 2.50 + 4 x 1.25 = 30.00."""
    payload = {
        "title": "Line 3 consumables",
        "description": "Weekly restock",
        "department": "Production",
        "priority": "high",
        "items": [
            {"item_name": "Welding rods", "quantity_requested": "10", "estimated_unit_cost": "2.50"},
            {"item_name": "Cutting discs", "quantity_requested": "4", "estimated_unit_cost": "1.25"},
        ],
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def make_requisition(db_session: Session):
    """Factory creating a requisition through the service, returns its id."""
    def _make(user: User, **overrides) -> int:
        data = RequisitionCreate(**requisition_payload(**overrides))
        result = RequisitionService.create_requisition(db_session, data, as_actor(user))
        return result["id"]
    return _make
