"""Shared test fixtures — in-memory database, API client, seeded staff users, factories."""

from __future__ import annotations

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JOBS_ENABLED", "false")
os.environ.setdefault("ADMIN_EMAIL", "admin@lotdesk.test")

from datetime import datetime
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from models import Base, get_db, User, UserRole, Inventory, InventoryStatus
from main import app

ADMIN = "admin@lotdesk.test"
MANAGER = "manager@lotdesk.test"
VIEWER = "viewer@lotdesk.test"


@pytest.fixture()
def db_engine():
    """Fresh in-memory SQLite shared across connections."""
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    Base.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture()
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture()
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture()
def users(db):
    rows = {
        "admin": User(email=ADMIN, name="Admin", role=UserRole.admin),
        "manager": User(email=MANAGER, name="Manager", role=UserRole.manager),
        "viewer": User(email=VIEWER, name="Viewer", role=UserRole.viewer),
    }
    db.add_all(rows.values())
    db.commit()
    for u in rows.values():
        db.refresh(u)
    return rows


@pytest.fixture()
def admin_headers(users):
    return {"X-User-Email": ADMIN}


@pytest.fixture()
def manager_headers(users):
    return {"X-User-Email": MANAGER}


@pytest.fixture()
def viewer_headers(users):
    return {"X-User-Email": VIEWER}


@pytest.fixture()
def make_vehicle(db):
    """Factory for inventory rows; VINs are generated unless given."""
    counter = {"n": 0}

    def _make(**overrides) -> Inventory:
        counter["n"] += 1
        data = {
            "year": 2020,
            "make": "Honda",
            "model": "Accord",
            "vin": f"1HGCV1F3{counter['n']:09d}",
            "price": 25000.0,
            "mileage": 30000,
            "status": InventoryStatus.available,
            "date_added": datetime.utcnow(),
        }
        data.update(overrides)
        v = Inventory(**data)
        db.add(v)
        db.commit()
        db.refresh(v)
        return v

    return _make


@pytest.fixture()
def make_listing():
    """Factory for listings in the Auto.dev response shape."""

    def _make(vin: str, price, dealer: str = "Valley Motors", url: str = None, listed: str = None,
              city: str = "Sacramento", state: str = "CA", miles: int = 30000):
        return {
            "vehicle": {"vin": vin, "year": 2020, "make": "Honda", "model": "Accord", "trim": "Sport"},
            "retailListing": {
                "price": price,
                "dealerName": dealer,
                "vdpUrl": url or f"https://www.cars.com/vehicledetail/{vin}/",
                "city": city,
                "state": state,
                "miles": miles,
                "listedDate": listed,
            },
        }

    return _make


@pytest.fixture()
def market_listings(make_listing):
    """Twelve distinct listings priced 20,000 to 31,000."""
    return [make_listing(f"2T1BURHE0KC{i:06d}", 20000 + i * 1000) for i in range(12)]


@pytest.fixture()
def fake_client():
    """Stands in for AutoDevClient; set fetch_listings.return_value per test."""
    client = AsyncMock()
    client.fetch_listings = AsyncMock(return_value=([], {"vehicle.make": "Honda"}))
    return client
