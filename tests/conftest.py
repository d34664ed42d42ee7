import typing as t

import mongomock
import pytest
from flask import Flask
from flask.testing import FlaskClient

from bardo import create_app
from bardo.auth import create_user
from bardo.db import Store
from bardo.events import derive_status
from bardo.inventory import InventoryAllocator
from bardo.utils import now_utc, to_iso
from helpers import ADMIN_EMAIL, ADMIN_PASSWORD, FakeGateway, future


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def app(gateway: FakeGateway) -> Flask:
    return create_app(
        {
            "TESTING": True,
            "ENVIRONMENT": "test",
            "SECRET_KEY": "test-secret",
            "MONGO_DB": "bardo_test",
            "SWEEPER_ENABLED": False,
            "FRONTEND_URL": "https://bardo.test",
            "BACKEND_URL": "https://api.bardo.test",
        },
        mongo_client=mongomock.MongoClient(),
        gateway=gateway,
    )


@pytest.fixture
def store(app: Flask) -> Store:
    return app.extensions["bardo.store"]


@pytest.fixture
def allocator(store: Store) -> InventoryAllocator:
    return InventoryAllocator(store.events)


@pytest.fixture
def client(app: Flask) -> FlaskClient:
    return app.test_client()


@pytest.fixture
def admin_client(app: Flask, store: Store) -> FlaskClient:
    create_user(store, ADMIN_EMAIL, ADMIN_PASSWORD)
    c = app.test_client()
    resp = c.post("/api/auth/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
    assert resp.status_code == 200
    return c


@pytest.fixture
def make_event(store: Store) -> t.Callable[..., t.Dict[str, t.Any]]:
    """Insert an event document directly, with the status the transition function gives it."""

    def factory(**overrides: t.Any) -> t.Dict[str, t.Any]:
        doc: t.Dict[str, t.Any] = {
            "title": "Fiesta BARDO",
            "date": future(30),
            "location": "Club Central, Buenos Aires",
            "dj": "DJ Uno",
            "info": "",
            "image": "https://img.bardo.test/flyer.jpg",
            "tags": [],
            "basePrice": 0.0,
            "preSaleStages": [],
            "freeTickets": {"enabled": False, "quantity": 0, "ticketsClaimed": 0},
            "status": "active",
            "cancellationReason": None,
            "cancelledAt": None,
            "createdAt": to_iso(now_utc()),
            "updatedAt": to_iso(now_utc()),
        }
        doc.update(overrides)
        if "status" not in overrides:
            doc["status"] = derive_status(doc)
        doc["_id"] = store.events.insert_one(doc).inserted_id
        return doc

    return factory
