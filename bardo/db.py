from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from flask import current_app
from pymongo import ASCENDING, DESCENDING, MongoClient

logger = logging.getLogger(__name__)


# -------------------------
# MongoDB
# -------------------------
class Store:
    """The collections the application works with, bound to one client."""

    def __init__(self, client: Any, db_name: str):
        self.client = client
        self.db = client[db_name]
        self.events = self.db["events"]
        self.reservations = self.db["reservations"]
        self.users = self.db["users"]
        self.webhook_failures = self.db["webhook_failures"]

    def ping(self) -> bool:
        try:
            self.client.admin.command("ping")
            return True
        except Exception:
            logger.warning("MongoDB ping failed", exc_info=True)
            return False

    def ensure_indexes(self) -> None:
        self.events.create_index([("date", ASCENDING)])
        self.events.create_index([("status", ASCENDING)])
        self.events.create_index([("preSaleStages.stageId", ASCENDING)])
        self.reservations.create_index([("reservationCode", ASCENDING)], unique=True)
        self.reservations.create_index([("orderId", ASCENDING)], unique=True)
        self.reservations.create_index([("eventId", ASCENDING), ("reservationDate", DESCENDING)])
        self.reservations.create_index([("tickets.email", ASCENDING)])
        self.reservations.create_index([("paymentId", ASCENDING)])
        self.reservations.create_index([("userIdentifier", ASCENDING)])
        self.users.create_index([("email", ASCENDING)], unique=True)
        self.webhook_failures.create_index([("resolved", ASCENDING), ("createdAt", DESCENDING)])


def connect(config: Mapping[str, Any], client: Optional[Any] = None) -> Store:
    if client is None:
        try:
            client = MongoClient(
                config["MONGO_URI"],
                serverSelectionTimeoutMS=3000,
                connectTimeoutMS=3000,
                socketTimeoutMS=5000,
                retryWrites=True,
            )
            # Verify connectivity early (will raise if unreachable)
            client.admin.command("ping")
        except Exception as e:
            logger.exception("MongoDB connection failed")
            raise RuntimeError(f"MongoDB connection failed: {e}") from e
    store = Store(client, config["MONGO_DB"])
    store.ensure_indexes()
    return store


def get_store() -> Store:
    return current_app.extensions["bardo.store"]
