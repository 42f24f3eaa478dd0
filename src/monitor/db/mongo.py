from __future__ import annotations

import logging
from threading import RLock
from typing import Optional

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)


class MongoManager:
    """
    MongoDB connection manager for the optional alert event history.

    Holds one MongoClient for the configured database; the client is created lazily.
    """

    def __init__(self, mongo_uri: str, db_name: str = "alertengine"):
        self._mongo_uri = mongo_uri
        self._db_name = db_name
        self._client: Optional[MongoClient] = None
        self._lock = RLock()

    def connect(self) -> None:
        """Initialize the Mongo client if needed."""
        with self._lock:
            if self._client is not None:
                return
            # MongoClient is thread-safe and manages internal pooling.
            self._client = MongoClient(self._mongo_uri, connect=True)

    # PUBLIC_INTERFACE
    def ping(self, timeout_ms: int = 1500) -> bool:
        """Ping MongoDB to validate connectivity (used by startup and health diagnostics)."""
        try:
            if self._client is None:
                self.connect()
            assert self._client is not None
            self._client.admin.command("ping", maxTimeMS=int(max(250, timeout_ms)))
            return True
        except PyMongoError:
            logger.exception("Mongo ping failed (PyMongoError)")
            return False

    def close(self) -> None:
        with self._lock:
            if self._client is not None:
                try:
                    self._client.close()
                except PyMongoError:
                    logger.exception("Error closing MongoClient")
                self._client = None

    def db(self) -> Database:
        if self._client is None:
            self.connect()
        assert self._client is not None
        return self._client[self._db_name]

    def alert_events(self) -> Collection:
        return self.db()["alert_events"]

    def init_indexes(self) -> None:
        """Create alert_events indexes (idempotent)."""
        events = self.alert_events()
        events.create_index([("id", ASCENDING)], unique=True, name="idx_alert_events_id")
        events.create_index([("rule", ASCENDING)], name="idx_alert_events_rule")
        events.create_index([("status", ASCENDING)], name="idx_alert_events_status")
        events.create_index([("createdAt", DESCENDING)], name="idx_alert_events_createdAt_desc")
        events.create_index(
            [("rule", ASCENDING), ("createdAt", DESCENDING)],
            name="idx_alert_events_rule_createdAt_desc",
        )
