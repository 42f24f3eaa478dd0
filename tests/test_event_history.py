from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import MagicMock

from pymongo.errors import ServerSelectionTimeoutError

from src.monitor.db.mongo import MongoManager
from src.monitor.services.event_history import AlertEvent, InMemoryEventHistory, MongoEventHistory

T0 = 1_700_000_000.0


def _event(rule: str = "HighCpu", status: str = "firing", created_at: float = T0, **kwargs) -> AlertEvent:
    return AlertEvent(
        rule=rule,
        labels={"alertname": rule, "host": "a"},
        status=status,
        severity="critical",
        starts_at=T0,
        created_at=created_at,
        **kwargs,
    )


def test_in_memory_history_lists_newest_first_with_filters():
    history = InMemoryEventHistory(max_events=10)
    history.record(_event("HighCpu", "firing", T0))
    history.record(_event("DiskFull", "firing", T0 + 1))
    history.record(_event("HighCpu", "resolved", T0 + 2, ends_at=T0 + 2))

    items, total = history.list()
    assert total == 3
    assert [(e.rule, e.status) for e in items] == [
        ("HighCpu", "resolved"),
        ("DiskFull", "firing"),
        ("HighCpu", "firing"),
    ]

    items, total = history.list(rule="HighCpu")
    assert total == 2
    items, total = history.list(rule="HighCpu", status="firing")
    assert total == 1 and items[0].created_at == T0

    items, total = history.list(limit=1, offset=1)
    assert total == 3
    assert [e.rule for e in items] == ["DiskFull"]


def test_in_memory_history_is_bounded():
    history = InMemoryEventHistory(max_events=2)
    for i in range(5):
        history.record(_event(created_at=T0 + i))
    items, total = history.list()
    assert total == 2
    assert [e.created_at for e in items] == [T0 + 4, T0 + 3]


def test_mongo_history_record_writes_datetimes():
    col = MagicMock()
    history = MongoEventHistory(col)
    event = _event(value=0.93, delivered=True, attempts=2)
    history.record(event)

    [doc] = col.insert_one.call_args.args
    assert doc["id"] == event.id
    assert doc["rule"] == "HighCpu"
    assert doc["startsAt"] == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)
    assert doc["endsAt"] is None
    assert doc["createdAt"] == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)
    assert doc["delivered"] is True
    assert "starts_at" not in doc


def test_mongo_history_list_builds_query_and_maps_documents():
    col = MagicMock()
    col.count_documents.return_value = 7
    doc = {
        "id": "abc",
        "rule": "HighCpu",
        "labels": {"host": "a"},
        "status": "resolved",
        "severity": "critical",
        "value": 0.5,
        "startsAt": datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc),
        "endsAt": datetime(2023, 11, 14, 22, 14, 20, tzinfo=timezone.utc),
        "delivered": False,
        "attempts": 5,
        "error": "ConnectError: refused",
        "createdAt": datetime(2023, 11, 14, 22, 14, 21, tzinfo=timezone.utc),
    }
    cursor = col.find.return_value
    cursor.sort.return_value.skip.return_value.limit.return_value = [doc]

    history = MongoEventHistory(col)
    items, total = history.list(rule="HighCpu", status="resolved", limit=20, offset=40)

    assert total == 7
    col.count_documents.assert_called_once_with({"rule": "HighCpu", "status": "resolved"})
    col.find.assert_called_once_with({"rule": "HighCpu", "status": "resolved"}, projection={"_id": 0})
    cursor.sort.assert_called_once_with("createdAt", -1)
    cursor.sort.return_value.skip.assert_called_once_with(40)
    cursor.sort.return_value.skip.return_value.limit.assert_called_once_with(20)

    [event] = items
    assert event.id == "abc"
    assert event.starts_at == T0
    assert event.ends_at == T0 + 60
    assert event.created_at == T0 + 61
    assert event.delivered is False
    assert event.error == "ConnectError: refused"


def test_mongo_history_close_calls_hook():
    closed = []
    MongoEventHistory(MagicMock(), on_close=lambda: closed.append(True)).close()
    assert closed == [True]


def test_mongo_manager_pings_and_creates_indexes(monkeypatch):
    client = MagicMock()
    factory = MagicMock(return_value=client)
    monkeypatch.setattr("src.monitor.db.mongo.MongoClient", factory)

    manager = MongoManager("mongodb://u:p@db:27017", db_name="alerts_test")
    assert manager.ping() is True
    client.admin.command.assert_called_once_with("ping", maxTimeMS=1500)

    manager.init_indexes()
    events = client.__getitem__.return_value.__getitem__.return_value
    client.__getitem__.assert_called_with("alerts_test")
    assert events.create_index.call_count == 5

    manager.close()
    client.close.assert_called_once_with()
    factory.assert_called_once_with("mongodb://u:p@db:27017", connect=True)


def test_mongo_manager_ping_failure(monkeypatch):
    client = MagicMock()
    client.admin.command.side_effect = ServerSelectionTimeoutError("no servers")
    monkeypatch.setattr("src.monitor.db.mongo.MongoClient", MagicMock(return_value=client))
    assert MongoManager("mongodb://db:27017").ping() is False
