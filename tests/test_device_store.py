from __future__ import annotations

import threading
from datetime import datetime, timezone

import pytest
from sqlmodel import Session, select

from primis.db import init_db, make_engine
from primis.device_store import DeviceStore
from primis.errors import DuplicateKey, TransportUnavailable, UnknownDevice
from primis.models import Device, DeviceData, DeviceStatus
from primis.settings import Settings


def test_create_then_get_defaults_to_offline(store: DeviceStore) -> None:
    store.create_device("356938035643809")

    d = store.get_device("356938035643809")
    assert d is not None
    assert d.imei == "356938035643809"
    assert d.status == DeviceStatus.OFFLINE
    assert d.id is not None


def test_create_with_explicit_status(store: DeviceStore) -> None:
    store.create_device("ABC123", DeviceStatus.ONLINE)

    assert store.get_device("ABC123").status == DeviceStatus.ONLINE


def test_get_unknown_device_returns_none(store: DeviceStore) -> None:
    assert store.get_device("nope") is None


def test_duplicate_create_raises_and_keeps_one_row(store: DeviceStore, engine) -> None:
    store.create_device("ABC123")
    with pytest.raises(DuplicateKey):
        store.create_device("ABC123", DeviceStatus.ONLINE)

    with Session(engine) as s:
        rows = s.exec(select(Device).where(Device.imei == "ABC123")).all()
    assert len(rows) == 1
    assert rows[0].status == DeviceStatus.OFFLINE


def test_empty_imei_rejected(store: DeviceStore) -> None:
    with pytest.raises(ValueError):
        store.create_device("")


def test_concurrent_duplicate_create(tmp_path) -> None:
    engine = make_engine(Settings(database_url=f"sqlite:///{tmp_path / 'race.db'}", db_timeout=10))
    init_db(engine)
    store = DeviceStore(engine)

    barrier = threading.Barrier(4)
    outcomes: list[str] = []
    lock = threading.Lock()

    def worker() -> None:
        barrier.wait()
        try:
            store.create_device("RACE1")
            result = "created"
        except DuplicateKey:
            result = "duplicate"
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes) == ["created", "duplicate", "duplicate", "duplicate"]
    assert len([d for d in store.list_devices() if d.imei == "RACE1"]) == 1
    engine.dispose()


def test_get_or_create_is_idempotent(store: DeviceStore) -> None:
    first, created = store.get_or_create_device("ABC123", DeviceStatus.ONLINE)
    again, created_again = store.get_or_create_device("ABC123", DeviceStatus.OFFLINE)

    assert created is True
    assert created_again is False
    assert again.id == first.id
    assert again.status == DeviceStatus.ONLINE


def test_get_or_create_recovers_from_lost_race(store: DeviceStore, monkeypatch) -> None:
    store.create_device("ABC123")
    real_get = store.get_device
    calls = {"n": 0}

    def stale_first_lookup(imei):
        # first lookup misses, as if another writer inserted right after it
        calls["n"] += 1
        return None if calls["n"] == 1 else real_get(imei)

    monkeypatch.setattr(store, "get_device", stale_first_lookup)
    d, created = store.get_or_create_device("ABC123", DeviceStatus.ONLINE)

    assert created is False
    assert d.imei == "ABC123"


def test_list_devices_newest_first(store: DeviceStore) -> None:
    for imei in ("A", "B", "C"):
        store.create_device(imei)

    assert [d.imei for d in store.list_devices()] == ["C", "B", "A"]


def test_update_status(store: DeviceStore) -> None:
    store.create_device("ABC123")

    d = store.update_status("ABC123", DeviceStatus.ONLINE)
    assert d is not None and d.status == DeviceStatus.ONLINE
    assert store.get_device("ABC123").status == DeviceStatus.ONLINE


def test_update_status_unknown_device(store: DeviceStore) -> None:
    assert store.update_status("ghost", DeviceStatus.ONLINE) is None
    assert store.get_device("ghost") is None


def test_delete_device_removes_data(store: DeviceStore, engine) -> None:
    d = store.create_device("ABC123")
    store.append_data("ABC123", "devices/ABC123/data", {"x": 1})

    assert store.delete_device(d.id) is True
    assert store.get_device("ABC123") is None
    assert store.delete_device(d.id) is False
    with Session(engine) as s:
        assert s.exec(select(DeviceData)).all() == []


def test_append_data_unknown_device_does_not_create(store: DeviceStore) -> None:
    with pytest.raises(UnknownDevice):
        store.append_data("ghost", "devices/ghost/data", {"x": 1})

    assert store.get_device("ghost") is None


def test_append_and_read_back(store: DeviceStore) -> None:
    d = store.create_device("ABC123")

    rec = store.append_data("ABC123", "devices/ABC123/telemetry", {"temp": 21.5, "tags": ["a", None]})

    assert rec.device_id == d.id
    rows = store.get_data("ABC123")
    assert len(rows) == 1
    assert rows[0].topic == "devices/ABC123/telemetry"
    assert rows[0].payload == {"temp": 21.5, "tags": ["a", None]}


def test_get_data_newest_first_and_limited(store: DeviceStore) -> None:
    store.create_device("ABC123")
    for i in range(5):
        store.append_data("ABC123", "devices/ABC123/data", {"seq": i})

    rows = store.get_data("ABC123", limit=3)
    assert [r.payload["seq"] for r in rows] == [4, 3, 2]


@pytest.mark.parametrize("limit", [0, -5, None])
def test_get_data_non_positive_limit_uses_default(engine, limit) -> None:
    store = DeviceStore(engine, default_limit=2)
    store.create_device("ABC123")
    for i in range(4):
        store.append_data("ABC123", "devices/ABC123/data", {"seq": i})

    assert len(store.get_data("ABC123", limit)) == 2


def test_get_data_unknown_imei_is_empty(store: DeviceStore) -> None:
    assert store.get_data("ghost") == []


def test_data_is_scoped_to_device(store: DeviceStore) -> None:
    store.create_device("A")
    store.create_device("B")
    store.append_data("A", "devices/A/data", {"who": "a"})
    store.append_data("B", "devices/B/data", {"who": "b"})

    assert [r.payload for r in store.get_data("A")] == [{"who": "a"}]


def test_created_at_is_timezone_aware(store: DeviceStore) -> None:
    store.create_device("ABC123")
    store.append_data("ABC123", "devices/ABC123/data", {"x": 1})

    d = store.get_device("ABC123")
    assert d.created_at.tzinfo is not None
    assert d.created_at <= datetime.now(timezone.utc)
    assert store.get_data("ABC123")[0].created_at.tzinfo is not None


def test_unreachable_database_is_transport_unavailable(tmp_path) -> None:
    engine = make_engine(Settings(database_url=f"sqlite:///{tmp_path}/missing/x.db", db_timeout=1))
    store = DeviceStore(engine)

    with pytest.raises(TransportUnavailable):
        store.list_devices()
    with pytest.raises(TransportUnavailable):
        store.get_or_create_device("ABC123")
    engine.dispose()
