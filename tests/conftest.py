from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import paho.mqtt.client as mqtt
import pytest

from primis.db import init_db, make_engine
from primis.device_store import DeviceStore
from primis.mqtt_handler import MqttController
from primis.settings import Settings


def _settings(**overrides) -> Settings:
    base = dict(
        database_url="sqlite://",
        mqtt_enabled=False,
        ws_broadcast_enabled=True,
        ws_broadcast_raw=False,
        ws_send_timeout=0.2,
        device_data_limit=100,
    )
    base.update(overrides)
    return Settings(**base)


@pytest.fixture
def cfg() -> Settings:
    return _settings()


@pytest.fixture
def engine():
    eng = make_engine(_settings())
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def store(engine) -> DeviceStore:
    return DeviceStore(engine)


@dataclass
class _PublishInfo:
    rc: int = mqtt.MQTT_ERR_SUCCESS
    mid: int = 1


@dataclass
class FakeMqttClient:
    """Records calls the controller makes on a paho client."""

    subscribe_rc: int = mqtt.MQTT_ERR_SUCCESS
    publish_rc: int = mqtt.MQTT_ERR_SUCCESS
    subscribed: list[str] = field(default_factory=list)
    unsubscribed: list[str] = field(default_factory=list)
    published: list[tuple[str, object]] = field(default_factory=list)

    def subscribe(self, topic, qos=0):
        self.subscribed.append(topic)
        return self.subscribe_rc, len(self.subscribed)

    def unsubscribe(self, topic):
        self.unsubscribed.append(topic)
        return mqtt.MQTT_ERR_SUCCESS, len(self.unsubscribed)

    def publish(self, topic, payload, qos=0, retain=False):
        self.published.append((topic, payload))
        return _PublishInfo(rc=self.publish_rc, mid=len(self.published))


@pytest.fixture
def fake_client() -> FakeMqttClient:
    return FakeMqttClient()


@pytest.fixture
def broadcasts() -> list:
    return []


@pytest.fixture
def controller(store, cfg, fake_client, broadcasts) -> MqttController:
    return MqttController(store, cfg, broadcast=broadcasts.append, client=fake_client)


class FakeSubscriber:
    def __init__(self, fail: bool = False, hang: bool = False) -> None:
        self.fail = fail
        self.hang = hang
        self.received: list[bytes] = []
        self.closed = False

    async def send(self, data: bytes) -> None:
        if self.fail:
            raise ConnectionError("socket gone")
        if self.hang:
            await asyncio.sleep(10)
        self.received.append(data)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def make_subscriber():
    return FakeSubscriber
