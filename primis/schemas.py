import json
from datetime import datetime, timezone
from enum import Enum
from pydantic import BaseModel, Field, JsonValue
from typing import Optional

from .models import DeviceStatus

# a decoded MQTT body: JSON object of arbitrary JSON values
Document = dict[str, JsonValue]


class DeviceOut(BaseModel):
    device_id: int
    imei: str
    status: DeviceStatus
    created_at: datetime

class DeviceCreate(BaseModel):
    imei: str = Field(min_length=1)
    status: DeviceStatus = DeviceStatus.OFFLINE

class DeviceUpdate(BaseModel):
    imei: str = Field(min_length=1)
    status: DeviceStatus

class DeviceDataOut(BaseModel):
    device_response_id: int
    device_id: int
    topic: str
    response: Document
    created_at: datetime

class PublishRequest(BaseModel):
    topic: str = Field(min_length=1)
    message: str


class MessageKind(str, Enum):
    CONNECTION = "connection"
    DEVICE_STATUS = "device_status"
    TELEMETRY = "telemetry"
    RAW_DATA = "mqtt_data"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class BroadcastMessage(BaseModel):
    """Transient message pushed to every websocket subscriber."""

    kind: MessageKind
    imei: Optional[str] = None
    topic: Optional[str] = None
    payload: Optional[Document] = None
    status: Optional[str] = None
    text: Optional[str] = None
    timestamp: datetime = Field(default_factory=_now)

    def envelope(self) -> dict:
        data: dict = {}
        if self.imei is not None:
            data["imei"] = self.imei
        if self.topic is not None:
            data["topic"] = self.topic
        if self.payload is not None:
            data["payload"] = self.payload
        if self.status is not None:
            data["status"] = self.status
        data["timestamp"] = self.timestamp.isoformat()
        if self.text is not None:
            data["message"] = self.text
        return {"type": self.kind.value, "data": data}

    def encode(self) -> bytes:
        return json.dumps(self.envelope()).encode("utf-8")

    @classmethod
    def connection(cls, text: str) -> "BroadcastMessage":
        return cls(kind=MessageKind.CONNECTION, text=text)

    @classmethod
    def device_status(cls, imei: str, status: str) -> "BroadcastMessage":
        return cls(kind=MessageKind.DEVICE_STATUS, imei=imei, status=status)

    @classmethod
    def telemetry(cls, imei: str, payload: Document) -> "BroadcastMessage":
        return cls(kind=MessageKind.TELEMETRY, imei=imei, payload=payload)

    @classmethod
    def raw_data(cls, imei: str, topic: str, payload: Document) -> "BroadcastMessage":
        return cls(kind=MessageKind.RAW_DATA, imei=imei, topic=topic, payload=payload)
