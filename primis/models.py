from enum import Enum
from typing import Any, Optional
from datetime import datetime, timezone
from sqlmodel import SQLModel, Field, Column, JSON


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeviceStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


class Device(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    imei: str = Field(index=True, unique=True)
    status: DeviceStatus = Field(default=DeviceStatus.OFFLINE)
    created_at: datetime = Field(default_factory=_utcnow, index=True)


class DeviceData(SQLModel, table=True):
    __tablename__ = "device_data"

    id: Optional[int] = Field(default=None, primary_key=True)
    device_id: int = Field(index=True, foreign_key="device.id")
    topic: str
    payload: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=_utcnow, index=True)
