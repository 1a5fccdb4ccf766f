import logging
from contextlib import contextmanager
from typing import Any, Iterator

from sqlalchemy import delete
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlmodel import Session, select

from .db import get_session
from .errors import DuplicateKey, TransportUnavailable, UnknownDevice
from .models import Device, DeviceData, DeviceStatus

log = logging.getLogger(__name__)

DEFAULT_DATA_LIMIT = 100


class DeviceStore:
    def __init__(self, engine: Engine, default_limit: int = DEFAULT_DATA_LIMIT) -> None:
        self.engine = engine
        self.default_limit = default_limit if default_limit > 0 else DEFAULT_DATA_LIMIT

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with get_session(self.engine) as s:
                yield s
        except (OperationalError, InterfaceError, PoolTimeoutError) as e:
            raise TransportUnavailable(str(e)) from e

    # ---------------- devices ----------------

    def list_devices(self) -> list[Device]:
        with self._session() as s:
            stmt = select(Device).order_by(Device.created_at.desc(), Device.id.desc())
            return list(s.exec(stmt).all())

    def get_device(self, imei: str) -> Device | None:
        with self._session() as s:
            return s.exec(select(Device).where(Device.imei == imei)).first()

    def get_device_by_id(self, device_id: int) -> Device | None:
        with self._session() as s:
            return s.get(Device, device_id)

    def create_device(self, imei: str, status: DeviceStatus = DeviceStatus.OFFLINE) -> Device:
        """Insert a new device. Raises DuplicateKey when the IMEI is taken."""
        if not imei:
            raise ValueError("IMEI is required")
        with self._session() as s:
            d = Device(imei=imei, status=DeviceStatus(status))
            s.add(d)
            try:
                s.commit()
            except IntegrityError as e:
                s.rollback()
                raise DuplicateKey(imei) from e
            s.refresh(d)
            return d

    def get_or_create_device(
        self, imei: str, status: DeviceStatus = DeviceStatus.OFFLINE
    ) -> tuple[Device, bool]:
        """Return ``(device, created)``.

        A lost creation race resolves to the row the winner inserted.
        """
        existing = self.get_device(imei)
        if existing is not None:
            return existing, False
        try:
            return self.create_device(imei, status), True
        except DuplicateKey:
            d = self.get_device(imei)
            if d is None:
                # inserted and deleted again between our two calls
                raise UnknownDevice(imei)
            return d, False

    def update_status(self, imei: str, status: DeviceStatus) -> Device | None:
        with self._session() as s:
            d = s.exec(select(Device).where(Device.imei == imei)).first()
            if d is None:
                return None
            d.status = DeviceStatus(status)
            s.add(d)
            s.commit()
            s.refresh(d)
            return d

    def delete_device(self, device_id: int) -> bool:
        """Delete a device and its data log. Returns False if no row was removed."""
        with self._session() as s:
            d = s.get(Device, device_id)
            if d is None:
                return False
            s.exec(delete(DeviceData).where(DeviceData.device_id == device_id))
            s.delete(d)
            s.commit()
            return True

    # ---------------- data log ----------------

    def append_data(self, imei: str, topic: str, payload: dict[str, Any]) -> DeviceData:
        with self._session() as s:
            d = s.exec(select(Device).where(Device.imei == imei)).first()
            if d is None:
                raise UnknownDevice(imei)
            rec = DeviceData(device_id=d.id, topic=topic, payload=payload)
            s.add(rec)
            s.commit()
            s.refresh(rec)
            return rec

    def get_data(self, imei: str, limit: int | None = None) -> list[DeviceData]:
        """Newest records first. Unknown IMEI yields an empty list."""
        if limit is None or limit <= 0:
            limit = self.default_limit
        with self._session() as s:
            d = s.exec(select(Device).where(Device.imei == imei)).first()
            if d is None:
                return []
            stmt = (
                select(DeviceData)
                .where(DeviceData.device_id == d.id)
                .order_by(DeviceData.created_at.desc(), DeviceData.id.desc())
                .limit(limit)
            )
            return list(s.exec(stmt).all())
