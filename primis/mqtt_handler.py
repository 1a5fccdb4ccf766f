# primis/mqtt_handler.py
import json, logging, secrets, threading
from typing import Callable, Optional

import paho.mqtt.client as mqtt

from .device_store import DeviceStore
from .errors import MalformedTopic, PrimisError
from .models import DeviceStatus
from .schemas import BroadcastMessage, Document
from .settings import Settings

log = logging.getLogger("mqtt")

DEFAULT_TOPICS = (
    "devices/+/data",
    "devices/+/status",
    "devices/+/telemetry",
)

Broadcast = Callable[[BroadcastMessage], None]


def _rc_int(rc) -> int:
    # Handles paho v2.x ReasonCode objects or plain ints
    try:
        return int(getattr(rc, "value", rc))
    except Exception:
        return -1


def _reject_constant(name: str):
    # NaN and Infinity are not JSON; browsers and PostgreSQL refuse them
    raise ValueError(f"invalid JSON constant {name}")


def decode_payload(raw: bytes) -> Document:
    """JSON object body, or the raw text wrapped as ``{"message": text}``."""
    text = raw.decode("utf-8", errors="replace") if raw else ""
    try:
        doc = json.loads(text, parse_constant=_reject_constant)
    except ValueError:
        return {"message": text}
    if not isinstance(doc, dict):
        return {"message": text}
    return doc


def extract_imei(topic: str) -> str:
    parts = topic.split("/")
    if len(parts) < 2 or not parts[1]:
        raise MalformedTopic(topic)
    return parts[1]


class MqttController:
    """Subscribes to device topics and turns every message into store writes.

    Broadcasts go through ``broadcast``; when it is None nothing is fanned out.
    """

    def __init__(
        self,
        store: DeviceStore,
        cfg: Settings,
        broadcast: Optional[Broadcast] = None,
        client: Optional[mqtt.Client] = None,
    ) -> None:
        self.store = store
        self.cfg = cfg
        self.broadcast = broadcast if cfg.ws_broadcast_enabled else None
        self.subscribed_topics: set[str] = set()
        self._topics_lock = threading.Lock()
        self.stats = {"rx_total": 0, "rx_tel": 0, "rx_status": 0, "dropped": 0}
        self.client = client or self._make_client()
        self._bind_callbacks()

    def _make_client(self) -> mqtt.Client:
        client = mqtt.Client(
            client_id=f"{self.cfg.mqtt_client_prefix}{secrets.token_hex(4)}",
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,  # paho 2.x
            clean_session=True,
        )
        client.enable_logger(log)
        if self.cfg.mqtt_username and self.cfg.mqtt_password:
            client.username_pw_set(self.cfg.mqtt_username, self.cfg.mqtt_password)
        client.reconnect_delay_set(min_delay=1, max_delay=30)
        return client

    def _bind_callbacks(self) -> None:
        self.client.on_connect = self.on_connect
        self.client.on_disconnect = self.on_disconnect
        self.client.on_subscribe = self.on_subscribe
        self.client.on_publish = self.on_publish
        self.client.on_message = self.on_message

    # ---------------- lifecycle ----------------

    def start(self) -> None:
        log.info(
            "[MQTT] Connecting host=%s port=%s user=%s",
            self.cfg.mqtt_host, self.cfg.mqtt_port,
            "<set>" if self.cfg.mqtt_username else "<none>",
        )
        self.client.connect(self.cfg.mqtt_host, self.cfg.mqtt_port, keepalive=self.cfg.mqtt_keepalive)
        self.client.loop_start()

    def stop(self) -> None:
        self.client.disconnect()
        self.client.loop_stop()
        log.info("[MQTT] disconnected")

    # ---------------- paho callbacks ----------------

    def on_connect(self, client, userdata, flags, reason_code, properties=None):
        rc = _rc_int(reason_code)
        if rc != 0:
            log.error("[MQTT] Connect failed rc=%s. Retrying...", rc)
            return
        log.info("[MQTT] connected successfully")
        # a clean session drops every subscription, so issue them all again
        with self._topics_lock:
            pending = set(DEFAULT_TOPICS) | self.subscribed_topics
            self.subscribed_topics.clear()
        for topic in sorted(pending):
            self.subscribe(topic)

    def on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        log.warning("[MQTT] Disconnected rc=%s. Reconnecting...", _rc_int(reason_code))

    def on_subscribe(self, client, userdata, mid, reason_codes, properties=None):
        log.debug("[MQTT] SUBACK mid=%s codes=%s", mid, [_rc_int(c) for c in reason_codes])
        if any(_rc_int(c) >= 0x80 for c in reason_codes):
            log.warning("[MQTT] subscription mid=%s rejected by broker", mid)

    def on_publish(self, client, userdata, mid, reason_code=None, properties=None):
        log.info("[MQTT] publish mid=%s delivered", mid)

    def on_message(self, client, userdata, msg):
        self.handle_message(msg.topic, msg.payload)

    # ---------------- topics ----------------

    def subscribe(self, topic: str) -> bool:
        with self._topics_lock:
            if topic in self.subscribed_topics:
                return True
            res, _mid = self.client.subscribe(topic, qos=0)
            if res != mqtt.MQTT_ERR_SUCCESS:
                log.error("[MQTT] Failed to subscribe to topic %s: rc=%s", topic, res)
                return False
            self.subscribed_topics.add(topic)
        log.info("[MQTT] Subscribed to topic: %s", topic)
        return True

    def unsubscribe(self, topic: str) -> bool:
        with self._topics_lock:
            if topic not in self.subscribed_topics:
                return True
            res, _mid = self.client.unsubscribe(topic)
            if res != mqtt.MQTT_ERR_SUCCESS:
                log.error("[MQTT] Failed to unsubscribe from topic %s: rc=%s", topic, res)
                return False
            self.subscribed_topics.discard(topic)
        log.info("[MQTT] Unsubscribed from topic: %s", topic)
        return True

    def get_subscribed_topics(self) -> list[str]:
        with self._topics_lock:
            return sorted(self.subscribed_topics)

    def publish(self, topic: str, message: str | bytes) -> bool:
        """Queue a message on the client; delivery is only logged."""
        info = self.client.publish(topic, message, qos=0, retain=False)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            log.error("[MQTT] Failed to publish to topic %s: rc=%s", topic, info.rc)
            return False
        log.info("[MQTT] Published message to topic: %s (mid=%s)", topic, info.mid)
        return True

    # ---------------- ingestion ----------------

    def handle_message(self, topic: str, raw: bytes) -> None:
        """Apply one inbound message. Never raises; a failure drops only this message."""
        self.stats["rx_total"] += 1
        try:
            self._ingest(topic, raw)
        except MalformedTopic as e:
            self.stats["dropped"] += 1
            log.warning("[MQTT] %s", e)
        except PrimisError as e:
            self.stats["dropped"] += 1
            log.error("[MQTT] dropped message on %s: %s", topic, e)
        except Exception:
            self.stats["dropped"] += 1
            log.exception("[MQTT] on_message error on %s", topic)

        if self.stats["rx_total"] % 100 == 1:
            log.info(
                "[MQTT] msg counts: total=%d tel=%d status=%d dropped=%d",
                self.stats["rx_total"], self.stats["rx_tel"],
                self.stats["rx_status"], self.stats["dropped"],
            )

    def _ingest(self, topic: str, raw: bytes) -> None:
        log.debug("[MQTT] message received on topic: %s", topic)
        payload = decode_payload(raw)
        imei = extract_imei(topic)

        _device, created = self.store.get_or_create_device(imei, DeviceStatus.ONLINE)
        if created:
            log.info("[MQTT] Auto-registered new device with IMEI: %s", imei)

        # every message counts as a sign of life
        self.store.update_status(imei, DeviceStatus.ONLINE)
        self.store.append_data(imei, topic, payload)
        log.debug("[MQTT] Data saved for device %s from topic %s", imei, topic)

        if self.cfg.ws_broadcast_raw:
            self._emit(BroadcastMessage.raw_data(imei, topic, payload))

        segments = topic.split("/")
        if "status" in segments:
            self.stats["rx_status"] += 1
            self._handle_status(imei, payload)
        elif "telemetry" in segments:
            self.stats["rx_tel"] += 1
            self._handle_telemetry(imei, payload)

    def _handle_status(self, imei: str, payload: Document) -> None:
        status = payload.get("status")
        if status not in (DeviceStatus.ONLINE.value, DeviceStatus.OFFLINE.value):
            return
        self.store.update_status(imei, DeviceStatus(status))
        self._emit(BroadcastMessage.device_status(imei, status))

    def _handle_telemetry(self, imei: str, payload: Document) -> None:
        # threshold checks and alerting would hook in here
        log.debug("[MQTT] Telemetry from device %s: %s", imei, payload)
        self._emit(BroadcastMessage.telemetry(imei, payload))

    def _emit(self, message: BroadcastMessage) -> None:
        if self.broadcast is None:
            return
        try:
            self.broadcast(message)
        except Exception:
            log.exception("[MQTT] broadcast hand-off failed")
