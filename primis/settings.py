from pydantic import BaseModel
import os

class Settings(BaseModel):
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./primis.db")
    db_timeout: float = float(os.getenv("DB_TIMEOUT", "10"))
    cors_origins: list[str] = os.getenv("CORS_ORIGINS", "http://localhost:4173,http://localhost:5173").split(",")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    port: int = int(os.getenv("PORT", "3000"))

    mqtt_enabled: bool = os.getenv("MQTT_ENABLED", "1") == "1"
    mqtt_host: str = os.getenv("MQTT_HOST", "localhost")
    mqtt_port: int = int(os.getenv("MQTT_PORT", "1883"))
    mqtt_username: str | None = os.getenv("MQTT_USERNAME") or None
    mqtt_password: str | None = os.getenv("MQTT_PASSWORD") or None
    mqtt_client_prefix: str = os.getenv("MQTT_CLIENT_PREFIX", "primis_backend_")
    mqtt_keepalive: int = int(os.getenv("MQTT_KEEPALIVE", "30"))

    # live fan-out of ingested messages to websocket clients
    ws_broadcast_enabled: bool = os.getenv("WS_BROADCAST_ENABLED", "1") == "1"
    ws_broadcast_raw: bool = os.getenv("WS_BROADCAST_RAW", "0") == "1"
    ws_send_timeout: float = float(os.getenv("WS_SEND_TIMEOUT", "5"))

    device_data_limit: int = int(os.getenv("DEVICE_DATA_LIMIT", "100"))

settings = Settings()
