"""FastAPI application: device API, websocket fan-out and MQTT ingestion."""
import asyncio
import logging
from contextlib import asynccontextmanager
from queue import Queue, Empty
from typing import List, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine
from starlette.exceptions import HTTPException as StarletteHTTPException

from .db import init_db, close_db, make_engine
from .device_store import DeviceStore
from .errors import DuplicateKey, TransportUnavailable, UnknownDevice
from .models import Device, DeviceData
from .mqtt_handler import MqttController
from .schemas import BroadcastMessage, DeviceCreate, DeviceDataOut, DeviceOut, DeviceUpdate, PublishRequest
from .settings import Settings, settings as default_settings
from .ws_manager import ConnectionManager, WebSocketSubscriber

logger = logging.getLogger(__name__)


def _device_out(d: Device) -> DeviceOut:
    return DeviceOut(device_id=d.id, imei=d.imei, status=d.status, created_at=d.created_at)


def _data_out(r: DeviceData) -> DeviceDataOut:
    return DeviceDataOut(
        device_response_id=r.id, device_id=r.device_id, topic=r.topic,
        response=r.payload, created_at=r.created_at,
    )


async def queue_forwarder(queue: "Queue[BroadcastMessage]", manager: ConnectionManager):
    """Moves messages from the MQTT thread onto the event loop."""
    while True:
        try:
            msg = queue.get_nowait()
        except Empty:
            await asyncio.sleep(0.1)
            continue
        try:
            await manager.broadcast(msg)
        except Exception:
            logger.exception("broadcast failed")


def create_app(
    cfg: Optional[Settings] = None,
    engine: Optional[Engine] = None,
    mqtt_controller: Optional[MqttController] = None,
) -> FastAPI:
    cfg = cfg or default_settings
    engine = engine or make_engine(cfg)
    store = DeviceStore(engine, default_limit=cfg.device_data_limit)
    manager = ConnectionManager(send_timeout=cfg.ws_send_timeout)
    message_queue: "Queue[BroadcastMessage]" = Queue()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        init_db(engine)
        forwarder = asyncio.create_task(queue_forwarder(message_queue, manager))

        controller = mqtt_controller
        if controller is None and cfg.mqtt_enabled:
            controller = MqttController(store, cfg, broadcast=message_queue.put)
            try:
                controller.start()
            except Exception as e:
                # the API keeps serving without a broker
                logger.error("[MQTT] failed to start: %s", e)
                controller = None
        app.state.mqtt = controller

        yield

        if controller is not None and mqtt_controller is None:
            controller.stop()
        forwarder.cancel()
        try:
            await forwarder
        except asyncio.CancelledError:
            pass
        await manager.shutdown()
        close_db(engine)
        logger.info("Shutdown complete")

    app = FastAPI(title="Primis API", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = cfg
    app.state.store = store
    app.state.manager = manager
    app.state.message_queue = message_queue
    app.state.mqtt = mqtt_controller

    @app.exception_handler(DuplicateKey)
    async def duplicate_key_handler(request: Request, exc: DuplicateKey):
        return JSONResponse(status_code=409, content={"error": "Device with this IMEI already exists"})

    @app.exception_handler(UnknownDevice)
    async def unknown_device_handler(request: Request, exc: UnknownDevice):
        return JSONResponse(status_code=404, content={"error": "Device not found"})

    @app.exception_handler(TransportUnavailable)
    async def transport_handler(request: Request, exc: TransportUnavailable):
        logger.error("storage unavailable: %s", exc)
        return JSONResponse(status_code=500, content={"error": "Server error"})

    @app.exception_handler(RequestValidationError)
    async def validation_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        field = errors[0]["loc"][-1] if errors and errors[0].get("loc") else "request"
        return JSONResponse(status_code=400, content={"error": f"Invalid or missing field: {field}"})

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    @app.get("/health-check")
    def health_check():
        return {"message": "Server is running!"}

    api = APIRouter(prefix="/api/v1")

    @api.get("/devices", response_model=List[DeviceOut])
    def list_devices():
        return [_device_out(d) for d in store.list_devices()]

    @api.get("/devices/imei/{imei}", response_model=DeviceOut)
    def get_device(imei: str):
        d = store.get_device(imei)
        if not d:
            raise HTTPException(status_code=404, detail="Device not found")
        return _device_out(d)

    @api.post("/devices", response_model=DeviceOut, status_code=201)
    def create_device(body: DeviceCreate):
        return _device_out(store.create_device(body.imei, body.status))

    @api.put("/devices", response_model=DeviceOut)
    def update_device(body: DeviceUpdate):
        d = store.update_status(body.imei, body.status)
        if not d:
            raise HTTPException(status_code=404, detail="Device not found")
        return _device_out(d)

    @api.delete("/devices/imei/{imei}")
    def delete_device(imei: str):
        d = store.get_device(imei)
        if not d or not store.delete_device(d.id):
            raise HTTPException(status_code=404, detail="Device not found")
        return {"message": "Device deleted successfully"}

    @api.get("/devices/data/imei/{imei}", response_model=List[DeviceDataOut])
    def get_device_data(imei: str, limit: Optional[int] = None):
        return [_data_out(r) for r in store.get_data(imei, limit)]

    @api.get("/mqtt/topics")
    def mqtt_topics(request: Request):
        controller: Optional[MqttController] = request.app.state.mqtt
        return {"topics": controller.get_subscribed_topics() if controller else []}

    @api.post("/mqtt/publish", status_code=202)
    def mqtt_publish(body: PublishRequest, request: Request):
        controller: Optional[MqttController] = request.app.state.mqtt
        if controller is None:
            raise HTTPException(status_code=503, detail="MQTT not initialized")
        if not controller.publish(body.topic, body.message):
            raise HTTPException(status_code=502, detail="MQTT publish failed")
        return {"status": "queued", "topic": body.topic}

    app.include_router(api)

    @app.websocket("/ws")
    async def live_ws(websocket: WebSocket):
        await websocket.accept()
        subscriber = WebSocketSubscriber(websocket)
        await manager.register(subscriber)
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                logger.info("Received from client: %r", message.get("text") or message.get("bytes"))
        except WebSocketDisconnect:
            pass
        finally:
            await manager.unregister(subscriber)

    return app


def run() -> None:
    import uvicorn

    logging.basicConfig(
        level=default_settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    uvicorn.run(create_app(), host="0.0.0.0", port=default_settings.port)
