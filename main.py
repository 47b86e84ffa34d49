import uvicorn
import asyncio
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings
from coordinator import SyncCoordinator
from exceptions import ConnectTimeout, InvalidValue, TransportUnavailable
from models import (
    CommandResponse, DeviceCommand, HealthResponse, ManualCommandResponse,
    StateResponse, StatisticsResponse,
)
from mqtt_client import MQTTClient
from logger import setup_logging, get_logger, log_startup_info, log_shutdown_info

setup_logging()
logger = get_logger('main')

mqtt_client = MQTTClient()
coordinator = SyncCoordinator(transport=mqtt_client)

def get_coordinator() -> SyncCoordinator:
    return coordinator

async def liveness_monitor(interval_seconds: int):
    """Background task evicting devices whose heartbeat is older than the window"""
    monitor_logger = get_logger('liveness_monitor')
    monitor_logger.info(f"Liveness monitor started (every {interval_seconds}s)")

    while True:
        try:
            evicted = coordinator.sweep_liveness()
            if evicted:
                monitor_logger.info(f"Liveness monitor: evicted {len(evicted)} devices: {', '.join(evicted)}")
        except Exception:
            monitor_logger.exception("Error in liveness monitor")

        await asyncio.sleep(interval_seconds)

async def broker_connect():
    """Waits for the broker without holding up startup; paho keeps retrying after a timeout"""
    try:
        await mqtt_client.connect()
        logger.info("MQTT client initialized successfully")
    except ConnectTimeout as e:
        logger.error(f"{e}; serving read-only until the broker is reachable")
    except Exception as e:
        logger.error(f"Failed to initialize MQTT: {e}")

@asynccontextmanager
async def lifespan(app: FastAPI):
    log_startup_info()
    settings.validate_required_settings()

    # Handler goes in before the network loop starts
    coordinator.attach()

    connect_task = asyncio.create_task(broker_connect())

    monitor_task = None
    if settings.LIVENESS_SWEEP_INTERVAL_SECONDS > 0:
        monitor_task = asyncio.create_task(liveness_monitor(settings.LIVENESS_SWEEP_INTERVAL_SECONDS))

    yield

    log_shutdown_info()

    for task in (connect_task, monitor_task):
        if task and not task.done():
            task.cancel()

    await mqtt_client.disconnect()

    for task in (connect_task, monitor_task):
        if task:
            try:
                await task
            except asyncio.CancelledError:
                pass
    logger.info("Background tasks stopped")

app = FastAPI(
    title           = "Light Bridge"
    , description   = "Bridges voice assistant commands to MQTT light controllers"
    , version       = "1.0.0"
    , lifespan      = lifespan
    , docs_url      = None
    , redoc_url     = None
)

app.add_middleware(
    CORSMiddleware
    , allow_origins     = settings.CORS_ORIGINS
    , allow_methods     = ["*"]
    , allow_headers     = ["*"]
)

def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"statusCode": status_code, "message": message})

@app.exception_handler(TransportUnavailable)
async def transport_unavailable_handler(request: Request, exc: TransportUnavailable):
    return _error(status.HTTP_503_SERVICE_UNAVAILABLE, str(exc))

@app.exception_handler(InvalidValue)
async def invalid_value_handler(request: Request, exc: InvalidValue):
    return _error(status.HTTP_400_BAD_REQUEST, str(exc))

@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    get_logger('api').warning(f"Rejected malformed request on {request.url.path}: {exc.errors()}")
    return _error(status.HTTP_400_BAD_REQUEST, "Solicitud inválida")

@app.post("/api/dispositivo", response_model=CommandResponse, tags=["Dispositivo"])
async def controlar_dispositivo(
    command     : DeviceCommand
    , sync      : SyncCoordinator = Depends(get_coordinator)
):
    api_logger = get_logger('api')
    api_logger.info(f"Command request: {command.model_dump(mode='json')}")
    return sync.handle_command(command.dispositivo, command.estado, command.timestamp)

@app.get("/api/dispositivo/estado", response_model=StateResponse, tags=["Dispositivo"])
async def get_estado_dispositivo(sync: SyncCoordinator = Depends(get_coordinator)):
    return sync.current_state()

@app.get("/api/dispositivo/estadisticas", response_model=StatisticsResponse, tags=["Dispositivo"])
async def get_estadisticas(sync: SyncCoordinator = Depends(get_coordinator)):
    return sync.statistics()

@app.get("/api/health", response_model=HealthResponse, tags=["Health"])
async def get_health(sync: SyncCoordinator = Depends(get_coordinator)):
    return sync.health()

@app.post("/api/dispositivo/test/{estado}", response_model=ManualCommandResponse, tags=["Dispositivo"])
async def test_comando(
    estado  : str
    , sync  : SyncCoordinator = Depends(get_coordinator)
):
    get_logger('api').info(f"Manual test command: {estado}")
    return sync.send_test_command(estado)

if __name__ == "__main__":
    uvicorn.run(
        "main:app"
        , reload    = settings.APP_RELOAD
        , host      = settings.APP_HOST
        , port      = settings.APP_PORT
    )
