"""whtzup Backend API - FastAPI application."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from postgrest.exceptions import APIError
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from .broadcast import RELAYED_EVENTS, manager
from .config import get_settings
from .database import Database, append_sync_log
from .device import is_valid_device_id
from .errors import (
    EventDeletedError,
    EventNotFoundError,
    UnknownStrategyError,
    VersionConflictError,
)
from .logging_config import configure_logging, get_logger, log_sync_operation
from .rate_limit import limiter
from .routes import events_router, health_router, sync_router

logger = get_logger("whtzup.main")

# Socket event name -> sync_log operation
_RELAY_OPERATIONS = {
    "event-created": "CREATE",
    "event-updated": "UPDATE",
    "event-deleted": "DELETE",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    settings = get_settings()
    configure_logging(settings.debug)
    logger.info(f"Starting whtzup Backend API (debug={settings.debug})")
    yield
    logger.info("Shutting down whtzup Backend API")


app = FastAPI(
    title="whtzup Backend API",
    description="Event discovery backend with offline-first device sync",
    version="0.1.0",
    lifespan=lifespan,
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS middleware
settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Device-ID"],
)


# =============================================================================
# Error Handlers
# =============================================================================

def _error(status_code: int, error: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error, **extra})


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    details = [
        {"field": ".".join(str(part) for part in err.get("loc", ())), "message": err.get("msg")}
        for err in exc.errors()
    ]
    return _error(status.HTTP_400_BAD_REQUEST, "Validation failed", details=details)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    response = _error(exc.status_code, str(exc.detail))
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@app.exception_handler(EventNotFoundError)
@app.exception_handler(EventDeletedError)
async def event_not_found_handler(request: Request, exc: Exception):
    return _error(status.HTTP_404_NOT_FOUND, "Event not found")


@app.exception_handler(VersionConflictError)
async def version_conflict_handler(request: Request, exc: VersionConflictError):
    return _error(status.HTTP_409_CONFLICT, str(exc), eventId=exc.event_id)


@app.exception_handler(UnknownStrategyError)
async def unknown_strategy_handler(request: Request, exc: UnknownStrategyError):
    return _error(status.HTTP_400_BAD_REQUEST, str(exc))


@app.exception_handler(APIError)
async def database_error_handler(request: Request, exc: APIError):
    logger.error(f"Database error on {request.method} {request.url.path}: {exc.code} {exc.message}")
    if exc.code == "23505":
        return _error(status.HTTP_409_CONFLICT, "Event already exists")
    if exc.code in ("23502", "23503", "23514", "22P02"):
        return _error(status.HTTP_400_BAD_REQUEST, "Invalid data provided")
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Database error")


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    # Log full error server-side for debugging
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    message = str(exc) if get_settings().debug else "Internal server error"
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, message)


# Include routers
app.include_router(health_router)
app.include_router(events_router)
app.include_router(sync_router)


# =============================================================================
# Live Channel
# =============================================================================

async def _relay(db, event: str, data: dict, device_id: str | None) -> None:
    """Log a client-announced change and forward it to the other devices."""
    event_id = data.get("eventId")
    if not event_id:
        logger.warning(f"Ignoring {event} without eventId from device {device_id}")
        return
    event_data = data.get("eventData")
    if not isinstance(event_data, dict):
        event_data = None

    operation = _RELAY_OPERATIONS[event]
    try:
        await append_sync_log(db, str(event_id), operation, device_id, new_data=event_data)
        log_sync_operation(device_id, f"RELAY:{operation}", str(event_id), True)
    except APIError as e:
        log_sync_operation(device_id, f"RELAY:{operation}", str(event_id), False, e.message)

    await manager.broadcast(
        event,
        str(event_id),
        event_data,
        exclude_device=device_id,
        timestamp=data.get("timestamp"),
    )


@app.websocket("/ws")
async def live_channel(websocket: WebSocket, db: Database):
    """Broadcast channel: join a device group, receive other devices' changes."""
    connection_id = await manager.connect(websocket)
    device_id = None
    try:
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                logger.warning(f"Ignoring non-JSON frame on connection {connection_id}")
                continue
            if not isinstance(message, dict):
                continue

            event = message.get("event")
            data = message.get("data") or {}
            if not isinstance(data, dict):
                continue

            if event == "join-device":
                candidate = data.get("deviceId")
                if is_valid_device_id(candidate):
                    device_id = candidate
                    manager.join_device(connection_id, device_id)
                else:
                    logger.warning(f"Rejected join with invalid device id on {connection_id}")
            elif event in RELAYED_EVENTS:
                await _relay(db, event, data, device_id or data.get("deviceId"))
    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(connection_id)
