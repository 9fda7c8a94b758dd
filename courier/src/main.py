"""
FastAPI application entry point for the Courier notification pipeline.

This module hosts:
- The delivery pipeline (queue consumer, digests, push cleanup) driven by
  the in-process scheduler for the lifetime of the app
- The WebSocket endpoint that delivers in-app notifications and keeps
  presence up to date
- Internal endpoints for manual digest runs and subscription cleanup

Environment Variables:
    COURIER_DB_URL: Database URL
    COURIER_ENV: Environment (production/development, default: development)
    COURIER_LOG_LEVEL: Log level (DEBUG/INFO/WARNING/ERROR/CRITICAL, default: INFO)
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from courier.src.channels.in_app import user_room
from courier.src.config.settings import get_settings
from courier.src.db.database import SessionLocal, init_db
from courier.src.models.presence import PresenceStatus
from courier.src.pipeline import build_pipeline
from courier.src.services.digest_service import DigestPeriod
from courier.src.services.presence_service import PresenceService
from courier.src.utils.logging_config import init_logging, get_logger
from courier.src.utils.websocket import get_connection_manager


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan context manager.

    Handles startup and shutdown events:
    - Startup: create missing tables, build the pipeline, bind the WebSocket manager to the loop,
      report channel configuration problems, start the scheduler
    - Shutdown: stop the scheduler and release transports

    Args:
        app: FastAPI application instance

    Yields:
        Control to the application
    """
    logger = get_logger("api")
    logger.info("Starting Courier notification service")

    settings = get_settings()
    init_db()

    manager = get_connection_manager()
    manager.bind_loop(asyncio.get_running_loop())

    pipeline = build_pipeline(settings, SessionLocal, realtime=manager)
    app.state.pipeline = pipeline

    for problem in settings.validate_channels():
        logger.warning(f"Channel configuration: {problem}")

    await pipeline.scheduler.start()
    logger.info("Courier started successfully")

    yield

    logger.info("Shutting down Courier notification service")
    await pipeline.scheduler.stop()
    pipeline.close()


# Initialize logging before creating app
init_logging()

app = FastAPI(
    title="Courier",
    description="Notification delivery pipeline: multi-channel dispatch with "
                "retry/backoff, presence-aware suppression and digest emails.",
    version="1.0.0",
    lifespan=lifespan,
)


@app.exception_handler(SQLAlchemyError)
async def database_exception_handler(
    request: Request, exc: SQLAlchemyError
) -> JSONResponse:
    """Handle SQLAlchemy database errors."""
    logger = get_logger("db")
    logger.error(
        "Database error",
        extra={
            "path": request.url.path,
            "method": request.method,
            "error": str(exc),
        }
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Database Error",
            "message": "An error occurred while accessing the database. "
                      "Please try again later.",
        }
    )


@app.exception_handler(Exception)
async def generic_exception_handler(
    request: Request, exc: Exception
) -> JSONResponse:
    """Handle all other unhandled exceptions."""
    logger = get_logger("api")
    logger.error(
        "Unhandled exception",
        extra={
            "path": request.url.path,
            "method": request.method,
            "error_type": type(exc).__name__,
            "error": str(exc),
        },
        exc_info=True,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal Server Error",
            "message": "An unexpected error occurred. Please try again later.",
        }
    )


# Health check endpoint


@app.get("/health", tags=["Health"])
async def health_check(request: Request) -> Dict[str, Any]:
    """
    Health check endpoint.

    Returns:
        Scheduler state and queue counts per status
    """
    pipeline = request.app.state.pipeline
    queue_status = await asyncio.to_thread(pipeline.queue.get_queue_status)
    return {
        "status": "healthy",
        "scheduler_running": pipeline.scheduler.is_running,
        "queue": queue_status,
        "realtime_connections": get_connection_manager().get_connection_count(),
    }


# Real-time delivery


def _set_presence(user_id: str, presence_status: PresenceStatus) -> None:
    db = SessionLocal()
    try:
        PresenceService(db, get_settings().offline_threshold_minutes).update_presence(user_id, presence_status)
    finally:
        db.close()


def _heartbeat(user_id: str) -> None:
    db = SessionLocal()
    try:
        PresenceService(db, get_settings().offline_threshold_minutes).heartbeat(user_id)
    finally:
        db.close()


@app.websocket("/ws/notifications/{user_id}")
async def notifications_websocket(websocket: WebSocket, user_id: str) -> None:
    """
    Stream in-app notifications to a user.

    Any message received from the client counts as a presence heartbeat.
    The user is marked offline when their last connection closes.
    """
    logger = get_logger("websocket")
    manager = get_connection_manager()
    room = user_room(user_id)

    await manager.connect(room, websocket)
    await asyncio.to_thread(_set_presence, user_id, PresenceStatus.ONLINE)
    try:
        while True:
            await websocket.receive_text()
            await asyncio.to_thread(_heartbeat, user_id)
    except WebSocketDisconnect:
        logger.debug("WebSocket client disconnected", extra={"user_id": user_id})
    finally:
        manager.disconnect(room, websocket)
        if manager.get_connection_count(room) == 0:
            await asyncio.to_thread(_set_presence, user_id, PresenceStatus.OFFLINE)


# Internal operations


@app.post("/internal/digests/{period}", tags=["Internal"])
async def trigger_digest(period: str, request: Request) -> Dict[str, Any]:
    """Run the daily or weekly digest immediately."""
    try:
        digest_period = DigestPeriod(period)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown digest period: {period}")

    result = await asyncio.to_thread(request.app.state.pipeline.trigger_digest, digest_period)
    return {
        "period": result.period,
        "recipients": result.recipients,
        "sent": result.sent,
        "skipped": result.skipped,
        "failed": result.failed,
    }


@app.post("/internal/push-subscriptions/cleanup", tags=["Internal"])
async def cleanup_push_subscriptions(request: Request) -> Dict[str, int]:
    """Deactivate stale push subscriptions now."""
    count = await asyncio.to_thread(request.app.state.pipeline.cleanup_push_subscriptions)
    return {"deactivated": count}
