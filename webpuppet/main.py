"""FastAPI entry-point for the web puppet service."""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel
import uvicorn

from .config import Settings, get_settings
from .errors import ErrorKind, PuppetError
from .logging_config import configure_logging
from .models import Receiver
from .puppet import PuppetWeb

logger = logging.getLogger(__name__)

settings: Settings = get_settings()
configure_logging(settings.log_level, settings.log_directory, settings.log_retention_days)
app = FastAPI(title="webpuppet", version="0.1.0")
puppet = PuppetWeb(settings=settings)

_STATUS_BY_KIND = {
    ErrorKind.INVALID_QUERY: status.HTTP_400_BAD_REQUEST,
    ErrorKind.PAYLOAD_MISSING_FIELD: status.HTTP_400_BAD_REQUEST,
    ErrorKind.MEDIA_TOO_LARGE: status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
    ErrorKind.UNSUPPORTED_MEDIA_KIND: status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
    ErrorKind.INVALID_STATE: status.HTTP_409_CONFLICT,
    ErrorKind.STABILIZATION_TIMEOUT: status.HTTP_504_GATEWAY_TIMEOUT,
}


@app.exception_handler(PuppetError)
async def puppet_exception_handler(request: Request, exc: PuppetError) -> JSONResponse:
    logger.warning("%s failed: %s (%s)", request.url.path, exc.message, exc.kind.value)
    return JSONResponse(
        status_code=_STATUS_BY_KIND.get(exc.kind, status.HTTP_502_BAD_GATEWAY),
        content={"error": exc.kind.value, "message": exc.message, "details": exc.details},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> PlainTextResponse:
    """Catch-all exception handler to prevent application crashes."""
    logger.exception("Unhandled exception in %s: %s", request.url.path, exc)
    return PlainTextResponse(
        f"Internal server error: {str(exc)}",
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.warning("Validation error in %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": str(exc)},
    )


@app.on_event("startup")
async def on_startup() -> None:
    try:
        await puppet.start()
        logger.info("Application started successfully")
    except Exception as e:
        logger.exception("Failed to start puppet: %s", e)
        logger.error("Application startup failed - bridge features will not work")
        # Don't re-raise - allow app to start in degraded mode


@app.on_event("shutdown")
async def on_shutdown() -> None:
    try:
        await puppet.aclose()
        logger.info("Application shutdown complete")
    except Exception as e:
        logger.exception("Error during shutdown: %s", e)


@app.get("/healthz")
async def healthcheck() -> JSONResponse:
    return JSONResponse({"status": "ok", "state": puppet.state.value, "user_id": puppet.user_id})


@app.get("/state")
async def current_state() -> JSONResponse:
    session = puppet.supervisor.session
    return JSONResponse(
        {
            "state": session.state.value,
            "user_id": session.user_id,
            "logged_in": session.logged_in,
            "scan_pending": session.scan is not None,
        }
    )


@app.get("/scan")
async def current_scan() -> JSONResponse:
    """Login challenge to display while nobody is logged in."""
    scan = puppet.supervisor.session.scan
    if scan is None:
        return JSONResponse({"status": "none"}, status_code=status.HTTP_404_NOT_FOUND)
    return JSONResponse({"status": "pending", "url": scan.url, "code": scan.code})


class TextMessageRequest(BaseModel):
    text: str
    contact_id: Optional[str] = None
    room_id: Optional[str] = None


@app.post("/messages/text")
async def send_text(payload: TextMessageRequest) -> JSONResponse:
    if not (payload.contact_id or payload.room_id):
        return JSONResponse(
            {"status": "error", "message": "contact_id or room_id is required"},
            status_code=status.HTTP_400_BAD_REQUEST,
        )
    receiver = Receiver(contact_id=payload.contact_id, room_id=payload.room_id)
    await puppet.message_send_text(receiver, payload.text)
    return JSONResponse({"status": "sent", "to": receiver.destination})


@app.post("/logout")
async def logout() -> JSONResponse:
    await puppet.logout()
    return JSONResponse({"status": "ok"})


@app.post("/ding")
async def ding() -> JSONResponse:
    data = await puppet.ding("http")
    return JSONResponse({"status": "ok", "data": data})


@app.websocket("/ws/events")
async def events_socket(ws: WebSocket) -> None:
    await ws.accept()
    queue = puppet.register_subscriber()
    try:
        while True:
            try:
                event = await queue.get()
            except asyncio.CancelledError:
                break  # Clean shutdown

            payload = {
                "type": event.type,
                "state": event.state.value,
                "data": event.data,
            }
            if event.error:
                payload["error"] = event.error

            try:
                await ws.send_json(payload)
            except Exception as e:
                logger.debug("WebSocket send failed (client disconnected): %s", e)
                break
    except WebSocketDisconnect:
        pass
    except asyncio.CancelledError:
        pass  # Clean shutdown
    except Exception as e:
        logger.error("Unexpected error in events websocket: %s", e)
    finally:
        puppet.unregister_subscriber(queue)
        try:
            await ws.close()
        except Exception:
            pass


def run() -> None:
    uvicorn.run(app, host=settings.service_host, port=settings.service_port, log_config=None)


if __name__ == "__main__":
    run()
