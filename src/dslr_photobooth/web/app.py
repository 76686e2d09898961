"""FastAPI application for the photobooth front end.

HTTP endpoints for status and capture, plus one WebSocket that pushes
``preview-frame``, ``capture-ready`` and ``session-status`` events as
``{"event": ..., "data": ...}`` JSON messages.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from dslr_photobooth.devices.session import (
    NoActiveSessionError,
    SessionController,
    get_controller,
    shutdown_controller,
)
from dslr_photobooth.drivers.cameras.types import DeviceBusyError, DeviceError
from dslr_photobooth.observability import get_logger
from dslr_photobooth.web.broadcast import Broadcaster

logger = get_logger(__name__)

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 9000

CAPTURE_ACCEPTED = "wait for taking picture..."
NO_CAMERA = "there is no camera here..."


def create_app(
    controller: SessionController | None = None,
    broadcaster: Broadcaster | None = None,
) -> FastAPI:
    """Create the photobooth application.

    The session starts acquiring when the app starts and is shut down
    with it. Without an explicit ``controller`` the process-wide one from
    ``init_controller()`` is used and released on shutdown.

    Args:
        controller: Session to serve. Its publisher should be ``broadcaster``.
        broadcaster: Fan-out used by ``/ws``. A new one when None.

    Returns:
        Configured FastAPI application ready for uvicorn.run().

    Example:
        >>> broadcaster = Broadcaster()
        >>> controller = SessionController(driver, publisher=broadcaster)
        >>> app = create_app(controller, broadcaster)
    """
    hub = broadcaster or Broadcaster()

    def _controller() -> SessionController:
        return controller if controller is not None else get_controller()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("Starting photobooth camera service...")
        await _controller().start()
        yield
        logger.info("Shutting down photobooth camera service...")
        if controller is None:
            await shutdown_controller()
        else:
            await controller.shutdown()

    app = FastAPI(
        title="DSLR Photobooth",
        description="Tethered DSLR live view and capture service",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.broadcaster = hub

    @app.get("/is-dslr-active")
    async def is_dslr_active() -> dict[str, bool]:
        """Whether a camera is attached right now."""
        status = await _controller().query_status(refresh=True)
        return {"isActive": status.is_active or status.device_discovered}

    @app.get("/api/status")
    async def api_status() -> dict[str, Any]:
        ctl = _controller()
        status = await ctl.query_status()
        return {
            "session": status.to_dict(),
            "stats": ctl.stats.to_dict(),
            "clients": hub.client_count,
        }

    @app.post("/api/session/start")
    async def api_start_session() -> dict[str, Any]:
        """Start acquisition, or restart a session that gave up."""
        status = await _controller().start()
        return status.to_dict()

    @app.post("/capture")
    async def capture() -> JSONResponse:
        """Release the shutter; the photo arrives on /ws as capture-ready."""
        try:
            await _controller().trigger_capture()
        except NoActiveSessionError:
            return JSONResponse(status_code=500, content={"message": NO_CAMERA})
        except DeviceBusyError as e:
            return JSONResponse(
                status_code=409, content={"message": "camera is busy", "error": str(e)}
            )
        except DeviceError as e:
            logger.error("Capture failed", error=str(e), error_type=type(e).__name__)
            return JSONResponse(
                status_code=500, content={"message": NO_CAMERA, "error": str(e)}
            )
        return JSONResponse(content={"message": CAPTURE_ACCEPTED})

    @app.websocket("/ws")
    async def events(websocket: WebSocket) -> None:
        await websocket.accept()
        await hub.serve(websocket)

    return app


def main(
    host: str = DEFAULT_HOST, port: int = DEFAULT_PORT, log_level: str = "warning"
) -> None:
    """Serve the app with the process-wide controller.

    ``init_controller()`` must have been called with a ``Broadcaster``
    publisher; pass the same broadcaster through ``create_app`` when
    wiring by hand (see ``dslr_photobooth.cli``).
    """
    controller = get_controller()
    broadcaster = controller.publisher
    app = create_app(
        broadcaster=broadcaster if isinstance(broadcaster, Broadcaster) else None
    )
    uvicorn.run(app, host=host, port=port, log_level=log_level)
