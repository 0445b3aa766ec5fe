"""
FastAPI server for the drawer bridge.

A local status surface for the till PC: health, controller status, and a
manual drawer trigger that goes through the same dedup/retry policy as
queued jobs.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .controller import DrawerController

logger = logging.getLogger('drawer.bridge.server')


def create_app(controller: DrawerController, manage_lifecycle: bool = True) -> FastAPI:
    """Build the app; with `manage_lifecycle` the controller follows the app's lifespan."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_lifecycle:
            await controller.start()
        yield
        if manage_lifecycle:
            await controller.stop()

    app = FastAPI(
        title="Drawer Bridge",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.controller = controller

    # POS pages on other local origins may call the trigger
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "version": __version__,
            "connection": controller.connection_status(),
        }

    @app.get("/status")
    async def status():
        return controller.status()

    @app.post("/open-drawer")
    async def open_drawer():
        """Open the drawer now, outside the queue."""
        opened = await controller.opener.open(reason='manual request')
        if not opened:
            error = controller.opener.last_error
            logger.error(f"Manual drawer open failed: {error}")
            return JSONResponse(
                status_code=503,
                content={"success": False, "error": str(error) if error else "Drawer did not open"},
            )
        return {"success": True, "message": "Drawer opened"}

    return app
