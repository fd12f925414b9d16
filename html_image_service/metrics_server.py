"""
Prometheus scrape endpoint on its own port.

``/metrics`` is kept off the rendering API so it can be firewalled separately.
The server runs as a background task inside the API's event loop and is
entered as an async context manager from the application lifespan.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import socket
from typing import Annotated

import uvicorn
from fastapi import Depends, FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from html_image_service.chromium_manager import ChromiumManager, get_chromium_manager
from html_image_service.prometheus_metrics import update_gauges_from_chromium_manager

logger = logging.getLogger(__name__)

STARTUP_TIMEOUT_SECONDS = 10.0
SHUTDOWN_TIMEOUT_SECONDS = 5.0

metrics_app = FastAPI(
    title="HTML Image Service Metrics",
    version="1.0.0",
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
)


@metrics_app.get("/metrics")
async def metrics(chromium_manager: Annotated[ChromiumManager, Depends(get_chromium_manager)]) -> Response:
    """Counters move as renders happen; the browser gauges are refreshed per scrape."""
    update_gauges_from_chromium_manager(chromium_manager)
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST, headers={"Cache-Control": "no-store"})


class MetricsServer:
    """
    Serves ``metrics_app`` with uvicorn in the background.

    Usage::

        async with MetricsServer(port=9180):
            ...
    """

    def __init__(self, port: int) -> None:
        self.port = port
        self._server = uvicorn.Server(uvicorn.Config(app=metrics_app, port=port, log_level="warning", lifespan="off"))
        self._socket: socket.socket | None = None
        self._task: asyncio.Task[None] | None = None

    async def __aenter__(self) -> MetricsServer:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """
        Bind the port, start serving and wait until uvicorn is listening.

        The socket is bound here rather than by uvicorn, whose own bind
        failure exits the process.

        Raises:
            OSError: If the port cannot be bound or the server exits during startup.
            TimeoutError: If the server is not listening within STARTUP_TIMEOUT_SECONDS.
        """
        if self._task is not None:
            logger.warning("Metrics server already started")
            return

        self._socket = socket.create_server(("", self.port))
        self._task = asyncio.create_task(self._server.serve(sockets=[self._socket]))
        try:
            await asyncio.wait_for(self._wait_until_listening(), timeout=STARTUP_TIMEOUT_SECONDS)
        except (TimeoutError, OSError):
            logger.error("Metrics server failed to start on port %d", self.port)
            await self.stop()
            raise

        logger.info("Metrics server listening on port %d", self.port)

    async def _wait_until_listening(self) -> None:
        while not self._server.started:
            if self._task is None or self._task.done():
                raise OSError(f"Metrics server on port {self.port} exited during startup")
            await asyncio.sleep(0.01)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return

        self._server.should_exit = True
        try:
            await asyncio.wait_for(task, timeout=SHUTDOWN_TIMEOUT_SECONDS)
        except TimeoutError:
            logger.warning("Metrics server did not shut down within %s seconds, cancelling it", SHUTDOWN_TIMEOUT_SECONDS)
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        except Exception as e:  # noqa: BLE001
            logger.warning("Metrics server exited with an error: %s", e)
        finally:
            if self._socket is not None:
                self._socket.close()
                self._socket = None

        logger.info("Metrics server stopped")
