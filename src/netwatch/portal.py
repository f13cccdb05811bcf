"""Captive portal web application and its background server."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future
from pathlib import Path
from typing import Callable, Sequence

import uvicorn
from fastapi import BackgroundTasks, FastAPI, HTTPException
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import HTMLResponse, RedirectResponse
from pydantic import BaseModel, Field

from .connector import ConnectOutcome, WiFiNetwork
from .errors import ConnectorError
from .status import NetworkState, StatusRecord
from .system_log import SystemLog
from .version import APP_VERSION

logger = logging.getLogger(__name__)

STATIC_DIR = Path(__file__).resolve().parent / "static"

# Operating systems probe these to detect a captive portal.
CAPTIVE_PROBE_PATHS = (
    "/generate_204",
    "/gen_204",
    "/hotspot-detect.html",
    "/library/test/success.html",
    "/ncsi.txt",
    "/connecttest.txt",
    "/redirect",
)


def _load_static(name: str) -> str:
    path = STATIC_DIR / name
    if not path.exists():  # pragma: no cover - sanity check
        raise FileNotFoundError(f"Static asset {name!r} missing")
    return path.read_text(encoding="utf-8")


class ConnectPayload(BaseModel):
    ssid: str = Field(min_length=1, max_length=32)
    password: str | None = Field(default=None, min_length=8, max_length=63)


def create_portal_app(
    scanner: Callable[[], Sequence[WiFiNetwork]],
    submit_connect: Callable[[str, str | None], "Future[ConnectOutcome]"],
    status_provider: Callable[[], StatusRecord],
    system_log: SystemLog | None = None,
    diagnostics_provider: Callable[[], dict[str, object]] | None = None,
) -> FastAPI:
    """Return the captive portal application bound to the given collaborators."""

    app = FastAPI(title="netwatch provisioning portal", version=APP_VERSION)

    @app.get("/api/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/scan")
    async def scan_networks() -> dict[str, object]:
        try:
            networks = await run_in_threadpool(scanner)
        except ConnectorError as exc:
            logger.warning("WiFi scan failed: %s", exc)
            raise HTTPException(status_code=503, detail=f"Unable to scan for networks: {exc}") from exc
        return {"success": True, "networks": [network.to_dict() for network in networks]}

    @app.post("/api/connect", status_code=202)
    async def connect(payload: ConnectPayload, background_tasks: BackgroundTasks) -> dict[str, object]:
        if status_provider().state is not NetworkState.PROVISIONING_ACTIVE:
            raise HTTPException(status_code=409, detail="Provisioning is not active")
        # Queued only once this response is sent: the attempt takes the access point down.
        background_tasks.add_task(submit_connect, payload.ssid, payload.password)
        return {
            "success": True,
            "status": "connecting",
            "ssid": payload.ssid,
            "message": (
                f"Connecting to {payload.ssid}. This network disappears during the attempt; "
                "if it comes back, rejoin it to see the result."
            ),
        }

    @app.get("/api/status")
    async def status() -> dict[str, object | None]:
        return status_provider().to_dict()

    @app.get("/api/logs")
    async def logs(limit: int = 50, category: str | None = None) -> dict[str, object]:
        if system_log is None:
            return {"entries": []}
        entries = await run_in_threadpool(system_log.tail, limit, category=category)
        return {"entries": [entry.to_dict() for entry in entries]}

    @app.get("/api/diagnostics")
    async def diagnostics() -> dict[str, object]:
        if diagnostics_provider is None:
            raise HTTPException(status_code=404, detail="Diagnostics are not available")
        return await run_in_threadpool(diagnostics_provider)

    @app.get("/", response_class=HTMLResponse)
    async def index() -> str:
        return _load_static("index.html")

    async def redirect_to_portal() -> RedirectResponse:
        return RedirectResponse(url="/", status_code=302)

    for probe_path in CAPTIVE_PROBE_PATHS:
        app.add_api_route(probe_path, redirect_to_portal, methods=["GET", "HEAD"], include_in_schema=False)

    @app.api_route("/{path:path}", methods=["GET", "HEAD"], include_in_schema=False)
    async def catch_all(path: str) -> RedirectResponse:
        return RedirectResponse(url="/", status_code=302)

    return app


class _ThreadedServer(uvicorn.Server):
    def install_signal_handlers(self) -> None:  # pragma: no cover - signals belong to the CLI
        return None


class PortalServer:
    """Runs the portal application under uvicorn on a daemon thread."""

    def __init__(
        self,
        app: FastAPI,
        host: str = "0.0.0.0",
        port: int = 80,
        *,
        start_timeout: float = 5.0,
        stop_timeout: float = 5.0,
        log_level: str = "warning",
    ) -> None:
        self._app = app
        self._host = host
        self._port = port
        self._start_timeout = start_timeout
        self._stop_timeout = stop_timeout
        self._log_level = log_level
        self._lock = threading.Lock()
        self._server: _ThreadedServer | None = None
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return bool(
            self._server is not None
            and self._server.started
            and self._thread is not None
            and self._thread.is_alive()
        )

    def start(self, host: str | None = None, port: int | None = None) -> None:
        with self._lock:
            if self.running:
                return
            self._host = host or self._host
            self._port = port or self._port
            config = uvicorn.Config(
                self._app,
                host=self._host,
                port=self._port,
                log_level=self._log_level,
                access_log=False,
                lifespan="off",
            )
            server = _ThreadedServer(config)
            thread = threading.Thread(target=self._serve, args=(server,), name="netwatch-portal", daemon=True)
            self._server = server
            self._thread = thread
            thread.start()
            deadline = time.monotonic() + self._start_timeout
            while not server.started and thread.is_alive() and time.monotonic() < deadline:
                time.sleep(0.05)
            if not server.started:
                self._shutdown_locked()
                raise RuntimeError(f"Portal did not start on {self._host}:{self._port}")
            logger.info("Captive portal listening on %s:%s", self._host, self._port)

    def stop(self) -> None:
        with self._lock:
            self._shutdown_locked()

    def _shutdown_locked(self) -> None:
        server, thread = self._server, self._thread
        self._server = None
        self._thread = None
        if server is None:
            return
        server.should_exit = True
        # Open client connections are dropped along with the access point.
        server.force_exit = True
        if thread is not None and thread.is_alive():
            thread.join(timeout=self._stop_timeout)
            if thread.is_alive():
                logger.warning("Captive portal thread did not exit within %.1fs", self._stop_timeout)

    @staticmethod
    def _serve(server: uvicorn.Server) -> None:
        try:
            server.run()
        except SystemExit as exc:
            # uvicorn exits when it cannot bind the socket.
            logger.error("Captive portal server exited: %s", exc)
        except Exception:  # pragma: no cover - defensive logging
            logger.exception("Captive portal server crashed")


__all__ = ["CAPTIVE_PROBE_PATHS", "ConnectPayload", "PortalServer", "create_portal_app"]
