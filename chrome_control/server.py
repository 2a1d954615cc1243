"""
Browser Control API
FastAPI server on loopback exposing browser status, start/stop, tabs and screenshots
"""

import asyncio
import contextlib
import logging
import socket
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import BrowserConfig
from .devtools import DevToolsEndpoint, open_tab
from .media import SavedMedia, save_media_buffer
from .screenshot import capture_screenshot, downscale_png
from .supervisor import BrowserSupervisor

logger = logging.getLogger(__name__)

BIND_HOST = "127.0.0.1"
STATUS_PROBE_TIMEOUT = 0.3


class ServerContext:
    """Everything the handlers share: config, the CDP endpoint and the supervisor."""

    def __init__(self, config: BrowserConfig, endpoint: Optional[DevToolsEndpoint] = None,
                 supervisor: Optional[BrowserSupervisor] = None):
        self.config = config
        self.endpoint = endpoint or DevToolsEndpoint(config.cdp_port)
        self.supervisor = supervisor or BrowserSupervisor(config, self.endpoint)

    async def close(self):
        await self.supervisor.shutdown()
        await self.endpoint.aclose()


# === Models ===

class OpenTabRequest(BaseModel):
    url: str = ""


class FocusTabRequest(BaseModel):
    target_id: str = Field(default="", alias="targetId")


def _store_screenshot(config: BrowserConfig, png: bytes) -> SavedMedia:
    if config.screenshot_max_dim:
        png = downscale_png(png, config.screenshot_max_dim)
    return save_media_buffer(png, "image/png", "browser", root=config.media_dir)


def get_context(request: Request) -> ServerContext:
    ctx = getattr(request.app.state, "context", None)
    if ctx is None:
        raise HTTPException(status_code=503, detail="browser server not started")
    return ctx


async def _require_running(ctx: ServerContext):
    if not await ctx.supervisor.is_reachable(STATUS_PROBE_TIMEOUT):
        raise HTTPException(status_code=409, detail="browser not running")


def create_app(context: Optional[ServerContext]) -> FastAPI:
    app = FastAPI(title="Browser Control API", version="1.0.0")
    app.state.context = context

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse({"error": str(exc.detail)}, status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = errors[0].get("msg", "invalid request") if errors else "invalid request"
        return JSONResponse({"error": message}, status_code=400)

    @app.middleware("http")
    async def failure_boundary(request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.exception(f"Unhandled error on {request.method} {request.url.path}")
            return JSONResponse({"error": str(e)}, status_code=500)

    # === Routes ===

    @app.get("/")
    async def status(ctx: ServerContext = Depends(get_context)):
        """Browser status: reachability, launched pid, policy flags"""
        reachable = await ctx.supervisor.is_reachable(STATUS_PROBE_TIMEOUT)
        running = ctx.supervisor.running
        cfg = ctx.config
        return {
            "enabled": cfg.enabled,
            "controlUrl": cfg.control_url,
            "running": reachable,
            "pid": running.pid if running else None,
            "cdpPort": cfg.cdp_port,
            "chosenBrowser": running.exe.kind if running else None,
            "userDataDir": running.user_data_dir if running else None,
            "color": cfg.color,
            "headless": cfg.headless,
            "attachOnly": cfg.attach_only,
        }

    @app.post("/start")
    async def start(ctx: ServerContext = Depends(get_context)):
        try:
            await ctx.supervisor.ensure_reachable()
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))
        return {"ok": True}

    @app.post("/stop")
    async def stop(ctx: ServerContext = Depends(get_context)):
        try:
            stopped = await ctx.supervisor.stop()
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))
        return {"ok": True, "stopped": stopped}

    @app.get("/tabs")
    async def list_tabs(ctx: ServerContext = Depends(get_context)):
        if not await ctx.supervisor.is_reachable(STATUS_PROBE_TIMEOUT):
            return {"running": False, "tabs": []}
        try:
            tabs = await ctx.endpoint.list_tabs()
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))
        return {"running": True, "tabs": [t.to_json() for t in tabs]}

    @app.post("/tabs/open")
    async def open_new_tab(body: Optional[OpenTabRequest] = None,
                           ctx: ServerContext = Depends(get_context)):
        url = (body.url if body else "").strip()
        if not url:
            raise HTTPException(status_code=400, detail="url is required")
        try:
            await ctx.supervisor.ensure_reachable()
            tab = await open_tab(ctx.endpoint, url)
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))
        return tab.to_json()

    @app.post("/tabs/focus")
    async def focus_tab(body: Optional[FocusTabRequest] = None,
                        ctx: ServerContext = Depends(get_context)):
        target_id = (body.target_id if body else "").strip()
        if not target_id:
            raise HTTPException(status_code=400, detail="targetId is required")
        await _require_running(ctx)
        try:
            await ctx.endpoint.activate_tab(target_id)
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))
        return {"ok": True}

    @app.delete("/tabs/{target_id}")
    async def close_tab(target_id: str, ctx: ServerContext = Depends(get_context)):
        target_id = target_id.strip()
        if not target_id:
            raise HTTPException(status_code=400, detail="targetId is required")
        await _require_running(ctx)
        try:
            await ctx.endpoint.close_tab(target_id)
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))
        return {"ok": True}

    @app.get("/screenshot")
    async def screenshot(target_id: str = Query(default="", alias="targetId"),
                         full_page: str = Query(default="", alias="fullPage"),
                         ctx: ServerContext = Depends(get_context)):
        """Capture a tab (by id, else the first one) and save it to the media store"""
        target_id = target_id.strip()
        await _require_running(ctx)

        try:
            tabs = await ctx.endpoint.list_tabs()
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))
        if target_id:
            chosen = next((t for t in tabs if t.target_id == target_id), None)
        else:
            chosen = tabs[0] if tabs else None
        if chosen is None or not chosen.ws_url:
            raise HTTPException(status_code=404, detail="tab not found")

        try:
            png = await capture_screenshot(chosen.ws_url, full_page=full_page in ("true", "1"))
            # Pillow resize and the file write stay off the event loop
            loop = asyncio.get_running_loop()
            saved = await loop.run_in_executor(None, _store_screenshot, ctx.config, png)
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))
        return {
            "ok": True,
            "path": saved.path,
            "targetId": chosen.target_id,
            "url": chosen.url,
        }

    return app


# === Listener ===

class _EmbeddedServer(uvicorn.Server):
    @contextlib.contextmanager
    def capture_signals(self):
        # signals are handled by the embedding process (see __main__)
        yield


class ControlServer:
    """Loopback HTTP listener around create_app(); start() is idempotent."""

    def __init__(self, config: BrowserConfig, context: Optional[ServerContext] = None):
        self.config = config
        self.port = config.control_port
        self.context = context
        self._owns_context = False
        self.app: Optional[FastAPI] = None
        self._server: Optional[uvicorn.Server] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def started(self) -> bool:
        return self._task is not None

    async def start(self) -> Optional["ControlServer"]:
        if self._task is not None:
            return self
        if not self.config.enabled:
            logger.info("browser control disabled; not starting server")
            return None
        if not self.config.is_loopback_control_url():
            logger.info(f"browser control URL is non-loopback ({self.config.control_url}); "
                        f"skipping local server start")
            return None

        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((BIND_HOST, self.port))
        except OSError as e:
            sock.close()
            logger.error(f"browser server failed to bind {BIND_HOST}:{self.port}: {e}")
            return None

        if self.context is None:
            self.context = ServerContext(self.config)
            self._owns_context = True
        self.app = create_app(self.context)
        self._server = _EmbeddedServer(uvicorn.Config(self.app, lifespan="off", log_level="warning"))
        self._task = asyncio.create_task(self._server.serve(sockets=[sock]))

        while not self._server.started:
            if self._task.done():
                server_task, self._task = self._task, None
                err = None if server_task.cancelled() else server_task.exception()
                logger.error(f"browser server exited during startup: {err}")
                return None
            await asyncio.sleep(0.05)

        logger.info(f"browser control listening on http://{BIND_HOST}:{self.port}/")
        return self

    async def wait(self):
        if self._task is not None:
            await self._task

    async def stop(self):
        if self._task is None:
            return
        server, task = self._server, self._task
        self._server = None
        self._task = None
        if self.app is not None:
            # new requests now get 503
            self.app.state.context = None
        if self.context is not None:
            await self.context.close()
            if self._owns_context:
                # closed for good; the next start() builds a fresh one
                self.context = None
                self._owns_context = False
        server.should_exit = True
        await task
        logger.info("browser control server stopped")
