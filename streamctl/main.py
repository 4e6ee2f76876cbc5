"""
streamctl web backend - FastAPI application.

Supervises one ffmpeg restream process per configured stream, exposes REST
endpoints for stream definitions, process control, logs and metrics, and
pushes live state to the dashboard over a WebSocket.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, HTMLResponse, JSONResponse, PlainTextResponse

from . import config as config_mod
from .command import ScriptWriter, build_command, render_script
from .config import ConfigModel, Paths, load_config, save_config, setup_logging
from .errors import StreamControlError
from .logsink import LogSink
from .metrics import MetricsProvider, MetricsSampler, get_provider
from .models import ControlRequest, StreamCreate, StreamUpdate
from .service import StreamService
from .store import JobStore
from .supervisor import CommandBuilder, Supervisor

setup_logging()
logger = logging.getLogger("streamctl")

CONTROL_MESSAGES = {
    "start":   "Stream started successfully",
    "stop":    "Stream stopped successfully",
    "restart": "Stream restarted successfully",
}


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(
    data_dir: Optional[Path] = None,
    build_command: CommandBuilder = build_command,
    provider: Optional[MetricsProvider] = None,
) -> FastAPI:
    paths = Paths(data_dir)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        paths.ensure()
        cfg = load_config(paths.config_file)
        store = JobStore(paths.streams_file, cfg["default_bitrate"], cfg["default_resolution"])
        logs = LogSink(paths.logs_dir)
        supervisor = Supervisor(store, logs, paths.pid_file, cfg, build_command=build_command)
        app.state.paths = paths
        app.state.supervisor = supervisor
        app.state.service = StreamService(store, supervisor, logs, ScriptWriter(paths.scripts_dir))
        app.state.sampler = MetricsSampler(
            supervisor,
            provider or get_provider(ttl=float(cfg["metrics_ttl"])),
            progress_lines=int(cfg["progress_lines"]),
        )
        logger.info(f"streamctl starting (data_dir={paths.data_dir})")
        await supervisor.reconcile()
        try:
            yield
        finally:
            await supervisor.shutdown()
            logger.info("streamctl stopped")

    app = FastAPI(title="Stream Control Dashboard", version="1.0.0", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StreamControlError)
    async def stream_control_error(request: Request, exc: StreamControlError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path}: {exc}")
        return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})

    _register_routes(app)
    return app


def _service(request: Request) -> StreamService:
    return request.app.state.service


# ---------------------------------------------------------------------------
# REST endpoints
# ---------------------------------------------------------------------------

def _register_routes(app: FastAPI) -> None:

    @app.get("/")
    async def root():
        index = config_mod.FRONTEND_DIR / "index.html"
        if index.exists():
            return FileResponse(index)
        return HTMLResponse("<h1>Frontend not found</h1>", status_code=404)

    @app.get("/api/config")
    async def get_config(request: Request):
        return request.app.state.supervisor.config

    @app.post("/api/config")
    async def post_config(cfg: ConfigModel, request: Request):
        data = cfg.model_dump()
        save_config(request.app.state.paths.config_file, data)
        # the supervisor and service share this dict
        request.app.state.supervisor.config.update(data)
        request.app.state.sampler.progress_lines = data["progress_lines"]
        store = _service(request).store
        store.default_bitrate = data["default_bitrate"]
        store.default_resolution = data["default_resolution"]
        return {"ok": True}

    @app.get("/api/streams")
    async def list_streams(request: Request):
        service = _service(request)
        return {
            "streams":    service.list_views(),
            "stats":      service.stream_stats(),
            "system":     request.app.state.sampler.system(),
            "categories": service.category_stats(),
        }

    @app.post("/api/streams", status_code=201)
    async def create_stream(data: StreamCreate, request: Request):
        return _service(request).create(data)

    @app.get("/api/streams/{stream_id}")
    async def get_stream(stream_id: str, request: Request):
        service = _service(request)
        return service.view(service.store.get(stream_id))

    @app.put("/api/streams/{stream_id}")
    async def update_stream(stream_id: str, data: StreamUpdate, request: Request):
        service = _service(request)
        return service.view(service.update(stream_id, data))

    @app.delete("/api/streams/{stream_id}")
    async def delete_stream(stream_id: str, request: Request):
        service = _service(request)
        service.store.get(stream_id)
        done = await service.delete(stream_id, timeout=float(service.config["control_timeout"]))
        return {"ok": True, "pending": not done}

    @app.post("/api/streams/{stream_id}/control")
    async def control_stream(stream_id: str, body: ControlRequest, request: Request):
        supervisor = request.app.state.supervisor
        supervisor.store.get(stream_id)
        done = await supervisor.control(
            body.action, stream_id, float(supervisor.config["control_timeout"]))
        return {
            "ok":      True,
            "action":  body.action,
            "pending": not done,
            "state":   supervisor.state(stream_id),
            "message": CONTROL_MESSAGES[body.action] if done else f"{body.action.capitalize()} in progress",
        }

    @app.get("/api/streams/{stream_id}/process")
    async def get_process(stream_id: str, request: Request):
        stream = _service(request).store.get(stream_id)
        return request.app.state.sampler.sample(stream)

    @app.get("/api/streams/{stream_id}/logs")
    async def get_logs(stream_id: str, request: Request, limit: int = Query(100, ge=1, le=5000)):
        service = _service(request)
        service.store.get(stream_id)
        return {"logs": service.logs.tail(stream_id, limit)}

    @app.delete("/api/streams/{stream_id}/logs")
    async def clear_logs(stream_id: str, request: Request):
        service = _service(request)
        service.store.get(stream_id)
        service.logs.clear(stream_id)
        return {"ok": True, "message": "Logs cleared successfully"}

    @app.get("/api/streams/{stream_id}/script", response_class=PlainTextResponse)
    async def get_script(stream_id: str, request: Request):
        service = _service(request)
        return render_script(service.store.get(stream_id), service.config)

    @app.get("/api/system")
    async def get_system(request: Request):
        return request.app.state.sampler.system()

    # -----------------------------------------------------------------------
    # WebSocket - live dashboard feed
    # -----------------------------------------------------------------------

    @app.websocket("/ws")
    async def websocket_endpoint(ws: WebSocket):
        """Push a snapshot every ``push_interval`` seconds, or right away when the client sends anything."""
        await ws.accept()
        state = ws.app.state
        try:
            while True:
                service = state.service
                msg = {
                    "type":       "state",
                    "streams":    [v.model_dump(mode="json") for v in service.list_views()],
                    "stats":      service.stream_stats().model_dump(),
                    "system":     state.sampler.system().model_dump(),
                    "categories": [c.model_dump() for c in service.category_stats()],
                    "ts":         time.time(),
                }
                await ws.send_json(msg)
                try:
                    await asyncio.wait_for(
                        ws.receive_text(), timeout=float(state.supervisor.config["push_interval"]))
                except asyncio.TimeoutError:
                    pass
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.debug(f"WS send error: {e}")


app = create_app()
