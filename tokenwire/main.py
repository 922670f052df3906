#!/usr/bin/env python3
"""
Tokenwire - token observer backend
"""

import asyncio
import json
import logging
import shlex
import shutil
import subprocess
import sys
import threading
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Literal, Optional

from fastapi import Body, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .collector import CollectionChanged
from .config import AppConfig, load_policy, setup_logging
from .errors import PolicyValidationError, ScanFailure
from .events import RequestObserved, StorageSnapshot
from .session import MonitorSession

logger = logging.getLogger('tokenwire.main')

ADDON_PATH = Path(__file__).parent / "mitm_addon.py"
CONTEXT_HEADER = "x-tokenwire-context"

connections: List[WebSocket] = []
proxy_process: Optional[subprocess.Popen] = None


class ContextSignal(BaseModel):
    context_id: str
    url: Optional[str] = None
    reason: Literal["activated", "loading"] = "activated"


class ShutdownSignal(BaseModel):
    remaining_contexts: int = 0


async def broadcast(data: dict):
    for conn in list(connections):
        try:
            await conn.send_json(data)
        except Exception:
            logger.debug('Dropping dead websocket connection')
            if conn in connections:
                connections.remove(conn)


def update_proxy_config(config: AppConfig):
    """Write the JSON config the mitmproxy addon re-reads on every request."""
    proxy_config = {
        "backend_url": config.backend_url,
        "context_header": CONTEXT_HEADER,
    }
    config.proxy_config_path.write_text(json.dumps(proxy_config))
    logger.debug('Proxy config updated at %s: %s', config.proxy_config_path, proxy_config)


def _stream_pipe(pipe, level_fn, label: str):
    """Read lines from a subprocess pipe and log them.

    NOTE: mitmdump is spawned with text=True, so readline() returns str, not bytes.
    """
    try:
        if not pipe:
            return
        for line in iter(pipe.readline, ''):
            if not line:
                break
            line = line.rstrip()
            if line:
                level_fn('[%s] %s', label, line)
    except Exception as e:
        logger.debug('Pipe reader for %s stopped: %s', label, e)


async def start_proxy(config: AppConfig, port: int, mode: str = "regular", extra_args: str = ""):
    global proxy_process
    if proxy_process and proxy_process.poll() is None:
        return {"status": "already_running", "port": port}

    update_proxy_config(config)
    logger.info('Starting mitmdump (port=%s) with addon=%s', port, ADDON_PATH)

    mitmdump_bin = Path(sys.executable).with_name("mitmdump")
    if not mitmdump_bin.exists():
        resolved = shutil.which("mitmdump")
        mitmdump_bin = Path(resolved) if resolved else None
    if not mitmdump_bin:
        logger.error("mitmdump binary not found near current Python. Verify the venv/paths.")
        return {"status": "failed", "error": "mitmdump not found in venv or PATH"}
    cmd = [str(mitmdump_bin), "--mode", mode, "-p", str(port), "-s", str(ADDON_PATH),
           "--set", "connection_strategy=lazy", "--set", f"tokenwire_config={config.proxy_config_path}"]
    if extra_args:
        cmd.extend(shlex.split(extra_args))
    logger.info("Launching proxy subprocess: %s", " ".join(cmd))
    proxy_process = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
    # Give the process a moment to bind the port
    await asyncio.sleep(1.0)
    if proxy_process.poll() is None:
        threading.Thread(target=_stream_pipe, args=(proxy_process.stdout, logger.info, "mitm:stdout"), daemon=True).start()
        threading.Thread(target=_stream_pipe, args=(proxy_process.stderr, logger.error, "mitm:stderr"), daemon=True).start()
        return {"status": "started", "port": port, "pid": proxy_process.pid}
    try:
        stdout, stderr = proxy_process.communicate(timeout=1.0)
    except subprocess.TimeoutExpired:
        stdout, stderr = "", ""
    logger.error("Proxy exited immediately (returncode=%s). stdout=%r stderr=%r", proxy_process.returncode, stdout, stderr)
    return {"status": "failed", "error": (stderr or stdout or "Proxy exited immediately")}


async def stop_proxy():
    global proxy_process
    if not proxy_process:
        return {"status": "not_running"}
    logger.info('Stopping mitmdump (pid=%s)...', proxy_process.pid)
    proxy_process.terminate()
    try:
        proxy_process.wait(timeout=5)
    except subprocess.TimeoutExpired:
        proxy_process.kill()
    proxy_process = None
    return {"status": "stopped"}


def _session(request: Request) -> MonitorSession:
    return request.app.state.session


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    config = config or AppConfig.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging()
        session = MonitorSession(
            load_policy(config.settings_path),
            mirror_path=config.mirror_path,
            settings_path=config.settings_path,
            auto_adopt=config.auto_adopt_context,
        )

        async def push_change(change: CollectionChanged):
            await broadcast({"type": "collection_changed", "reason": change.reason.value,
                             "data": session.get_collection()})

        session.collector.subscribe(push_change)
        await session.start()
        app.state.session = session
        app.state.config = config
        yield
        await stop_proxy()
        await session.stop()

    app = FastAPI(title="Tokenwire API", lifespan=lifespan)
    if config.allowed_origins:
        app.add_middleware(CORSMiddleware, allow_origins=config.allowed_origins,
                           allow_methods=["GET", "POST", "PUT"], allow_headers=["Content-Type"])

    @app.middleware("http")
    async def reject_foreign_origins(request: Request, call_next):
        origin = request.headers.get("origin")
        if origin and origin not in config.allowed_origins:
            logger.warning("Rejected %s %s from origin %s", request.method, request.url.path, origin)
            return JSONResponse(status_code=403, content={"detail": "Origin not allowed"})
        return await call_next(request)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        origin = websocket.headers.get("origin")
        if origin and origin not in config.allowed_origins:
            logger.warning("Rejected websocket from origin %s", origin)
            await websocket.close(code=1008)
            return
        await websocket.accept()
        connections.append(websocket)
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            if websocket in connections:
                connections.remove(websocket)

    # --- Display surface ---

    @app.get("/api/collection")
    async def get_collection(request: Request):
        return _session(request).get_collection()

    @app.post("/api/collection/scan")
    async def request_scan(request: Request):
        session = _session(request)
        try:
            collection = await session.request_scan()
        except ScanFailure as e:
            logger.warning('Scan failed: %s', e)
            return {"status": "scan_failed", "error": f"Scan failed, try again ({e})", **session.get_collection()}
        return {"status": "ok", **collection}

    @app.post("/api/collection/clear")
    async def clear_all(request: Request):
        try:
            success = await _session(request).clear_all()
        except OSError as e:
            logger.error('Clear failed: %s', e)
            raise HTTPException(status_code=500, detail="Failed to clear collected data")
        return {"success": success}

    @app.post("/api/tokens/{handle}/copy")
    async def copy_token(handle: str, request: Request):
        token = _session(request).copy_token(handle)
        if token is None:
            raise HTTPException(status_code=404, detail="Token not found")
        return {"token": token}

    # --- Settings surface ---

    @app.get("/api/policy")
    async def get_policy(request: Request):
        return _session(request).get_policy().to_dict()

    @app.put("/api/policy")
    async def set_policy(request: Request, body: dict = Body(...)):
        try:
            policy = await _session(request).set_policy(body)
        except PolicyValidationError as e:
            raise HTTPException(status_code=400, detail={"message": str(e), "errors": e.errors})
        return policy.to_dict()

    # --- Internal feed (addon and host) ---

    @app.post("/api/internal/request")
    async def receive_request(event: RequestObserved, request: Request):
        queued = _session(request).feed.post(event)
        logger.debug('Internal capture: %s (queued=%s)', event.url, queued)
        return {"status": "queued" if queued else "dropped"}

    @app.post("/api/internal/storage")
    async def receive_storage(snapshot: StorageSnapshot, request: Request):
        recorded = _session(request).record_storage(snapshot)
        return {"status": "recorded" if recorded else "ignored", "items": len(snapshot.items)}

    @app.post("/api/internal/context")
    async def receive_context(signal: ContextSignal, request: Request):
        session = _session(request)
        if signal.reason == "loading":
            reset = await session.content_changed(signal.context_id, signal.url)
        else:
            reset = await session.context_changed(signal.context_id, signal.url)
        return {"status": "ok", "reset": reset, "active_context": session.tracker.active_context_id}

    @app.post("/api/internal/shutdown")
    async def receive_shutdown(signal: ShutdownSignal, request: Request):
        wiped = await _session(request).environment_shutdown(signal.remaining_contexts)
        return {"status": "ok", "wiped": wiped}

    # --- Proxy control ---

    @app.post("/api/proxy/start")
    async def api_start_proxy(port: Optional[int] = None, mode: str = "regular", extra: str = ""):
        return await start_proxy(config, port or config.proxy_port, mode, extra)

    @app.post("/api/proxy/stop")
    async def api_stop_proxy():
        return await stop_proxy()

    @app.get("/api/proxy/status")
    async def proxy_status(request: Request):
        running = proxy_process is not None and proxy_process.poll() is None
        return {"running": running, "active_context": _session(request).tracker.active_context_id}

    return app


app = create_app()


def run():
    import uvicorn
    config = AppConfig.from_env()
    uvicorn.run(create_app(config), host=config.host, port=config.port)


if __name__ == "__main__":
    run()
