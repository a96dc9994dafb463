#!/usr/bin/env python3
"""
pdcapture - Capture Backend
"""

import asyncio
import logging
import os
import shlex
import shutil
import subprocess
import sys
import threading
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.gzip import GZipMiddleware

from pdcapture import config
from pdcapture.models import AllowedHosts, RequestObservation, TabUpdate
from pdcapture.presentation import describe_candidates, suggested_filename
from pdcapture.registry import BadgeBoard, CaptureRegistry
from pdcapture.storage import CaptureStore, StorageError
from pdcapture.tabs import ActiveTabTracker, CapturePipeline, TabLifecycle, parse_tab_id

logger = logging.getLogger('pdcapture')

ADDON_PATH = Path(__file__).parent / "mitm_addon.py"
PROXY_STARTUP_GRACE = 1.0

connections: List[WebSocket] = []
proxy_process: Optional[subprocess.Popen] = None
proxy_settings: dict = {}
proxy_config: dict = config.default_proxy_config()

registry: Optional[CaptureRegistry] = None
tracker: Optional[ActiveTabTracker] = None
lifecycle: Optional[TabLifecycle] = None
pipeline: Optional[CapturePipeline] = None


async def broadcast(data: dict):
    for conn in list(connections):
        try:
            await conn.send_json(data)
        except Exception as e:
            logger.debug('Dropping websocket client: %s', e)
            if conn in connections:
                connections.remove(conn)


async def broadcast_badge(tab_id: int, badge: dict):
    await broadcast({"type": "badge", "data": {"tab_id": tab_id, **badge}})


async def setup_registry(db_path: Path):
    global registry, tracker, lifecycle, pipeline
    store = CaptureStore(db_path)
    try:
        await store.init()
    except StorageError as e:
        logger.warning('Capture store unavailable (%s); captures will not persist', e)
    registry = CaptureRegistry(store, BadgeBoard(broadcast_badge))
    tracker = ActiveTabTracker()
    lifecycle = TabLifecycle(registry, tracker)
    pipeline = CapturePipeline(registry, tracker)
    logger.info('Capture registry ready (db=%s)', db_path)


def get_registry() -> CaptureRegistry:
    if registry is None:
        raise HTTPException(status_code=503, detail="Registry not initialized")
    return registry


async def update_proxy_config():
    config.write_proxy_config(proxy_config)


def _pump_output(pipe, label: str, error_stream: bool = False):
    """Relay mitmdump output into our log.

    mitmdump prints one line per flow on stdout; those go to debug so only
    the addon's own lines and stderr show up at the default level.
    """
    try:
        if not pipe:
            return
        for line in iter(pipe.readline, ''):
            line = line.rstrip()
            if not line:
                continue
            if error_stream:
                logger.error('[%s] %s', label, line)
            elif 'pdcapture' in line:
                logger.info('[%s] %s', label, line)
            else:
                logger.debug('[%s] %s', label, line)
    except (OSError, ValueError) as e:
        logger.debug('Output relay for %s stopped: %s', label, e)


def find_mitmdump() -> Optional[Path]:
    """mitmdump from the active venv first, then PATH"""
    candidate = Path(sys.executable).with_name("mitmdump")
    if candidate.exists():
        return candidate
    resolved = shutil.which("mitmdump")
    return Path(resolved) if resolved else None


def build_proxy_command(mitmdump_bin: Path, port: int, mode: str, extra_args: str = "") -> List[str]:
    cmd = [str(mitmdump_bin), "--mode", mode, "-p", str(port),
           "-s", str(ADDON_PATH), "--set", "connection_strategy=lazy"]
    if extra_args:
        cmd.extend(shlex.split(extra_args))
    return cmd


def proxy_env() -> dict:
    """Environment for mitmdump; the addon imports pdcapture from the repo root."""
    env = dict(os.environ)
    env["PYTHONPATH"] = str(config.BASE_DIR) + os.pathsep + env.get("PYTHONPATH", "")
    return env


def proxy_running() -> bool:
    return proxy_process is not None and proxy_process.poll() is None


async def start_proxy(port: int = 8080, mode: str = "regular", extra_args: str = ""):
    global proxy_process, proxy_settings
    if proxy_running():
        return {"status": "already_running", **proxy_settings}

    mitmdump_bin = find_mitmdump()
    if not mitmdump_bin:
        logger.error("mitmdump not found next to %s or on PATH", sys.executable)
        return {"status": "failed", "error": "mitmdump not found in venv or PATH"}

    # The addon rereads this file per request, so write it before the first flow
    await update_proxy_config()
    cmd = build_proxy_command(mitmdump_bin, port, mode, extra_args)
    logger.info("Launching capture proxy on port %s for %d host pattern(s): %s",
                port, len(proxy_config.get("allowed_hosts", [])), " ".join(cmd))
    proxy_process = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True, env=proxy_env())

    await asyncio.sleep(PROXY_STARTUP_GRACE)
    if not proxy_running():
        try:
            stdout, stderr = proxy_process.communicate(timeout=1.0)
        except subprocess.TimeoutExpired:
            stdout, stderr = "", ""
        logger.error("Capture proxy exited during startup (returncode=%s): %s",
                     proxy_process.returncode, (stderr or stdout).strip())
        proxy_process = None
        return {"status": "failed", "error": (stderr or stdout or "Proxy exited immediately")}

    threading.Thread(target=_pump_output, args=(proxy_process.stdout, "mitm:stdout"), daemon=True).start()
    threading.Thread(target=_pump_output, args=(proxy_process.stderr, "mitm:stderr", True), daemon=True).start()
    proxy_settings = {"port": port, "mode": mode}
    return {"status": "started", "pid": proxy_process.pid, **proxy_settings}


async def stop_proxy():
    global proxy_process, proxy_settings
    if not proxy_process:
        return {"status": "not_running"}
    logger.info('Stopping capture proxy (pid=%s)', proxy_process.pid)
    proxy_process.terminate()
    try:
        proxy_process.wait(timeout=5)
    except subprocess.TimeoutExpired:
        proxy_process.kill()
    proxy_process = None
    proxy_settings = {}
    return {"status": "stopped"}


@asynccontextmanager
async def lifespan(app: FastAPI):
    global proxy_config
    config.setup_logging()
    proxy_config = config.load_proxy_config()
    await setup_registry(config.DB_PATH)
    yield
    await stop_proxy()


app = FastAPI(title="pdcapture API", lifespan=lifespan)
app.add_middleware(GZipMiddleware, minimum_size=500)
app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_credentials=True, allow_methods=["*"], allow_headers=["*"])


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await websocket.accept()
    connections.append(websocket)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        if websocket in connections:
            connections.remove(websocket)


# --- Request observations (proxy addon or browser bridge) ---

@app.post("/api/internal/request")
async def receive_request(observation: RequestObservation):
    get_registry()
    tab_id = parse_tab_id(observation.tab_id)
    capture = await pipeline.observe(observation.url, tab_id)
    if capture is None:
        return {"status": "ignored"}
    return {"status": "recorded", "id": capture.id, "url": capture.url}


# --- Tab lifecycle ---

@app.post("/api/tabs/{tab_id}/removed")
async def tab_removed(tab_id: str):
    get_registry()
    handled = await lifecycle.on_removed(parse_tab_id(tab_id))
    return {"status": "ok" if handled else "ignored"}


@app.post("/api/tabs/{tab_id}/activated")
async def tab_activated(tab_id: str):
    get_registry()
    handled = await lifecycle.on_activated(parse_tab_id(tab_id))
    return {"status": "ok" if handled else "ignored"}


@app.post("/api/tabs/{tab_id}/updated")
async def tab_updated(tab_id: str, update: Optional[TabUpdate] = None):
    get_registry()
    handled = await lifecycle.on_updated(parse_tab_id(tab_id), update.status if update else None)
    return {"status": "ok" if handled else "ignored"}


@app.get("/api/tabs/active")
async def active_tab():
    get_registry()
    return {"tab_id": await tracker.active_tab()}


@app.get("/api/tabs")
async def list_tabs():
    """Tabs currently holding candidates, for diagnostics"""
    reg = get_registry()
    tabs = []
    for tab_id in await reg.tabs():
        tabs.append({"tab_id": tab_id, "count": len(await reg.snapshot(tab_id)), "badge": reg.badges.get(tab_id)})
    return {"active": await tracker.active_tab(), "tabs": tabs}


# --- Read side ---

@app.get("/api/tabs/{tab_id}/captures")
async def get_captures(tab_id: str):
    captures = await get_registry().snapshot(parse_tab_id(tab_id))
    return [c.model_dump() for c in captures]


@app.get("/api/tabs/{tab_id}/badge")
async def get_badge(tab_id: str):
    return get_registry().badges.get(parse_tab_id(tab_id))


@app.get("/api/tabs/{tab_id}/candidates")
async def get_candidates(tab_id: str, title: str = ""):
    captures = await get_registry().snapshot(parse_tab_id(tab_id))
    view = describe_candidates(captures)
    view["filename"] = suggested_filename(title)
    return view


# --- Configuration ---

@app.get("/api/config/hosts")
async def get_allowed_hosts():
    return {"hosts": proxy_config.get("allowed_hosts", [])}


@app.put("/api/config/hosts")
async def set_allowed_hosts(body: AllowedHosts):
    hosts = [h.strip() for h in body.hosts if h and h.strip()]
    if not hosts:
        raise HTTPException(status_code=400, detail="At least one host pattern is required")
    proxy_config["allowed_hosts"] = hosts
    await update_proxy_config()
    logger.info('Allowed hosts updated: %s', hosts)
    return {"hosts": hosts}


# --- Proxy ---

@app.post("/api/proxy/start")
async def api_start_proxy(port: int = 8080, mode: str = "regular", extra: str = ""):
    return await start_proxy(port, mode, extra)


@app.post("/api/proxy/stop")
async def api_stop_proxy():
    return await stop_proxy()


@app.get("/api/proxy/status")
async def proxy_status():
    if not proxy_running():
        return {"running": False, "pid": None}
    return {"running": True, "pid": proxy_process.pid, **proxy_settings}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="127.0.0.1", port=5000)
