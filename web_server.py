"""FastAPI web server exposing status, overrides and manual actions.

Embedded in the monitor process and served by uvicorn on the same event
loop as the reconciliation loop. State changes (device online/offline,
action progress, override changes) are pushed to WebSocket clients the
moment they happen.

No authentication is performed; bind it to a trusted interface.
"""

import asyncio
import contextlib
import json
import logging
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from errors import ActionError, NotControllable, UnknownDeviceError

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"


# --- WebSocket Manager ---

class ConnectionManager:
    """Tracks WebSocket clients and pushes monitor events to them."""

    def __init__(self):
        self.active_connections: list[WebSocket] = []

    async def connect(self, websocket: WebSocket, state: dict):
        """Accept a client and send it the current state before any event."""
        await websocket.accept()
        await websocket.send_text(json.dumps({"type": "state", "data": state}))
        self.active_connections.append(websocket)

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)

    async def broadcast(self, message: dict):
        """Send JSON message to all connected WebSocket clients."""
        if not self.active_connections:
            return
        data = json.dumps(message)
        disconnected = []
        for conn in self.active_connections:
            try:
                await conn.send_text(data)
            except (WebSocketDisconnect, RuntimeError, OSError):
                disconnected.append(conn)
        for conn in disconnected:
            self.disconnect(conn)


# --- FastAPI App ---

app = FastAPI(title="Home Monitor")
manager = ConnectionManager()

# Reference to the monitor (set by main.py at startup)
_monitor = None
_pending_broadcasts: set = set()


def set_monitor(monitor):
    """Called by main.py to inject the HomeMonitor and subscribe to its events."""
    global _monitor
    _monitor = monitor
    if monitor is not None:
        monitor.subscribe(_on_event)


def _on_event(message: dict):
    """Forward a monitor event to WebSocket clients (runs on the event loop)."""
    if not manager.active_connections:
        return
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return
    task = loop.create_task(manager.broadcast({"type": "event", **message}))
    _pending_broadcasts.add(task)
    task.add_done_callback(_pending_broadcasts.discard)


def _get_monitor():
    if _monitor is None:
        raise HTTPException(status_code=503, detail="monitor not initialized")
    return _monitor


# --- Error Responses ---

def _error(status_code: int, kind: str, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": kind, "detail": detail})


@app.exception_handler(UnknownDeviceError)
async def _unknown_device(request, exc: UnknownDeviceError):
    return _error(404, exc.kind, str(exc))


@app.exception_handler(ActionError)
async def _action_failed(request, exc: ActionError):
    status_code = 409 if isinstance(exc, NotControllable) else 500
    return _error(status_code, exc.kind, str(exc))


# --- Index ---

@app.get("/")
async def index():
    """API info."""
    return {
        "message": "Home Monitor API",
        "docs": "/docs",
        "endpoints": {
            "config": f"GET {API_PREFIX}/config",
            "status": f"GET {API_PREFIX}/status",
            "server status": f"GET {API_PREFIX}/server/<id>/status",
            "always off": f"GET|POST|DELETE {API_PREFIX}/server/<id>/always_off",
            "always on": f"GET|POST|DELETE {API_PREFIX}/server/<id>/always_on",
            "wakeup": f"PUT {API_PREFIX}/server/<id>/wakeup",
            "shutdown": f"PUT {API_PREFIX}/server/<id>/shutdown",
            "websocket": "ws://<host>/ws",
        },
    }


# --- WebSocket Endpoint ---

@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    # Initial state is sent even if the monitor is not ready yet
    state = _monitor.get_status() if _monitor else {"error": "monitor not initialized"}
    await manager.connect(websocket, state)
    try:
        # Clients only listen; drain anything they send until they go away
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        manager.disconnect(websocket)


# --- REST API ---

@app.get(f"{API_PREFIX}/config")
async def get_config():
    """Return the loaded configuration (credentials redacted)."""
    return _get_monitor().get_config()


@app.get(f"{API_PREFIX}/status")
async def get_status():
    """Return reachability of every device and state of every server."""
    return _get_monitor().get_status()


@app.get(f"{API_PREFIX}/server/{{server}}/status")
async def get_server_status(server: str):
    return _get_monitor().get_server_status(server)


class AlwaysOffResponse(BaseModel):
    always_off: bool


class AlwaysOnResponse(BaseModel):
    always_on: bool


async def _mutate(coro) -> bool:
    try:
        return await coro
    except OSError as e:
        logger.error("failed to update override: %s", e)
        raise HTTPException(status_code=500, detail=f"failed to update override: {e}") from e


@app.get(f"{API_PREFIX}/server/{{server}}/always_off", response_model=AlwaysOffResponse)
async def get_always_off(server: str):
    return AlwaysOffResponse(always_off=_get_monitor().get_always_off(server))


@app.post(f"{API_PREFIX}/server/{{server}}/always_off", response_model=AlwaysOffResponse)
async def post_always_off(server: str):
    return AlwaysOffResponse(always_off=await _mutate(_get_monitor().set_always_off(server)))


@app.delete(f"{API_PREFIX}/server/{{server}}/always_off", response_model=AlwaysOffResponse)
async def delete_always_off(server: str):
    return AlwaysOffResponse(always_off=await _mutate(_get_monitor().clear_always_off(server)))


@app.get(f"{API_PREFIX}/server/{{server}}/always_on", response_model=AlwaysOnResponse)
async def get_always_on(server: str):
    return AlwaysOnResponse(always_on=_get_monitor().get_always_on(server))


@app.post(f"{API_PREFIX}/server/{{server}}/always_on", response_model=AlwaysOnResponse)
async def post_always_on(server: str):
    return AlwaysOnResponse(always_on=await _mutate(_get_monitor().set_always_on(server)))


@app.delete(f"{API_PREFIX}/server/{{server}}/always_on", response_model=AlwaysOnResponse)
async def delete_always_on(server: str):
    return AlwaysOnResponse(always_on=await _mutate(_get_monitor().clear_always_on(server)))


@app.put(f"{API_PREFIX}/server/{{server}}/wakeup")
async def put_wakeup(server: str):
    """Send a wake-on-lan packet now, regardless of the computed state."""
    return await _get_monitor().force_wakeup(server)


@app.put(f"{API_PREFIX}/server/{{server}}/shutdown")
async def put_shutdown(server: str):
    """Shut the server down now, regardless of the computed state."""
    return await _get_monitor().force_shutdown(server)


# --- Server ---

class EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the monitor process."""

    def install_signal_handlers(self):  # uvicorn < 0.29
        pass

    @contextlib.contextmanager
    def capture_signals(self):  # uvicorn >= 0.29
        yield


def create_server(host: str, port: int, log_level: Optional[str] = None) -> EmbeddedServer:
    """Build a uvicorn server for the app; serve it with ``await server.serve()``."""
    config = uvicorn.Config(
        app, host=host, port=port,
        log_level=(log_level or "info").lower(),
        log_config=None,  # keep our own logging configuration
    )
    return EmbeddedServer(config)
