#!/usr/bin/env python3
"""
OBD Monitor Gateway Server

Exposes the session engine over HTTP so dashboards and phones can watch
live engine data and read or clear trouble codes without talking to the
adapter themselves.

Usage:
    python -m obd_monitor.server --port 8327

Endpoints:
    POST /connect        {"connection_type": "wifi", "address": "192.168.0.10:35000"}
    POST /demo           start the simulated adapter
    POST /disconnect
    GET  /status         full engine snapshot
    GET  /parameters     latest parameter samples
    GET  /dtcs           last scan result
    POST /dtcs/scan      read stored codes (waits for the result)
    POST /dtcs/clear     clear stored codes (waits for the result)
    WS   /ws             snapshot stream
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from . import __version__
from .config import (
    ConnectionConfig,
    ConnectionType,
    connection_from_config,
    load_config,
    timings_from_config,
)
from .engine import DiagnosticResult, EngineSnapshot, SessionEngine
from .errors import (
    NotConnectedError,
    OperationInProgressError,
    ProtocolTimeoutError,
    TransportError,
    VehicleRejectedError,
)
from .transport import create_transport

logger = logging.getLogger(__name__)

# Global engine instance, created by the lifespan handler
_engine: Optional[SessionEngine] = None
# Loaded by main() or on first startup
_config: Optional[dict] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle."""
    global _engine, _config
    logger.info("OBD Monitor gateway starting...")
    if _config is None:
        _config = load_config()
    _engine = SessionEngine(
        timings=timings_from_config(_config),
        fetch_freeze_frame=bool(_config.get("fetch_freeze_frame", True)),
    )
    async with _engine:
        yield
    logger.info("Engine closed on shutdown")
    _engine = None


app = FastAPI(
    title="OBD Monitor",
    description="HTTP gateway for an ELM327 live-data and trouble-code engine",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Local network dashboards
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class ConnectRequest(BaseModel):
    connection_type: Optional[str] = None  # wifi, ble, serial, demo; default from config
    address: Optional[str] = None  # IP[:port], BLE address/name, or serial device
    port: Optional[int] = None
    baudrate: Optional[int] = None


def _require_engine() -> SessionEngine:
    if _engine is None:
        raise HTTPException(status_code=503, detail="Engine not running")
    return _engine


def _raise_for_result(result: DiagnosticResult) -> None:
    """Map a failed diagnostic result to an HTTP error."""
    if result.ok:
        return
    error = result.error
    if isinstance(error, (NotConnectedError, TransportError)):
        status = 400
    elif isinstance(error, OperationInProgressError):
        status = 409
    elif isinstance(error, VehicleRejectedError):
        status = 502
    elif isinstance(error, ProtocolTimeoutError):
        status = 504
    else:
        status = 500
    raise HTTPException(status_code=status, detail=result.message)


def _configured_connection() -> ConnectionConfig:
    try:
        return connection_from_config(_config or {})
    except ValueError as e:
        logger.warning(f"Ignoring configured connection: {e}")
        return ConnectionConfig()


def _connection_for(req: ConnectRequest) -> ConnectionConfig:
    """Configured connection settings, overlaid with what the request sets."""
    configured = _configured_connection()
    try:
        connection_type = ConnectionType((req.connection_type or configured.connection_type.value).lower())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown connection type: {req.connection_type}")

    options = {}
    # Configured address/port only apply to the configured connection type
    if connection_type == configured.connection_type:
        options = {
            "address": configured.address,
            "port": configured.port,
            "baudrate": configured.baudrate,
        }
    elif connection_type != ConnectionType.WIFI:
        options["address"] = ""
    if req.address:
        options["address"] = req.address
    if req.port:
        options["port"] = req.port
    if req.baudrate:
        options["baudrate"] = req.baudrate

    if connection_type in (ConnectionType.BLE, ConnectionType.SERIAL) and not options.get("address"):
        raise HTTPException(
            status_code=400,
            detail=f"An address is required for {connection_type.value} connections",
        )
    return ConnectionConfig(connection_type=connection_type, **options)


# =============================================================================
# Connection
# =============================================================================

@app.get("/")
async def root():
    """Gateway status page."""
    snapshot = _require_engine().snapshot()
    return {
        "service": "OBD Monitor",
        "version": __version__,
        "state": snapshot.state.value,
        "connected": snapshot.connected,
        "demo": snapshot.demo,
        "endpoints": {
            "connect": "POST /connect",
            "demo": "POST /demo",
            "disconnect": "POST /disconnect",
            "status": "GET /status",
            "parameters": "GET /parameters",
            "dtcs": "GET /dtcs",
            "scan": "POST /dtcs/scan",
            "clear": "POST /dtcs/clear",
            "websocket": "WS /ws",
        },
    }


@app.post("/connect")
async def connect(req: ConnectRequest):
    """
    Connect to an ELM327 adapter. Returns once the attempt has started.

    Fields left out of the request come from the config file.
    """
    engine = _require_engine()
    config = _connection_for(req)

    engine.connect(create_transport(config))
    logger.info(f"Connect requested: {config.connection_type.value} {config.address}")
    return {
        "status": engine.state.value,
        "connection_type": config.connection_type.value,
        "address": config.address,
    }


@app.post("/demo")
async def start_demo():
    """Switch to the simulated adapter, dropping any real connection."""
    engine = _require_engine()
    engine.start_demo()
    return {"status": engine.state.value, "demo": True}


@app.post("/disconnect")
async def disconnect():
    """Disconnect from the adapter."""
    engine = _require_engine()
    engine.disconnect()
    return {"status": "disconnected"}


# =============================================================================
# Live data and trouble codes
# =============================================================================

@app.get("/status")
async def status():
    return _require_engine().snapshot().to_dict()


@app.get("/parameters")
async def parameters():
    """Latest value of every catalog parameter."""
    return {"parameters": [s.to_dict() for s in _require_engine().parameters]}


@app.get("/dtcs")
async def dtcs():
    """Trouble codes from the most recent scan."""
    snapshot = _require_engine().snapshot()
    return {
        "dtcs": [d.to_dict() for d in snapshot.dtcs],
        "count": len(snapshot.dtcs),
        "last_scan": snapshot.last_scan.isoformat() if snapshot.last_scan else None,
    }


@app.post("/dtcs/scan")
async def scan_dtcs():
    """Read stored trouble codes (mode 03)."""
    result = await _require_engine().scan_codes()
    _raise_for_result(result)
    return result.to_dict()


@app.post("/dtcs/clear")
async def clear_dtcs():
    """Clear stored trouble codes and the MIL (mode 04)."""
    result = await _require_engine().clear_codes()
    _raise_for_result(result)
    return result.to_dict()


# =============================================================================
# WebSocket
# =============================================================================

@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """
    Stream engine snapshots.

    Receive: a snapshot dict on every change
    Send: {"action": "scan"} / {"action": "clear"} / {"action": "snapshot"}
    """
    engine = _require_engine()
    await websocket.accept()
    logger.info("WebSocket client connected")

    updates: asyncio.Queue = asyncio.Queue(maxsize=1)

    def on_snapshot(snapshot: EngineSnapshot) -> None:
        # Keep only the newest snapshot for slow clients
        if updates.full():
            updates.get_nowait()
        updates.put_nowait(snapshot)

    unsubscribe = engine.subscribe(on_snapshot)
    try:
        await websocket.send_json(engine.snapshot().to_dict())
        while True:
            try:
                data = await asyncio.wait_for(websocket.receive_json(), timeout=0.1)
                action = data.get("action")
                if action == "scan":
                    result = await engine.scan_codes()
                    await websocket.send_json({"result": result.to_dict()})
                elif action == "clear":
                    result = await engine.clear_codes()
                    await websocket.send_json({"result": result.to_dict()})
                elif action == "snapshot":
                    await websocket.send_json(engine.snapshot().to_dict())
                else:
                    await websocket.send_json({"error": f"Unknown action: {action}"})
            except asyncio.TimeoutError:
                pass  # No message, continue streaming

            while not updates.empty():
                await websocket.send_json(updates.get_nowait().to_dict())
    except WebSocketDisconnect:
        logger.info("WebSocket client disconnected")
    finally:
        unsubscribe()


# =============================================================================
# Main Entry Point
# =============================================================================

def main(argv=None) -> None:
    import argparse
    import uvicorn

    global _config

    parser = argparse.ArgumentParser(description="OBD Monitor gateway")
    parser.add_argument("--host", default=None, help="Host to bind to")
    parser.add_argument("--port", type=int, default=None, help="Port to listen on")
    parser.add_argument("--config", default=None, help="Path to config.json")
    parser.add_argument("--log-level", default="INFO", help="DEBUG, INFO, WARNING, ...")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    _config = load_config(args.config)
    host = args.host or _config.get("server_host", "127.0.0.1")
    port = args.port or int(_config.get("server_port", 8327))

    logger.info(f"OBD Monitor gateway on http://{host}:{port}")
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()
