#!/usr/bin/env python3
"""
OBD Link Gateway Server

Exposes one ELM327 adapter session over a REST API and a WebSocket feed of
live readings, so phones and dashboards can use the adapter without pairing
with it directly.

Usage:
    python -m obd_link.server --port 8327
"""

import argparse
import logging
import platform
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from . import __version__
from .autodetect import detect_adapter, list_candidate_ports
from .config import Timings, load_config, setup_logging
from .errors import OBDLinkError
from .service import OBDLinkService

logger = logging.getLogger(__name__)

# Global adapter session
_service: Optional[OBDLinkService] = None
_connected_at: Optional[datetime] = None
_config: dict = load_config()


# =============================================================================
# Pydantic Models
# =============================================================================

class ConnectRequest(BaseModel):
    # Fields left out fall back to adapter_type, adapter_port and baudrate in the config
    connection_type: Optional[str] = None  # serial, bluetooth, usb, wifi
    address: Optional[str] = None  # /dev/rfcomm0, COM4, 192.168.0.10:35000; None = auto-detect
    baudrate: Optional[int] = None


class MonitorRequest(BaseModel):
    high: List[str] = []
    medium: List[str] = []
    low: List[str] = []
    period_ms: Optional[float] = None  # None = poll_period_ms from the config


# =============================================================================
# FastAPI App
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Close any adapter session when the server stops."""
    logger.info("OBD Link gateway starting...")
    yield
    global _service
    if _service is not None:
        await _service.disconnect()
        _service = None
        logger.info("Disconnected adapter on shutdown")


app = FastAPI(
    title="OBD Link Gateway",
    description="HTTP bridge for ELM327 OBD-II adapters",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _require_connection() -> OBDLinkService:
    """Current session, or 400 when no adapter is attached."""
    if _service is None or not _service.connected:
        raise HTTPException(status_code=400, detail="No adapter session. POST /connect first.")
    return _service


# =============================================================================
# Status & Connection
# =============================================================================

@app.get("/")
async def root():
    """Gateway status."""
    connected = _service is not None and _service.connected
    uptime = None
    if connected and _connected_at:
        uptime = str(datetime.now() - _connected_at).split('.')[0]

    scheduler = _service.scheduler if connected else None
    return {
        "service": "OBD Link Gateway",
        "version": __version__,
        "connected": connected,
        "uptime": uptime,
        "vin": _service.vin if connected else None,
        "polling": scheduler.state.value if scheduler else None,
        "endpoints": {
            "ports": "GET /ports",
            "connect": "POST /connect",
            "disconnect": "POST /disconnect",
            "vin": "GET /vin",
            "supported_pids": "GET /supported-pids",
            "pid": "GET /pids/{pid}",
            "readings": "GET /readings",
            "monitor_start": "POST /monitor/start",
            "monitor_stop": "POST /monitor/stop",
            "dtcs": "GET /dtcs",
            "clear_dtcs": "POST /clear-dtcs",
            "websocket": "WS /ws",
        },
    }


@app.get("/ports")
async def list_ports():
    """List candidate serial ports."""
    return {
        "platform": platform.system(),
        "ports": list_candidate_ports(),
        "hint": "Windows: COMx | Linux: /dev/rfcomm0 | WiFi: 192.168.0.10:35000",
    }


@app.post("/connect")
async def connect(req: ConnectRequest):
    """Connect to the adapter, auto-detecting the serial port if no address is given."""
    global _service, _connected_at

    if _service is not None and _service.connected:
        logger.info(f"Already connected, skipping reconnection (VIN: {_service.vin})")
        return {
            "status": "connected",
            "vin": _service.vin,
            "supported_pids": await _service.supported_pids(),
        }

    timings = Timings.from_config(_config)
    address = req.address or _config.get("adapter_port") or None
    connection_type = req.connection_type or _config.get("adapter_type") or "serial"

    if address is None and connection_type != "wifi":
        detected = await detect_adapter(timings)
        if detected is None:
            raise HTTPException(status_code=404, detail="No ELM327 adapter found")
        address = detected.port

    kwargs = {}
    baudrate = req.baudrate or _config.get("baudrate")
    if baudrate:
        kwargs["baudrate"] = int(baudrate)

    service = OBDLinkService(timings)
    try:
        success = await service.connect(connection_type, address, **kwargs)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except OBDLinkError as e:
        logger.error(f"Connect to {address} failed: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    if not success:
        raise HTTPException(status_code=500, detail=f"Adapter on {address} did not respond")

    _service = service
    _connected_at = datetime.now()
    return {
        "status": "connected",
        "address": address,
        "vin": service.vin,
        "supported_pids": await service.supported_pids(),
    }


@app.post("/disconnect")
async def disconnect():
    """Disconnect from the adapter."""
    global _service, _connected_at

    if _service is not None:
        await _service.disconnect()
        _service = None
        _connected_at = None
        return {"status": "disconnected"}

    return {"status": "already disconnected"}


# =============================================================================
# Data Reading Endpoints
# =============================================================================

@app.get("/vin")
async def read_vin():
    """VIN of the connected vehicle, null when it does not report one."""
    service = _require_connection()
    try:
        return {"vin": await service.read_vin()}
    except OBDLinkError as e:
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/supported-pids")
async def supported_pids(refresh: bool = False):
    service = _require_connection()
    return {"pids": await service.supported_pids(force=refresh)}


@app.get("/pids/{pid}")
async def read_pid(pid: str):
    """Read one sensor now."""
    service = _require_connection()
    try:
        reading = await service.read_sensor(pid)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return reading.to_dict()


@app.get("/readings")
async def latest_readings():
    """Latest reading per PID from the polling loop."""
    service = _require_connection()
    return {pid: reading.to_dict() for pid, reading in service.latest_readings().items()}


@app.post("/monitor/start")
async def start_monitoring(req: MonitorRequest):
    """Start prioritized polling; empty sets and a missing period fall back to the config."""
    service = _require_connection()

    high, medium, low = req.high, req.medium, req.low
    if not (high or medium or low):
        priorities = _config.get("priorities", {})
        high = priorities.get("high", [])
        medium = priorities.get("medium", [])
        low = priorities.get("low", [])

    period_ms = req.period_ms if req.period_ms is not None else _config.get("poll_period_ms", 500)
    await service.start_monitoring(high, medium, low, float(period_ms))
    scheduler = service.scheduler
    return {
        "status": scheduler.state.value,
        "sequence": list(scheduler.cycle.sequence),
        "period_ms": scheduler.period_ms,
    }


@app.post("/monitor/stop")
async def stop_monitoring():
    service = _require_connection()
    await service.stop_monitoring()
    return {"status": "stopped"}


@app.get("/dtcs")
async def read_dtcs():
    """Stored trouble codes, served from cache when the adapter is unreachable."""
    service = _require_connection()
    result = await service.read_dtcs()
    return result.to_dict()


@app.post("/clear-dtcs")
async def clear_dtcs():
    """Clear DTCs and turn off MIL."""
    service = _require_connection()
    result = await service.clear_dtcs()
    if not result:
        raise HTTPException(status_code=500, detail=result.message)
    return result.to_dict()


# =============================================================================
# WebSocket
# =============================================================================

@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """
    WebSocket feed of live readings.

    Every reading the polling loop (or a single read) produces is sent as
    the JSON form of SensorReading.
    """
    await websocket.accept()

    if _service is None or not _service.connected:
        await websocket.send_json({"error": "Not connected"})
        await websocket.close()
        return

    service = _service
    queue = service.subscribe()
    logger.info("WebSocket client subscribed")

    try:
        while True:
            reading = await queue.get()
            await websocket.send_json(reading.to_dict())
    except WebSocketDisconnect:
        logger.info("WebSocket subscriber left")
    finally:
        service.unsubscribe(queue)


# =============================================================================
# Main Entry Point
# =============================================================================

def main():
    global _config

    parser = argparse.ArgumentParser(description="OBD Link Gateway")
    parser.add_argument("--host", default=None, help="Host to bind to")
    parser.add_argument("--port", type=int, default=None, help="Port to listen on")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ERROR")
    args = parser.parse_args()

    _config = load_config()
    setup_logging(args.log_level or _config.get("log_level", "INFO"))

    host = args.host or _config.get("gateway_host", "0.0.0.0")
    port = args.port or _config.get("gateway_port", 8327)
    logger.info(f"OBD Link gateway listening on http://{host}:{port}")

    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()
