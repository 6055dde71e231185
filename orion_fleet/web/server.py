"""FastAPI server exposing fleet operations.

Provides:
- GET /api/status - Version, sessions and active streams
- /api/sessions/... - Session, command, power and telemetry operations
- GET /api/devices/{device_id}/samples - Stored sample history
- WS /ws/telemetry - Every broadcast telemetry sample
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from orion_fleet import __version__
from orion_fleet.config import FleetSettings
from orion_fleet.fleet import FleetManager
from orion_fleet.ssh.transport import Credential
from orion_fleet.telemetry.store import DEFAULT_READ_LIMIT
from orion_fleet.utils.errors import ErrorKind, FleetError

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFIG: 400,
    ErrorKind.AUTH_FAILED: 401,
    ErrorKind.UNREACHABLE: 502,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.REMOTE_COMMAND_FAILED: 502,
    ErrorKind.PARSE: 502,
    ErrorKind.UNCATEGORIZED: 500,
}


class ConnectRequest(BaseModel):
    session_id: str = Field(..., min_length=1)
    credential: Credential


class ExecRequest(BaseModel):
    command: str = Field(..., min_length=1)
    timeout: Optional[float] = Field(None, gt=0)


class PowerModeRequest(BaseModel):
    mode: int = Field(..., ge=0)


class StreamRequest(BaseModel):
    interval: Optional[float] = Field(None, gt=0, description="Polling interval in seconds")
    device_id: Optional[str] = None


def error_response(error: FleetError) -> JSONResponse:
    status = ERROR_STATUS.get(error.kind, 500)
    return JSONResponse({"error": error.message, "kind": error.kind.value}, status_code=status)


def create_app(manager: Optional[FleetManager] = None) -> FastAPI:
    """Build the API application around a FleetManager.

    The manager is closed when the application shuts down.
    """
    fleet = manager or FleetManager()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting Orion Fleet API v{__version__}")
        yield
        logger.info("Shutting down, closing fleet manager")
        await fleet.close()

    app = FastAPI(title="Orion Fleet", version=__version__, lifespan=lifespan)
    app.state.fleet = fleet

    @app.exception_handler(FleetError)
    async def handle_fleet_error(request: Request, exc: FleetError):
        logger.debug(f"{request.method} {request.url.path} failed: {exc.kind.value}: {exc.message}")
        return error_response(exc)

    @app.get("/api/status")
    async def get_status():
        return {
            "version": __version__,
            "sessions": fleet.list_sessions(),
            "streams": fleet.streams.active(),
            "subscribers": fleet.broadcaster.subscriber_count,
        }

    @app.get("/api/probe")
    async def probe(host: str, port: int = Query(default=22, ge=1, le=65535)):
        return {"host": host, "port": port, "reachable": await fleet.probe(host, port)}

    @app.post("/api/sessions")
    async def connect_session(body: ConnectRequest):
        session_id = await fleet.connect(body.session_id, body.credential)
        return {"session_id": session_id}

    @app.get("/api/sessions")
    async def list_sessions():
        return {"sessions": fleet.list_sessions()}

    @app.get("/api/sessions/{session_id}")
    async def get_session(session_id: str):
        return {
            "session_id": session_id,
            "alive": fleet.is_alive(session_id),
            "streaming": fleet.streams.is_streaming(session_id),
        }

    @app.delete("/api/sessions/{session_id}")
    async def disconnect_session(session_id: str):
        await fleet.disconnect(session_id)
        return {"session_id": session_id, "disconnected": True}

    @app.post("/api/sessions/{session_id}/exec")
    async def exec_command(session_id: str, body: ExecRequest):
        result = await fleet.run(session_id, body.command, body.timeout)
        return result.to_dict()

    @app.get("/api/sessions/{session_id}/power-mode")
    async def get_power_mode(session_id: str):
        return {"session_id": session_id, "power_mode": await fleet.get_power_mode(session_id)}

    @app.put("/api/sessions/{session_id}/power-mode")
    async def set_power_mode(session_id: str, body: PowerModeRequest):
        await fleet.set_power_mode(session_id, body.mode)
        return {"session_id": session_id, "mode": body.mode}

    @app.post("/api/sessions/{session_id}/shutdown")
    async def shutdown(session_id: str):
        return {"session_id": session_id, "message": await fleet.shutdown(session_id)}

    @app.post("/api/sessions/{session_id}/reboot")
    async def reboot(session_id: str):
        await fleet.reboot(session_id)
        return {"session_id": session_id, "rebooting": True}

    @app.get("/api/sessions/{session_id}/system-info")
    async def get_system_info(session_id: str, refresh: bool = True):
        if refresh:
            info = await fleet.fetch_system_info(session_id)
        else:
            info = await fleet.get_stored_system_info(session_id)
            if info is None:
                return JSONResponse(
                    {"error": "no stored system info", "kind": ErrorKind.NOT_FOUND.value},
                    status_code=404,
                )
        return info.to_dict()

    @app.post("/api/sessions/{session_id}/sample")
    async def sample_once(session_id: str):
        sample = await fleet.sample_once(session_id)
        return sample.model_dump()

    @app.get("/api/devices/{device_id}/samples")
    async def get_samples(
        device_id: str,
        limit: int = Query(default=DEFAULT_READ_LIMIT, ge=1, le=10000),
        start_ts: Optional[int] = None,
        end_ts: Optional[int] = None,
    ):
        samples = await fleet.get_samples(device_id, limit=limit, start_ts=start_ts, end_ts=end_ts)
        return {"device_id": device_id, "samples": [s.model_dump() for s in samples]}

    @app.post("/api/sessions/{session_id}/stream")
    async def start_stream(session_id: str, body: Optional[StreamRequest] = None):
        body = body or StreamRequest()
        started = await fleet.start_stream(session_id, body.interval, device_id=body.device_id)
        return {"session_id": session_id, "started": started}

    @app.delete("/api/sessions/{session_id}/stream")
    async def stop_stream(session_id: str):
        return {"session_id": session_id, "stopped": await fleet.stop_stream(session_id)}

    @app.websocket("/ws/telemetry")
    async def telemetry_socket(websocket: WebSocket):
        """Forward every broadcast sample; answers "ping" with "pong"."""
        queue = fleet.subscribe()
        await websocket.accept()

        async def forward():
            while True:
                sample = await queue.get()
                await websocket.send_json({"type": "sample", **sample.model_dump()})

        forwarder = None
        try:
            await websocket.send_json({
                "type": "init",
                "sessions": fleet.list_sessions(),
                "streams": fleet.streams.active(),
            })
            forwarder = asyncio.create_task(forward())
            while True:
                data = await websocket.receive_text()
                if data == "ping":
                    await websocket.send_text("pong")
        except WebSocketDisconnect:
            pass
        finally:
            fleet.unsubscribe(queue)
            if forwarder is not None:
                forwarder.cancel()
                await asyncio.gather(forwarder, return_exceptions=True)

    return app


def run_server(
    host: str = "0.0.0.0",
    port: int = 8080,
    settings: Optional[FleetSettings] = None,
):
    """Run the API server until interrupted."""
    import uvicorn

    app = create_app(FleetManager(settings))
    uvicorn.run(app, host=host, port=port, log_level="info")
