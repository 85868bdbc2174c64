from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Mapping
from contextlib import aclosing
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import uvicorn
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from adbnet.activity import ActivityFeed
from adbnet.discovery import ADB_PORT, DeviceProbe, SubnetScanner
from adbnet.facade import ExecutionFacade, OperationKind, validate_custom_command
from adbnet.runner import ERROR_PREFIX, CommandRunner
from adbnet.settings import Settings, SettingsManager, app_dir
from adbnet.store import CommandStore, KeyEvent, KeyEventStore, SavedCommand

logger = logging.getLogger("adbnet")
logging.basicConfig(level=logging.INFO)

app = FastAPI(title="ADB Network Console")
activity = ActivityFeed()


def _cors_origins() -> list[str]:
    raw_origins = os.environ.get("FRONTEND_ORIGINS", "")
    if not raw_origins:
        return ["http://localhost:5173", "http://127.0.0.1:5173"]
    return [origin.strip() for origin in raw_origins.split(",") if origin.strip()]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@dataclass
class Services:
    settings: SettingsManager
    runner: CommandRunner
    facade: ExecutionFacade
    commands: CommandStore
    keys: KeyEventStore


def build_services(home: Path) -> Services:
    settings = SettingsManager(home / "settings.json")
    runner = CommandRunner(settings)
    probe = DeviceProbe(runner)
    scanner = SubnetScanner(probe)
    return Services(
        settings=settings,
        runner=runner,
        facade=ExecutionFacade(runner, probe, scanner),
        commands=CommandStore(home / "commands.json"),
        keys=KeyEventStore(home / "custom_keys.json"),
    )


_services: Services | None = None


def services() -> Services:
    global _services
    if _services is None:
        _services = build_services(app_dir())
    return _services


def configure(new_services: Services | None) -> None:
    global _services
    _services = new_services


class ConnectRequest(BaseModel):
    host: str = Field(..., min_length=1, description="Device IP or hostname")
    port: int = Field(ADB_PORT, gt=0, lt=65536)


class ConnectResponse(BaseModel):
    address: str
    connected: bool


class OperationRequest(BaseModel):
    args: dict[str, Any] = Field(default_factory=dict)


class OperationResponse(BaseModel):
    kind: str
    lines: list[str]


async def run_operation(kind: str, args: Mapping[str, Any]) -> list[str]:
    try:
        stream = services().facade.run_named_operation(kind, args)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    await activity.publish("command", f"Running {kind}")
    lines = [line async for line in stream]
    if lines and lines[-1].startswith(ERROR_PREFIX):
        await activity.publish("command", f"{kind} failed: {lines[-1]}", level="error")
    return lines


@app.get("/health")
async def health() -> dict[str, Any]:
    return {"status": "ok", "tool": services().settings.get_tool_path()}


@app.get("/api/settings", response_model=Settings)
async def get_settings() -> Settings:
    return services().settings.get()


@app.put("/api/settings", response_model=Settings)
async def update_settings(payload: Settings) -> Settings:
    saved = services().settings.save(payload)
    await activity.publish("settings", f"adb path set to {saved.adb_path}")
    return saved


@app.post("/api/connect", response_model=ConnectResponse)
async def connect_device(payload: ConnectRequest) -> ConnectResponse:
    try:
        connected = await services().facade.connect(payload.host, payload.port)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    address = f"{payload.host}:{payload.port}"
    await activity.publish(
        "connect",
        f"Connected to {address}" if connected else f"Unable to connect to {address}",
        level="info" if connected else "warning",
    )
    return ConnectResponse(address=address, connected=connected)


@app.post("/api/disconnect", response_model=ConnectResponse)
async def disconnect_device(payload: ConnectRequest) -> ConnectResponse:
    try:
        disconnected = await services().facade.disconnect(payload.host, payload.port)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ConnectResponse(address=f"{payload.host}:{payload.port}", connected=not disconnected)


@app.get("/api/devices/connected")
async def device_connected() -> dict[str, bool]:
    return {"connected": await services().facade.is_device_connected()}


@app.post("/api/operations/{kind}", response_model=OperationResponse)
async def operation(kind: str, payload: OperationRequest) -> OperationResponse:
    return OperationResponse(kind=kind, lines=await run_operation(kind, payload.args))


@app.get("/api/commands")
async def commands_list() -> dict[str, list[SavedCommand]]:
    return {"commands": services().commands.all()}


@app.post("/api/commands", response_model=SavedCommand)
async def commands_add(payload: SavedCommand) -> SavedCommand:
    try:
        command = validate_custom_command(payload.command)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return services().commands.add(payload.model_copy(update={"command": command}))


@app.delete("/api/commands/{command_id}")
async def commands_remove(command_id: str) -> dict[str, str]:
    if not services().commands.remove(command_id):
        raise HTTPException(status_code=404, detail="Command not found")
    return {"status": "deleted", "id": command_id}


@app.post("/api/commands/{command_id}/run", response_model=OperationResponse)
async def commands_run(command_id: str) -> OperationResponse:
    saved = services().commands.get(command_id)
    if saved is None:
        raise HTTPException(status_code=404, detail="Command not found")
    kind = OperationKind.CUSTOM.value
    return OperationResponse(kind=kind, lines=await run_operation(kind, {"command": saved.command}))


@app.get("/api/keys")
async def keys_list() -> dict[str, list[KeyEvent]]:
    return {"keys": services().keys.all()}


@app.post("/api/keys", response_model=KeyEvent)
async def keys_add(payload: KeyEvent) -> KeyEvent:
    return services().keys.add_custom(payload)


@app.delete("/api/keys/{key_id}")
async def keys_remove(key_id: str) -> dict[str, str]:
    if not services().keys.remove(key_id):
        raise HTTPException(status_code=404, detail="Custom key not found")
    return {"status": "deleted", "id": key_id}


@app.post("/api/keys/{key_id}/send", response_model=OperationResponse)
async def keys_send(key_id: str) -> OperationResponse:
    key = services().keys.get(key_id)
    if key is None:
        raise HTTPException(status_code=404, detail="Key not found")
    kind = OperationKind.KEY_EVENT.value
    return OperationResponse(kind=kind, lines=await run_operation(kind, {"code": key.key_code}))


async def _accept_from_allowed_origin(websocket: WebSocket) -> bool:
    # Browsers do not apply CORS to WebSockets, so check the handshake origin here.
    origin = websocket.headers.get("origin")
    if origin is not None and origin not in _cors_origins():
        logger.warning("Rejected websocket from origin %s", origin)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return False
    await websocket.accept()
    return True


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


async def _until_disconnect(websocket: WebSocket, work: Awaitable[None]) -> bool:
    """Run ``work`` until it finishes; False if the client left first."""
    worker = asyncio.ensure_future(work)
    watcher = asyncio.ensure_future(_wait_for_disconnect(websocket))
    try:
        done, _ = await asyncio.wait({worker, watcher}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (worker, watcher):
            task.cancel()
        await asyncio.gather(worker, watcher, return_exceptions=True)
    if worker not in done:
        return False
    error = worker.exception()
    if isinstance(error, WebSocketDisconnect):
        return False
    if error is not None:
        raise error
    return True


@app.websocket("/ws/scan")
async def websocket_scan(websocket: WebSocket) -> None:
    if not await _accept_from_allowed_origin(websocket):
        return
    await activity.publish("scan", "Network scan started")

    async def pump() -> None:
        async with aclosing(services().facade.scan_for_devices()) as scan:
            async for progress in scan:
                await websocket.send_json(progress.as_dict())
                if progress.done:
                    await activity.publish("scan", f"Scan complete: {len(progress.discovered)} device(s) found")

    if not await _until_disconnect(websocket, pump()):
        await activity.publish("scan", "Scan cancelled", level="warning")
        return
    await websocket.close()


@app.websocket("/ws/run")
async def websocket_run(websocket: WebSocket) -> None:
    if not await _accept_from_allowed_origin(websocket):
        return
    try:
        request = await websocket.receive_json()
    except WebSocketDisconnect:
        return
    if not isinstance(request, dict):
        request = {}
    try:
        stream = services().facade.run_named_operation(request.get("kind", ""), request.get("args") or {})
    except ValueError as exc:
        await websocket.send_json({"line": f"{ERROR_PREFIX}{exc}", "done": True})
        await websocket.close()
        return

    async def pump() -> None:
        async with aclosing(stream) as lines:
            async for line in lines:
                await websocket.send_json({"line": line})
        await websocket.send_json({"done": True})

    if await _until_disconnect(websocket, pump()):
        await websocket.close()


@app.websocket("/ws/logs")
async def websocket_logs(websocket: WebSocket) -> None:
    if not await _accept_from_allowed_origin(websocket):
        return
    await websocket.send_json({"source": "server", "level": "info", "message": "Connected to live logs"})

    async def pump() -> None:
        async with aclosing(activity.subscribe()) as events:
            async for event in events:
                await websocket.send_json(event)

    await _until_disconnect(websocket, pump())


def serve() -> None:
    uvicorn.run(
        app,
        host=os.environ.get("ADBNET_HOST", "127.0.0.1"),
        port=int(os.environ.get("ADBNET_PORT", "8000")),
        log_level="info",
    )


if __name__ == "__main__":
    serve()
