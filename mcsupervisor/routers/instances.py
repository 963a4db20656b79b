# mcsupervisor/routers/instances.py
"""
Instance lifecycle, console and log endpoints.

Thin HTTP/WebSocket adapter over the process supervisor service.
"""

import asyncio
import logging
import re
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from mcsupervisor.services import process_supervisor
from mcsupervisor.services.audit_log import audit_event, get_audit_logger
from mcsupervisor.services.instance_registry import (
    AlreadyRunning, LaunchConfig, NotFound, NotRunning, SpawnFailed, SupervisorError,
)

logger = logging.getLogger(__name__)

MAX_COMMAND_LENGTH = 256
HEARTBEAT_SECONDS = 30.0

router = APIRouter()

_ERROR_STATUS = {
    NotFound: 404,
    AlreadyRunning: 409,
    NotRunning: 409,
    SpawnFailed: 500,
}


def _error_response(exc: SupervisorError) -> JSONResponse:
    status_code = _ERROR_STATUS.get(type(exc), 400)
    return JSONResponse(
        {"success": False, "error": str(exc), "error_code": type(exc).__name__},
        status_code=status_code,
    )


def _actor(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _parse_launch_config(body: dict) -> LaunchConfig:
    """Build a LaunchConfig from a JSON body; raises ValueError on bad input."""
    working_directory = str(body.get("working_directory", "")).strip()
    if not working_directory:
        raise ValueError("working_directory is required")

    args = body.get("args") or []
    if not isinstance(args, list) or not all(isinstance(a, str) for a in args):
        raise ValueError("args must be a list of strings")

    kwargs = {
        "working_directory": working_directory,
        "command": body.get("command") or None,
        "args": tuple(args),
        "memory_limit_mb": int(body.get("memory_limit_mb", 4096)),
    }
    if body.get("jar_file"):
        kwargs["jar_file"] = str(body["jar_file"])
    if body.get("java_executable"):
        kwargs["java_executable"] = str(body["java_executable"])
    if kwargs["memory_limit_mb"] <= 0:
        raise ValueError("memory_limit_mb must be positive")
    return LaunchConfig(**kwargs)


@router.get("/api/instances")
async def list_instances():
    statuses = process_supervisor.list_statuses()
    return JSONResponse({
        "status": "ok",
        "count": len(statuses),
        "instances": [asdict(s) for s in statuses],
    })


@router.get("/api/instances/{instance_id}")
async def get_instance_status(instance_id: str):
    try:
        status = process_supervisor.get_instance_status(instance_id)
    except SupervisorError as e:
        return _error_response(e)
    return JSONResponse({"status": "ok", "instance": asdict(status)})


@router.post("/api/instances/{instance_id}/start")
async def start_instance(instance_id: str, request: Request):
    """Start an instance. The body carries the launch config; omit it to reuse the last one."""
    raw = await request.body()
    config = None
    if raw.strip():
        try:
            body = await request.json()
            if not isinstance(body, dict):
                raise ValueError("Body must be a JSON object")
            config = _parse_launch_config(body)
        except (ValueError, TypeError) as e:
            return JSONResponse({"success": False, "error": str(e)}, status_code=400)

    audit_logger = get_audit_logger()
    try:
        result = await process_supervisor.start_instance(instance_id, config)
    except SupervisorError as e:
        audit_event(logger=audit_logger, actor=_actor(request), action="start",
                    instance_id=instance_id, result="failed", extra={"error": str(e)})
        return _error_response(e)

    audit_event(logger=audit_logger, actor=_actor(request), action="start",
                instance_id=instance_id, result="ok", extra={"pid": result["pid"]})
    return JSONResponse(result)


@router.post("/api/instances/{instance_id}/stop")
async def stop_instance(instance_id: str, request: Request, grace_period: Optional[float] = None):
    audit_logger = get_audit_logger()
    try:
        result = await process_supervisor.stop_instance(instance_id, grace_period)
    except SupervisorError as e:
        audit_event(logger=audit_logger, actor=_actor(request), action="stop",
                    instance_id=instance_id, result="failed", extra={"error": str(e)})
        return _error_response(e)

    audit_event(logger=audit_logger, actor=_actor(request), action="stop",
                instance_id=instance_id, result="ok", extra={"forced": result["forced"]})
    return JSONResponse(result)


@router.post("/api/instances/{instance_id}/restart")
async def restart_instance(instance_id: str, request: Request):
    audit_logger = get_audit_logger()
    try:
        result = await process_supervisor.restart_instance(instance_id)
    except SupervisorError as e:
        audit_event(logger=audit_logger, actor=_actor(request), action="restart",
                    instance_id=instance_id, result="failed", extra={"error": str(e)})
        return _error_response(e)

    audit_event(logger=audit_logger, actor=_actor(request), action="restart",
                instance_id=instance_id, result="ok", extra={"pid": result["pid"]})
    return JSONResponse(result)


@router.post("/api/instances/{instance_id}/command")
async def send_instance_command(instance_id: str, request: Request):
    """Write a console command to the instance (fire-and-forget)."""
    try:
        body = await request.json()
    except ValueError:
        return JSONResponse({"success": False, "error": "Invalid JSON body"}, status_code=400)
    command = str(body.get("command", "") if isinstance(body, dict) else "").strip()

    # Strip control characters so one request is exactly one console line
    command = re.sub(r'[\x00-\x1f\x7f]', '', command)[:MAX_COMMAND_LENGTH]
    if not command:
        return JSONResponse({"success": False, "error": "No command provided"}, status_code=400)

    try:
        result = await process_supervisor.send_command(instance_id, command)
    except SupervisorError as e:
        return _error_response(e)

    audit_event(logger=get_audit_logger(), actor=_actor(request), action="command",
                instance_id=instance_id, result="sent", extra={"command": command[:100]})
    return JSONResponse(result)


@router.delete("/api/instances/{instance_id}")
async def evict_instance(instance_id: str, request: Request):
    try:
        await process_supervisor.evict_instance(instance_id)
    except SupervisorError as e:
        return _error_response(e)
    audit_event(logger=get_audit_logger(), actor=_actor(request), action="evict",
                instance_id=instance_id, result="ok")
    return JSONResponse({"success": True, "evicted": instance_id})


@router.get("/api/instances/{instance_id}/logs")
async def get_instance_logs(instance_id: str, lines: int = 100, offset: int = 0):
    """Get console entries with pagination support"""
    try:
        logs = process_supervisor.get_recent_logs(instance_id, lines, offset=offset)
    except SupervisorError as e:
        return _error_response(e)
    return JSONResponse({
        "status": "ok",
        "count": len(logs),
        "logs": logs,
        "has_more": len(logs) == lines,
    })


@router.websocket("/ws/instances/{instance_id}/console")
async def websocket_console(websocket: WebSocket, instance_id: str):
    """WebSocket endpoint for real-time console streaming"""
    await websocket.accept()

    log_queue: asyncio.Queue = asyncio.Queue()

    async def log_callback(log_entry):
        await log_queue.put(log_entry)

    # Subscribe first so nothing emitted during the backlog send is lost
    try:
        process_supervisor.subscribe_to_logs(instance_id, log_callback)
    except NotFound as e:
        await websocket.send_json({"type": "error", "error": str(e)})
        await websocket.close(code=4404)
        return

    try:
        backlog = process_supervisor.get_recent_logs(instance_id, 50)
        last_seq = 0
        for entry in backlog:
            await websocket.send_json(entry)
            last_seq = max(last_seq, entry.get("seq", 0))

        while True:
            try:
                log_entry = await asyncio.wait_for(log_queue.get(), timeout=HEARTBEAT_SECONDS)
                # Queued while the backlog was being read
                if log_entry.get("seq", 0) <= last_seq:
                    continue
                await websocket.send_json(log_entry)
            except asyncio.TimeoutError:
                await websocket.send_json({"type": "heartbeat"})

    except WebSocketDisconnect:
        pass
    finally:
        try:
            process_supervisor.unsubscribe_from_logs(instance_id, log_callback)
        except NotFound:
            pass
