# mcsupervisor/routers/probe.py
"""External status probe endpoints."""

import math
from typing import Any, Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from mcsupervisor.services import status_probe

router = APIRouter()

MAX_BATCH_TARGETS = 50


def _bad_request(error: str) -> JSONResponse:
    return JSONResponse({"success": False, "error": error}, status_code=400)


def _parse_port(value: Any) -> int:
    """Port as an int in 1..65535; raises ValueError otherwise."""
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise ValueError(f"invalid port: {value!r}")
    port = int(value)
    if not 0 < port < 65536:
        raise ValueError(f"port out of range: {port}")
    return port


def _parse_timeout(value: Any) -> Optional[float]:
    """Timeout in seconds, None for the default; raises ValueError if not a finite non-negative number."""
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"invalid timeout: {value!r}")
    timeout = float(value)
    if not math.isfinite(timeout) or timeout < 0:
        raise ValueError(f"timeout must be a non-negative number, got {value!r}")
    return timeout


@router.get("/api/probe")
async def probe_server(host: str, port: int = status_probe.DEFAULT_PORT, timeout: Optional[float] = None):
    """Query any server's status over the Java and Bedrock protocols"""
    try:
        port = _parse_port(port)
        timeout = _parse_timeout(timeout)
    except ValueError as e:
        return _bad_request(str(e))
    result = await status_probe.probe_external(host, port, timeout)
    return JSONResponse({"status": "ok", "result": result.to_dict()})


@router.get("/api/probe/latency")
async def probe_latency(host: str, port: int = status_probe.DEFAULT_PORT, timeout: Optional[float] = None):
    try:
        port = _parse_port(port)
        timeout = _parse_timeout(timeout)
    except ValueError as e:
        return _bad_request(str(e))
    latency = await status_probe.ping_latency(host, port, timeout)
    return JSONResponse({"status": "ok", "host": host, "port": port, "latency_ms": latency})


@router.post("/api/probe/batch")
async def probe_batch(request: Request):
    try:
        body = await request.json()
    except ValueError:
        return _bad_request("Invalid JSON body")

    targets = body.get("servers") if isinstance(body, dict) else None
    if not isinstance(targets, list) or not targets:
        return _bad_request("servers must be a non-empty list")
    if len(targets) > MAX_BATCH_TARGETS:
        return _bad_request(f"At most {MAX_BATCH_TARGETS} servers per batch")

    checked = []
    try:
        timeout = _parse_timeout(body.get("timeout"))
        for target in targets:
            if not isinstance(target, dict) or not isinstance(target.get("host"), str) or not target["host"].strip():
                raise ValueError("each server needs a host")
            port = _parse_port(target.get("port", status_probe.DEFAULT_PORT))
            checked.append({**target, "host": target["host"].strip(), "port": port})
    except ValueError as e:
        return _bad_request(str(e))

    results = await status_probe.probe_many(checked, timeout)
    return JSONResponse({"status": "ok", "count": len(results), "results": results})


@router.get("/api/probe/cache")
async def probe_cache_stats():
    return JSONResponse({"status": "ok", "cache": status_probe.get_cache_stats()})


@router.delete("/api/probe/cache")
async def clear_probe_cache():
    status_probe.clear_cache()
    return JSONResponse({"success": True})
