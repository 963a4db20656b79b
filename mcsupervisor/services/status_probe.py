# mcsupervisor/services/status_probe.py
"""
External Minecraft Status Probe

Handles:
- Java Edition Server List Ping (TCP)
- Bedrock Edition Unconnected Ping (UDP)
- Racing both protocols and keeping the first successful answer
- Short-lived result cache keyed by host:port
"""

import asyncio
import json
import logging
import random
import struct
import threading
import time
from dataclasses import dataclass, asdict, field
from typing import Any, Iterable, Optional

from mcsupervisor.core.config import PROBE_CACHE_TTL_SECONDS, PROBE_TIMEOUT_SECONDS
from mcsupervisor.services.packet_codec import (
    ProtocolError, StatusResponseReader, UNCONNECTED_PONG,
    build_handshake_packet, build_status_request_packet,
    build_unconnected_ping, parse_unconnected_pong,
)

logger = logging.getLogger(__name__)

DEFAULT_PORT = 25565
DEFAULT_DESCRIPTION = "A Minecraft Server"
READ_CHUNK_SIZE = 4096


class ProbeTimeout(Exception):
    """A single protocol attempt did not answer in time. Never leaves this module."""


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of one external status query"""
    host: str
    port: int
    protocol_used: str = "none"
    online: bool = False
    players_online: Optional[int] = None
    players_max: Optional[int] = None
    version_name: Optional[str] = None
    latency_ms: Optional[float] = None
    fetched_at: float = 0.0
    # Java only
    description: Optional[dict] = None
    players_sample: tuple = field(default_factory=tuple)
    version_protocol: Optional[int] = None
    favicon: Optional[str] = None
    # Bedrock only
    edition: Optional[str] = None
    motd: Optional[str] = None
    server_guid: Optional[int] = None

    @classmethod
    def offline(cls, host: str, port: int) -> "ProbeResult":
        return cls(host=host, port=port, fetched_at=time.time())

    def to_dict(self) -> dict:
        data = asdict(self)
        data["players_sample"] = list(self.players_sample)
        return data


def normalize_description(description: Any) -> dict:
    """Reduce the MOTD to ``{text, extra}`` regardless of which form the server sent."""
    if isinstance(description, str):
        return {"text": description, "extra": []}
    if isinstance(description, dict):
        if "text" in description:
            return {"text": str(description["text"]), "extra": list(description.get("extra") or [])}
        if "extra" in description:
            return {"text": "", "extra": list(description["extra"] or [])}
    return {"text": DEFAULT_DESCRIPTION, "extra": []}


def _int_field(value: Any, default: int) -> int:
    # Proxies and modded servers send null, strings or floats here
    try:
        return int(value or default)
    except (TypeError, ValueError):
        return default


def parse_java_status(host: str, port: int, status: dict, latency_ms: float) -> ProbeResult:
    """Map a status JSON object onto a ProbeResult, tolerating missing or null fields."""
    players = status.get("players")
    if not isinstance(players, dict):
        players = {}
    version = status.get("version")
    if not isinstance(version, dict):
        version = {}
    sample = players.get("sample") or []
    favicon = status.get("favicon")
    return ProbeResult(
        host=host,
        port=port,
        protocol_used="java",
        online=True,
        players_online=max(0, _int_field(players.get("online"), 0)),
        players_max=max(0, _int_field(players.get("max"), 0)),
        version_name=str(version.get("name") or "Unknown"),
        latency_ms=round(latency_ms, 2),
        fetched_at=time.time(),
        description=normalize_description(status.get("description")),
        players_sample=tuple(sample) if isinstance(sample, list) else (),
        version_protocol=_int_field(version.get("protocol"), -1),
        favicon=favicon if isinstance(favicon, str) else None,
    )


class _PongProtocol(asyncio.DatagramProtocol):
    """Sends one Unconnected Ping and resolves ``reply`` with the first pong."""

    def __init__(self, ping: bytes):
        self.ping = ping
        self.transport: Optional[asyncio.DatagramTransport] = None
        self.sent_at = 0.0
        self.reply: asyncio.Future = asyncio.get_running_loop().create_future()

    def connection_made(self, transport):
        self.transport = transport
        self.sent_at = time.perf_counter()
        transport.sendto(self.ping)

    def datagram_received(self, data, addr):
        if data[:1] == bytes([UNCONNECTED_PONG]) and not self.reply.done():
            self.reply.set_result((data, time.perf_counter()))

    def error_received(self, exc):
        if not self.reply.done():
            self.reply.set_exception(exc)

    def connection_lost(self, exc):
        if not self.reply.done():
            self.reply.cancel()


class StatusProbe:
    """Dual-protocol status client with a TTL cache (replaces ad hoc socket callbacks)."""

    def __init__(
        self,
        cache_ttl: float = PROBE_CACHE_TTL_SECONDS,
        default_timeout: float = PROBE_TIMEOUT_SECONDS,
    ):
        self.cache_ttl = cache_ttl
        self.default_timeout = default_timeout
        self._cache: dict[str, tuple[float, ProbeResult]] = {}
        self._cache_lock = threading.Lock()
        self._client_guid = random.getrandbits(64)

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def _purge_expired(self, now: float) -> None:
        """Drop every expired entry. Caller holds ``_cache_lock``."""
        expired = [key for key, (stored_at, _) in self._cache.items() if now - stored_at >= self.cache_ttl]
        for key in expired:
            self._cache.pop(key, None)

    def _cache_get(self, key: str) -> Optional[ProbeResult]:
        now = time.monotonic()
        with self._cache_lock:
            self._purge_expired(now)
            entry = self._cache.get(key)
            return entry[1] if entry is not None else None

    def _cache_put(self, key: str, result: ProbeResult) -> None:
        now = time.monotonic()
        with self._cache_lock:
            self._purge_expired(now)
            self._cache[key] = (now, result)

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()

    def cache_stats(self) -> dict:
        now = time.monotonic()
        with self._cache_lock:
            self._purge_expired(now)
            entries = [
                {"key": key, "age_seconds": round(now - stored_at, 3), "data": result.to_dict()}
                for key, (stored_at, result) in self._cache.items()
            ]
        return {"size": len(entries), "ttl_seconds": self.cache_ttl, "entries": entries}

    # ------------------------------------------------------------------
    # Protocol attempts
    # ------------------------------------------------------------------

    async def _java_status(self, host: str, port: int) -> ProbeResult:
        reader, writer = await asyncio.open_connection(host, port)
        try:
            started = time.perf_counter()
            writer.write(build_handshake_packet(host, port) + build_status_request_packet())
            await writer.drain()

            response = StatusResponseReader()
            payload = None
            while payload is None:
                chunk = await reader.read(READ_CHUNK_SIZE)
                if not chunk:
                    raise ConnectionError(
                        f"Connection closed after {response.buffered} bytes, before a full status packet"
                    )
                payload = response.feed(chunk)
            latency_ms = (time.perf_counter() - started) * 1000
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (OSError, ConnectionError):
                pass

        status = json.loads(payload)
        if not isinstance(status, dict):
            raise ProtocolError("Status payload is not a JSON object")
        return parse_java_status(host, port, status, latency_ms)

    async def _bedrock_status(self, host: str, port: int) -> ProbeResult:
        loop = asyncio.get_running_loop()
        ping = build_unconnected_ping(int(time.time() * 1000), self._client_guid)
        transport, protocol = await loop.create_datagram_endpoint(
            lambda: _PongProtocol(ping), remote_addr=(host, port)
        )
        try:
            data, received_at = await protocol.reply
        finally:
            transport.close()

        pong = parse_unconnected_pong(data)
        return ProbeResult(
            host=host,
            port=port,
            protocol_used="bedrock",
            online=True,
            players_online=pong.players_online,
            players_max=pong.players_max,
            version_name=pong.version_name or "Unknown",
            latency_ms=round((received_at - protocol.sent_at) * 1000, 2),
            fetched_at=time.time(),
            version_protocol=pong.protocol_version,
            edition=pong.edition,
            motd=pong.motd,
            server_guid=pong.server_guid,
        )

    async def _bounded(self, name: str, attempt, host: str, port: int, timeout: float) -> ProbeResult:
        try:
            return await asyncio.wait_for(attempt(host, port), timeout)
        except asyncio.TimeoutError as e:
            raise ProbeTimeout(f"{name} probe of {host}:{port} timed out after {timeout}s") from e

    async def _race(self, host: str, port: int, timeout: float) -> ProbeResult:
        """Run both attempts; first success wins, the loser is always cancelled and awaited."""
        attempts = {
            asyncio.create_task(self._bounded("java", self._java_status, host, port, timeout)): "java",
            asyncio.create_task(self._bounded("bedrock", self._bedrock_status, host, port, timeout)): "bedrock",
        }
        pending = set(attempts)
        try:
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                # Java wins ties
                for task in sorted(done, key=lambda t: attempts[t] != "java"):
                    if task.cancelled():
                        continue
                    exc = task.exception()
                    if exc is not None:
                        logger.debug(f"{attempts[task]} probe of {host}:{port} failed: {exc!r}")
                        continue
                    return task.result()
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        return ProbeResult.offline(host, port)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def probe(self, host: str, port: int = DEFAULT_PORT, timeout: Optional[float] = None) -> ProbeResult:
        """Query ``host:port`` over both protocols. Never raises for transport failures."""
        key = f"{host}:{port}"
        cached = self._cache_get(key)
        if cached is not None:
            return cached

        timeout = self.default_timeout if timeout is None else max(0.0, float(timeout))
        result = await self._race(host, port, timeout)
        if result.online:
            logger.info(f"Probe {key}: online via {result.protocol_used} ({result.latency_ms} ms)")
        else:
            logger.info(f"Probe {key}: offline")
        self._cache_put(key, result)
        return result

    async def ping_latency(self, host: str, port: int = DEFAULT_PORT, timeout: Optional[float] = None) -> float:
        """Java round-trip latency in ms, or -1 if the server does not answer."""
        timeout = self.default_timeout if timeout is None else timeout
        try:
            result = await self._bounded("java", self._java_status, host, port, timeout)
        except (ProbeTimeout, ProtocolError, OSError, ValueError, TypeError, struct.error) as e:
            logger.debug(f"Latency ping of {host}:{port} failed: {e!r}")
            return -1
        return result.latency_ms

    async def probe_many(self, targets: Iterable[dict], timeout: Optional[float] = None) -> list[dict]:
        """Probe several ``{"host", "port"}`` targets concurrently, preserving order."""
        targets = list(targets)
        results = await asyncio.gather(*(
            self.probe(t["host"], int(t.get("port", DEFAULT_PORT)), timeout) for t in targets
        ))
        return [{**t, "status": r.to_dict()} for t, r in zip(targets, results)]


# =============================================================================
# Singleton + module-level API
# =============================================================================

_probe = StatusProbe()


async def probe_external(host: str, port: int = DEFAULT_PORT, timeout: Optional[float] = None) -> ProbeResult:
    return await _probe.probe(host, port, timeout)

async def ping_latency(host: str, port: int = DEFAULT_PORT, timeout: Optional[float] = None) -> float:
    return await _probe.ping_latency(host, port, timeout)

async def probe_many(targets: Iterable[dict], timeout: Optional[float] = None) -> list[dict]:
    return await _probe.probe_many(targets, timeout)

def clear_cache() -> None:
    _probe.clear_cache()

def get_cache_stats() -> dict:
    return _probe.cache_stats()
