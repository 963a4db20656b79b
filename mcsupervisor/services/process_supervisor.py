# mcsupervisor/services/process_supervisor.py
"""
Minecraft Server Process Supervisor

Handles:
- Starting/stopping/restarting supervised server processes
- Stop escalation (stop directive -> grace period -> kill)
- Console streaming and status inference from log lines
- Command injection through the process stdin
- Per-instance state machine (created/starting/online/stopping/stopped/crashed)
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

import psutil

from mcsupervisor.core.config import RESTART_SETTLE_SECONDS, STOP_DIRECTIVE, STOP_GRACE_SECONDS
from mcsupervisor.services.instance_registry import (
    AlreadyRunning, DEFAULT_MAX_PLAYERS, InstanceRecord, InstanceRegistry,
    InstanceState, LaunchConfig, NOMINAL_TPS, NotRunning, SpawnFailed,
    STOPPABLE_STATES, snapshot,
)
from mcsupervisor.services.log_classifier import LogEventKind, classify, parse_console_line

logger = logging.getLogger(__name__)

# Max bytes per console line before the reader skips it
STREAM_LIMIT = 1024 * 1024


@dataclass
class InstanceStatus:
    """Status record handed to reporting collaborators"""
    id: str
    state: str
    online: bool = False
    pid: Optional[int] = None
    players_online: int = 0
    players_max: int = DEFAULT_MAX_PLAYERS
    ticks_per_second: float = NOMINAL_TPS
    last_transition_at: Optional[str] = None
    started_at: Optional[str] = None
    uptime_seconds: Optional[int] = None
    forced: bool = False
    exit_code: Optional[int] = None
    player_names: list = field(default_factory=list)
    cpu_percent: Optional[float] = None
    memory_mb: Optional[float] = None


def load_server_properties(directory: Path) -> dict:
    """Load server.properties from an instance working directory"""
    props = {}
    properties_file = Path(directory) / "server.properties"
    if properties_file.exists():
        with open(properties_file, "r", encoding="utf-8", errors="ignore") as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith("#") and "=" in line:
                    key, value = line.split("=", 1)
                    props[key.strip()] = value.strip()
    return props


def read_max_players(directory: Path) -> int:
    try:
        props = load_server_properties(directory)
    except OSError as e:
        logger.warning(f"Could not read server.properties in {directory}: {e}")
        return DEFAULT_MAX_PLAYERS
    try:
        return max(0, int(props.get("max-players", DEFAULT_MAX_PLAYERS)))
    except ValueError:
        return DEFAULT_MAX_PLAYERS


def _marker(message: str) -> dict:
    return {
        "time": datetime.now().strftime("%H:%M:%S"),
        "level": "info",
        "message": f"[SUPERVISOR] {message}",
    }


class ProcessSupervisor:
    """Owns every supervised process; all Instance mutation goes through here."""

    def __init__(
        self,
        registry: Optional[InstanceRegistry] = None,
        stop_grace_seconds: float = STOP_GRACE_SECONDS,
        restart_settle_seconds: float = RESTART_SETTLE_SECONDS,
    ):
        self.registry = registry if registry is not None else InstanceRegistry()
        self.stop_grace_seconds = stop_grace_seconds
        self.restart_settle_seconds = restart_settle_seconds

    # ------------------------------------------------------------------
    # State & console plumbing
    # ------------------------------------------------------------------

    @staticmethod
    def _transition(record: InstanceRecord, state: InstanceState) -> None:
        instance = record.instance
        previous = instance.state
        instance.state = state
        instance.last_transition_at = datetime.now()
        logger.info(f"[{instance.id}] {previous.value} -> {state.value}")

    @staticmethod
    async def _emit(record: InstanceRecord, entry: dict) -> None:
        record.log_seq += 1
        entry["seq"] = record.log_seq
        record.log_buffer.append(entry)
        for callback in list(record.log_subscribers):
            try:
                await callback(entry)
            except Exception as e:
                logger.debug(f"[{record.instance.id}] log subscriber failed: {e}")

    @staticmethod
    async def _write_line(record: InstanceRecord, text: str) -> None:
        process = record.process
        if process is None or process.stdin is None or process.returncode is not None:
            raise NotRunning(f"Instance '{record.instance.id}' has no attached process")
        try:
            process.stdin.write((text.rstrip("\r\n") + "\n").encode("utf-8"))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise NotRunning(f"Instance '{record.instance.id}' stdin is closed: {e}") from e

    def _apply_line(self, record: InstanceRecord, line: str, console_logger: logging.Logger) -> None:
        """Apply the classifier's events for one line. Only the watcher task calls this."""
        instance = record.instance
        level = logging.DEBUG
        for event in classify(line):
            if event.kind == LogEventKind.PLAYER_JOINED:
                instance.players_online += 1
                if event.player:
                    instance.player_names.add(event.player)
            elif event.kind == LogEventKind.PLAYER_LEFT:
                instance.players_online = max(0, instance.players_online - 1)
                if event.player:
                    instance.player_names.discard(event.player)
            elif event.kind == LogEventKind.READY:
                if instance.state == InstanceState.STARTING:
                    self._transition(record, InstanceState.ONLINE)
            elif event.kind == LogEventKind.TPS_SAMPLE:
                instance.ticks_per_second = event.value
            elif event.kind == LogEventKind.ERROR_LINE:
                level = logging.ERROR
            elif event.kind == LogEventKind.WARN_LINE and level < logging.WARNING:
                level = logging.WARNING
        console_logger.log(level, line)

    def _handle_exit(self, record: InstanceRecord, returncode: Optional[int]) -> None:
        """
        Settle the instance after its process exited. Runs exactly once per
        process and is the only path into stopped/crashed.
        """
        instance = record.instance
        forced = record.kill_requested
        instance.pid = None
        instance.players_online = 0
        instance.player_names.clear()
        instance.exit_code = returncode
        instance.forced = forced
        record.process = None
        record.metrics_handle = None

        if forced or returncode == 0:
            self._transition(record, InstanceState.STOPPED)
        else:
            logger.warning(f"[{instance.id}] process exited abnormally (code {returncode})")
            self._transition(record, InstanceState.CRASHED)

        if record.exited is not None:
            record.exited.set()

    async def _watch(self, record: InstanceRecord, process: asyncio.subprocess.Process) -> None:
        """Background task: read console lines in order until EOF, then settle the exit."""
        instance_id = record.instance.id
        console_logger = logging.getLogger(f"mcsupervisor.instance.{instance_id}")
        logger.info(f"[{instance_id}] console reader started (PID {process.pid})")

        try:
            while True:
                try:
                    raw = await process.stdout.readline()
                except ValueError:
                    logger.warning(f"[{instance_id}] skipped console line longer than {STREAM_LIMIT} bytes")
                    continue
                if not raw:
                    break
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                if not line:
                    continue
                self._apply_line(record, line, console_logger)
                await self._emit(record, parse_console_line(line))
        except Exception as e:
            logger.error(f"[{instance_id}] console reader error: {e}", exc_info=True)

        returncode = await process.wait()
        self._handle_exit(record, returncode)
        await self._emit(record, _marker(f"Server process exited with code {returncode}"))
        logger.info(f"[{instance_id}] console reader stopped")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, instance_id: str, config: Optional[LaunchConfig] = None) -> dict:
        """Spawn the instance's process. Raises AlreadyRunning or SpawnFailed."""
        record = self.registry.reserve(instance_id, config)
        async with record.lock:
            instance = record.instance
            if instance.is_active:
                raise AlreadyRunning(f"Instance '{instance_id}' is already {instance.state.value}")

            if config is not None:
                instance.config = config
            argv = instance.config.build_argv()
            cwd = instance.config.working_directory

            try:
                process = await asyncio.create_subprocess_exec(
                    *argv,
                    cwd=cwd,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.STDOUT,
                    limit=STREAM_LIMIT,
                )
            except (OSError, ValueError) as e:
                logger.error(f"[{instance_id}] failed to launch {argv[0]!r} in {cwd}: {e}")
                raise SpawnFailed(f"Failed to launch instance '{instance_id}': {e}") from e

            record.process = process
            record.exited = asyncio.Event()
            record.kill_requested = False
            record.metrics_handle = None
            instance.pid = process.pid
            instance.players_online = 0
            instance.player_names.clear()
            instance.ticks_per_second = NOMINAL_TPS
            instance.players_max = read_max_players(Path(cwd))
            instance.forced = False
            instance.exit_code = None
            instance.started_at = datetime.now()
            self._transition(record, InstanceState.STARTING)

            await self._emit(record, _marker(f"Starting server (PID {process.pid})..."))
            record.watcher_task = asyncio.create_task(self._watch(record, process))

            return {"success": True, "pid": process.pid, "state": instance.state.value}

    async def stop(self, instance_id: str, grace_period: Optional[float] = None) -> dict:
        """
        Ask the server to stop, killing it if it has not exited after
        ``grace_period`` seconds. Returns whether the kill was needed.
        """
        grace = self.stop_grace_seconds if grace_period is None else max(0.0, float(grace_period))
        record = self.registry.record(instance_id)

        async with record.lock:
            instance = record.instance
            if instance.state not in STOPPABLE_STATES:
                raise NotRunning(f"Instance '{instance_id}' is {instance.state.value}")
            process = record.process
            exited = record.exited

            self._transition(record, InstanceState.STOPPING)
            await self._emit(record, _marker("Stopping server..."))
            try:
                await self._write_line(record, STOP_DIRECTIVE)
            except NotRunning as e:
                # Already exiting; the exit handler settles the state
                logger.warning(f"[{instance_id}] could not send stop directive: {e}")

        try:
            await asyncio.wait_for(exited.wait(), timeout=grace)
        except asyncio.TimeoutError:
            if process.returncode is None:
                logger.warning(f"[{instance_id}] did not exit within {grace}s, killing PID {process.pid}")
                record.kill_requested = True
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
            await exited.wait()

        return {
            "success": True,
            "forced": instance.forced,
            "state": instance.state.value,
            "exit_code": instance.exit_code,
        }

    async def restart(self, instance_id: str) -> dict:
        """Stop, wait for the OS to release ports and files, then start again."""
        stop_result = await self.stop(instance_id)
        logger.info(
            f"[{instance_id}] stopped for restart (forced={stop_result['forced']}), "
            f"relaunching in {self.restart_settle_seconds}s"
        )
        await asyncio.sleep(self.restart_settle_seconds)
        return await self.start(instance_id)

    async def send_command(self, instance_id: str, text: str) -> dict:
        """Write a console command. Replies show up later as ordinary log lines."""
        record = self.registry.record(instance_id)
        async with record.lock:
            instance = record.instance
            if instance.state not in STOPPABLE_STATES:
                raise NotRunning(f"Instance '{instance_id}' is {instance.state.value}")
            await self._write_line(record, text)
            await self._emit(record, _marker(f"> {text}"))
        return {"success": True, "command": text}

    async def evict(self, instance_id: str) -> None:
        record = self.registry.record(instance_id)
        async with record.lock:
            self.registry.remove(instance_id)

    async def shutdown_all(self, grace_period: Optional[float] = None) -> None:
        """Stop every running instance (app shutdown)."""
        pending = []
        for instance_id in self.registry.ids():
            record = self.registry.record(instance_id)
            if record.instance.state in STOPPABLE_STATES:
                pending.append(self.stop(instance_id, grace_period))
            elif record.instance.state == InstanceState.STOPPING and record.exited is not None:
                pending.append(record.exited.wait())
        results = await asyncio.gather(*pending, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.warning(f"Shutdown stop failed: {result}")

    # ------------------------------------------------------------------
    # Status & console access
    # ------------------------------------------------------------------

    @staticmethod
    def _sample_resources(record: InstanceRecord, pid: Optional[int]) -> tuple[Optional[float], Optional[float]]:
        if not pid:
            return None, None
        try:
            proc = record.metrics_handle
            if proc is None or proc.pid != pid:
                proc = psutil.Process(pid)
                # First cpu_percent call always returns 0; prime it
                proc.cpu_percent(interval=None)
                record.metrics_handle = proc
            cpu = proc.cpu_percent(interval=None)
            ram_mb = proc.memory_info().rss / (1024 * 1024)
            return round(cpu, 1), round(ram_mb, 1)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            record.metrics_handle = None
            return None, None

    def get_instance_status(self, instance_id: str) -> InstanceStatus:
        record = self.registry.record(instance_id)
        instance = snapshot(record.instance)
        cpu, ram_mb = self._sample_resources(record, instance.pid)

        uptime = None
        if instance.started_at and instance.is_active:
            uptime = int((datetime.now() - instance.started_at).total_seconds())

        return InstanceStatus(
            id=instance.id,
            state=instance.state.value,
            online=instance.state == InstanceState.ONLINE,
            pid=instance.pid,
            players_online=instance.players_online,
            players_max=instance.players_max,
            ticks_per_second=instance.ticks_per_second,
            last_transition_at=instance.last_transition_at.isoformat(),
            started_at=instance.started_at.isoformat() if instance.started_at else None,
            uptime_seconds=uptime,
            forced=instance.forced,
            exit_code=instance.exit_code,
            player_names=sorted(instance.player_names),
            cpu_percent=cpu,
            memory_mb=ram_mb,
        )

    def list_statuses(self) -> list[InstanceStatus]:
        return [self.get_instance_status(instance_id) for instance_id in self.registry.ids()]

    def get_recent_logs(self, instance_id: str, lines: int = 100, offset: int = 0) -> list:
        """Get console entries with pagination support."""
        all_logs = list(self.registry.record(instance_id).log_buffer)
        if offset > 0:
            if offset >= len(all_logs):
                return []
            return all_logs[:-offset][-lines:]
        return all_logs[-lines:]

    def subscribe_to_logs(self, instance_id: str, callback: Callable) -> None:
        self.registry.record(instance_id).log_subscribers.append(callback)

    def unsubscribe_from_logs(self, instance_id: str, callback: Callable) -> None:
        record = self.registry.record(instance_id)
        if callback in record.log_subscribers:
            record.log_subscribers.remove(callback)


# =============================================================================
# Singleton + module-level API
# =============================================================================

_supervisor = ProcessSupervisor()


def get_supervisor() -> ProcessSupervisor:
    return _supervisor

async def start_instance(instance_id: str, config: Optional[LaunchConfig] = None) -> dict:
    return await _supervisor.start(instance_id, config)

async def stop_instance(instance_id: str, grace_period: Optional[float] = None) -> dict:
    return await _supervisor.stop(instance_id, grace_period)

async def restart_instance(instance_id: str) -> dict:
    return await _supervisor.restart(instance_id)

async def send_command(instance_id: str, text: str) -> dict:
    return await _supervisor.send_command(instance_id, text)

async def evict_instance(instance_id: str) -> None:
    await _supervisor.evict(instance_id)

async def shutdown_all(grace_period: Optional[float] = None) -> None:
    await _supervisor.shutdown_all(grace_period)

def get_instance_status(instance_id: str) -> InstanceStatus:
    return _supervisor.get_instance_status(instance_id)

def list_statuses() -> list[InstanceStatus]:
    return _supervisor.list_statuses()

def get_recent_logs(instance_id: str, lines: int = 100, offset: int = 0) -> list:
    return _supervisor.get_recent_logs(instance_id, lines, offset)

def subscribe_to_logs(instance_id: str, callback: Callable):
    _supervisor.subscribe_to_logs(instance_id, callback)

def unsubscribe_from_logs(instance_id: str, callback: Callable):
    _supervisor.unsubscribe_from_logs(instance_id, callback)
