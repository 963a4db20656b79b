# mcsupervisor/services/instance_registry.py
"""
In-memory Instance Registry

Single source of truth for which instances are supervised. Each entry pairs
the public Instance record with the supervisor-owned runtime handles and a
per-instance lock, so calls for one id serialize without blocking others.
"""

import asyncio
import copy
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, List, Optional

from mcsupervisor.core.config import DEFAULT_JAR, DEFAULT_JAVA, LOG_BUFFER_LINES

logger = logging.getLogger(__name__)

DEFAULT_MAX_PLAYERS = 20
NOMINAL_TPS = 20.0

# Aikar's G1 flags, as used for the default Java launch command
JVM_FLAGS = (
    "-XX:+UseG1GC",
    "-XX:+ParallelRefProcEnabled",
    "-XX:MaxGCPauseMillis=200",
    "-XX:+UnlockExperimentalVMOptions",
    "-XX:+DisableExplicitGC",
    "-XX:+AlwaysPreTouch",
    "-XX:G1NewSizePercent=30",
    "-XX:G1MaxNewSizePercent=40",
    "-XX:G1HeapRegionSize=8M",
    "-XX:G1ReservePercent=20",
    "-XX:G1HeapWastePercent=5",
    "-XX:G1MixedGCCountTarget=4",
    "-XX:InitiatingHeapOccupancyPercent=15",
    "-XX:G1MixedGCLiveThresholdPercent=90",
    "-XX:G1RSetUpdatingPauseTimePercent=5",
    "-XX:SurvivorRatio=32",
    "-XX:+PerfDisableSharedMem",
    "-XX:MaxTenuringThreshold=1",
)


class SupervisorError(Exception):
    """Base class for errors returned to supervisor callers."""


class NotFound(SupervisorError):
    pass


class AlreadyRunning(SupervisorError):
    pass


class NotRunning(SupervisorError):
    pass


class SpawnFailed(SupervisorError):
    pass


class InstanceState(str, Enum):
    CREATED = "created"
    STARTING = "starting"
    ONLINE = "online"
    STOPPING = "stopping"
    STOPPED = "stopped"
    CRASHED = "crashed"


ACTIVE_STATES = frozenset({InstanceState.STARTING, InstanceState.ONLINE, InstanceState.STOPPING})
STOPPABLE_STATES = frozenset({InstanceState.STARTING, InstanceState.ONLINE})
TERMINAL_STATES = frozenset({InstanceState.STOPPED, InstanceState.CRASHED})


@dataclass(frozen=True)
class LaunchConfig:
    """Immutable launch parameters supplied by the caller"""
    working_directory: str
    command: Optional[str] = None
    args: tuple = ()
    memory_limit_mb: int = 4096
    jar_file: str = DEFAULT_JAR
    java_executable: str = DEFAULT_JAVA

    def build_argv(self) -> list[str]:
        """Explicit command wins; otherwise launch the jar with the memory limit applied."""
        if self.command:
            return [self.command, *self.args]
        memory = max(1, int(self.memory_limit_mb))
        return [
            self.java_executable,
            f"-Xmx{memory}M",
            f"-Xms{max(1, memory // 4)}M",
            *JVM_FLAGS,
            "-jar", self.jar_file,
            "nogui",
            *self.args,
        ]


@dataclass
class Instance:
    """One supervised server process and its derived status"""
    id: str
    config: LaunchConfig
    state: InstanceState = InstanceState.CREATED
    pid: Optional[int] = None
    players_online: int = 0
    players_max: int = DEFAULT_MAX_PLAYERS
    ticks_per_second: float = NOMINAL_TPS
    last_transition_at: datetime = field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    forced: bool = False
    exit_code: Optional[int] = None
    player_names: set = field(default_factory=set)

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_STATES


@dataclass
class InstanceRecord:
    """Registry entry: the Instance plus handles only its supervisor touches."""
    instance: Instance
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    process: Optional[asyncio.subprocess.Process] = None
    watcher_task: Optional[asyncio.Task] = None
    exited: Optional[asyncio.Event] = None
    kill_requested: bool = False
    metrics_handle: Any = None
    log_buffer: deque = field(default_factory=lambda: deque(maxlen=LOG_BUFFER_LINES))
    log_subscribers: List[Callable] = field(default_factory=list)
    # Last sequence number handed to a console entry; numbering never restarts
    log_seq: int = 0


class InstanceRegistry:
    """Thread-safe id -> InstanceRecord map with atomic creation."""

    def __init__(self):
        self._records: dict[str, InstanceRecord] = {}
        self._lock = threading.Lock()

    def reserve(self, instance_id: str, config: Optional[LaunchConfig]) -> InstanceRecord:
        """
        Return the record for ``instance_id``, creating it if absent.

        Creation is atomic: two concurrent callers always get the same
        record, and the per-record lock then decides which one spawns.
        """
        with self._lock:
            record = self._records.get(instance_id)
            if record is None:
                if config is None:
                    raise NotFound(f"Instance '{instance_id}' is not registered and no launch config was given")
                record = InstanceRecord(instance=Instance(id=instance_id, config=config))
                self._records[instance_id] = record
                logger.info(f"Registered instance {instance_id}")
            return record

    def record(self, instance_id: str) -> InstanceRecord:
        with self._lock:
            record = self._records.get(instance_id)
        if record is None:
            raise NotFound(f"Instance '{instance_id}' not found")
        return record

    def get(self, instance_id: str) -> Instance:
        """Snapshot of the instance; callers never see the live object."""
        return snapshot(self.record(instance_id).instance)

    def list_instances(self) -> list[Instance]:
        with self._lock:
            records = list(self._records.values())
        return [snapshot(r.instance) for r in records]

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._records)

    def remove(self, instance_id: str) -> None:
        with self._lock:
            record = self._records.get(instance_id)
            if record is None:
                raise NotFound(f"Instance '{instance_id}' not found")
            if record.instance.is_active:
                raise AlreadyRunning(f"Instance '{instance_id}' is {record.instance.state.value}; stop it first")
            del self._records[instance_id]
        logger.info(f"Evicted instance {instance_id}")

    def __contains__(self, instance_id: str) -> bool:
        with self._lock:
            return instance_id in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


def snapshot(instance: Instance) -> Instance:
    copied = copy.copy(instance)
    copied.player_names = set(instance.player_names)
    return copied
