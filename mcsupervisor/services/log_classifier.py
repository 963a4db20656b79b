# mcsupervisor/services/log_classifier.py
"""
Server console line classification.

The supervised server exposes no query API, so live status is inferred from
its console output. Everything here is a pure function of one line so the
matching rules can be tested without a process.

Contains:
- classify(): line -> list of LogEvent
- Console entry parsing (timestamp, level) for the log buffer
- Minecraft color code stripping
"""

import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

JOIN_MARKER = "joined the game"
LEAVE_MARKER = "left the game"
READY_MARKER = "Done"
ERROR_MARKERS = ("ERROR", "Exception", "CRASH")
WARN_MARKER = "WARN"

# Paper/Spigot /tps output: "TPS from last 1m, 5m, 15m: 19.8, 19.9, 20.0"
# Paper may prefix values with "*" when above 20.
TPS_PATTERN = re.compile(r'TPS from last 1m, 5m, 15m:\s*\*?(\d+(?:\.\d+)?)')
JOIN_NAME_PATTERN = re.compile(r'([A-Za-z0-9_]{1,16})(?:\[[^\]]*\])?\s+joined the game')
LEAVE_NAME_PATTERN = re.compile(r'([A-Za-z0-9_]{1,16})\s+left the game')
TIME_PATTERN = re.compile(r'^\[(\d{2}:\d{2}:\d{2})')


class LogEventKind(str, Enum):
    PLAYER_JOINED = "player_joined"
    PLAYER_LEFT = "player_left"
    READY = "ready"
    TPS_SAMPLE = "tps_sample"
    ERROR_LINE = "error_line"
    WARN_LINE = "warn_line"


@dataclass(frozen=True)
class LogEvent:
    """One status delta derived from a console line"""
    kind: LogEventKind
    value: Optional[float] = None
    player: Optional[str] = None


def strip_minecraft_colors(text: str) -> str:
    """Strip Minecraft color/formatting codes (§X) from text"""
    return re.sub(r'§.', '', text)


def _match_player(pattern: re.Pattern, line: str) -> Optional[str]:
    match = pattern.search(line)
    return match.group(1) if match else None


def classify(line: str) -> list[LogEvent]:
    """
    Classify one console line into zero or more events.

    Rules are evaluated independently, so a single line can produce e.g. both
    a TPS sample and an error line.
    """
    events: list[LogEvent] = []

    if JOIN_MARKER in line:
        events.append(LogEvent(LogEventKind.PLAYER_JOINED, player=_match_player(JOIN_NAME_PATTERN, line)))

    if LEAVE_MARKER in line:
        events.append(LogEvent(LogEventKind.PLAYER_LEFT, player=_match_player(LEAVE_NAME_PATTERN, line)))

    if READY_MARKER in line:
        events.append(LogEvent(LogEventKind.READY))

    tps_match = TPS_PATTERN.search(line)
    if tps_match:
        events.append(LogEvent(LogEventKind.TPS_SAMPLE, value=float(tps_match.group(1))))

    if any(marker in line for marker in ERROR_MARKERS):
        events.append(LogEvent(LogEventKind.ERROR_LINE))

    if WARN_MARKER in line:
        events.append(LogEvent(LogEventKind.WARN_LINE))

    return events


def line_level(line: str) -> str:
    """Console severity used by the log viewer: error, warning, info or debug."""
    if "ERROR" in line:
        return "error"
    if WARN_MARKER in line:
        return "warning"
    if "INFO" in line:
        return "info"
    return "debug"


def parse_console_line(raw_line: str) -> dict:
    """Turn a raw console line into a log buffer entry ``{time, level, message}``."""
    message = strip_minecraft_colors(raw_line.rstrip())
    time_match = TIME_PATTERN.match(message)
    timestamp = time_match.group(1) if time_match else datetime.now().strftime("%H:%M:%S")
    return {"time": timestamp, "level": line_level(message), "message": message}
