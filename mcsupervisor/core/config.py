import logging
import os
from pathlib import Path

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# ==========================================
# Path Configuration
# ==========================================

CORE_DIR = Path(__file__).resolve().parent
APP_DIR = CORE_DIR.parent
ROOT_DIR = APP_DIR.parent

ENV_FILE = ROOT_DIR / ".env"
DATA_DIR = ROOT_DIR / "data"
SETTINGS_FILE = Path(os.getenv("SUPERVISOR_SETTINGS_FILE", str(DATA_DIR / "supervisor.yml"))).expanduser()
LOGS_DIR = ROOT_DIR / "logs"

load_dotenv(dotenv_path=ENV_FILE)


def load_supervisor_settings(path: Path = SETTINGS_FILE) -> dict:
    """Load optional supervisor overrides from a YAML file."""
    if not path.exists():
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Ignoring unreadable settings file {path}: {e}")
        return {}
    if not isinstance(data, dict):
        return {}
    return data


_settings = load_supervisor_settings()


def _setting(key: str, env_name: str, default):
    """Environment wins over YAML, YAML wins over the built-in default."""
    raw = os.getenv(env_name)
    if raw is None:
        raw = _settings.get(key, default)
    try:
        return type(default)(raw)
    except (TypeError, ValueError):
        logger.warning(f"Invalid value for {env_name}/{key}: {raw!r}, using {default!r}")
        return default


# ==========================================
# Supervisor Configuration
# ==========================================

STOP_GRACE_SECONDS = _setting("stop_grace_seconds", "SUPERVISOR_STOP_GRACE_SEC", 30.0)
RESTART_SETTLE_SECONDS = _setting("restart_settle_seconds", "SUPERVISOR_RESTART_SETTLE_SEC", 5.0)
LOG_BUFFER_LINES = _setting("log_buffer_lines", "LOG_BUFFER_LINES", 500)
DEFAULT_JAVA = _setting("default_java", "SUPERVISOR_JAVA", "java")
DEFAULT_JAR = _setting("default_jar", "SUPERVISOR_JAR", "server.jar")
STOP_DIRECTIVE = "stop"

# ==========================================
# Status Probe Configuration
# ==========================================

PROBE_TIMEOUT_SECONDS = _setting("probe_timeout_seconds", "PROBE_TIMEOUT_SEC", 5.0)
PROBE_CACHE_TTL_SECONDS = _setting("probe_cache_ttl_seconds", "PROBE_CACHE_TTL_SEC", 30.0)

# ==========================================
# App Configuration
# ==========================================

APP_VERSION = os.getenv("APP_VERSION", "1.0.0")
PORT = int(os.getenv("PORT", "8000"))
HOST = os.getenv("HOST", "127.0.0.1")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
