import json
import os
import tempfile
import threading
from contextlib import contextmanager
from datetime import datetime
try:
    import fcntl  # Unix-only file locking
except Exception:  # pragma: no cover - non-Unix platforms
    fcntl = None

# Container paths; each one can be moved with an env var
DATA_DIR = os.getenv("DATA_DIR", "/app/data")
LOG_DIR = os.getenv("LOG_DIR", "/app/logs")
CONFIG_PATH = os.getenv("CONFIG", os.path.join(DATA_DIR, "Telebox.json"))
DB_PATH = os.getenv("DB_PATH", os.path.join(DATA_DIR, "telebox.db"))

for _directory in (os.path.dirname(CONFIG_PATH), DATA_DIR, LOG_DIR):
    os.makedirs(_directory, exist_ok=True)

# Settings that can be forced from the environment, read on every access
ENV_OVERRIDES = {
    "epg refresh interval": "EPG_REFRESH_INTERVAL",
    "enrichment poll seconds": "ENRICHMENT_POLL_SECONDS",
    "tmdb token": "TMDB_TOKEN",
}

config = {}
_config_lock = threading.Lock()
_lock_path = CONFIG_PATH + ".lock"

defaultSettings = {
    # Catalog import
    "import batch size": 1000,
    "import max attempts": 3,
    "import retry base delay": 2.0,
    "import cleanup previous": True,
    "max upload mb": 50,
    "region codes": "SP,RJ,MG,RS,PR,SC,BA,GO,DF,CE,PE,PB,RN,AL,SE,PI,MA,PA,AP,AC,RO,RR,AM,TO,MT,MS,ES",
    # TMDB enrichment
    "tmdb token": "",
    "tmdb language": "pt-BR",
    "tmdb timeout": 10,
    "tmdb throttle seconds": 0.3,
    "enrichment enabled": True,
    "enrichment poll seconds": 30,
    "enrichment batch size": 20,
    "enrichment max attempts": 3,
    # EPG
    "epg xmltv url": "",
    "epg user agent": "Mozilla/5.0 (compatible; TELEBOX/1.0)",
    "epg timeout": 30,
    "epg refresh interval": 6.0,
    "epg past hours": 0,
    "epg future hours": 24,
    "epg retention hours": 24,
    "epg cache ttl hours": 6,
    # Team notifications
    "team notifications enabled": True,
    "team notifications window hours": 24,
    "team notifications dedupe hours": 24,
    "team notifications require sport keywords": False,
    "sport keywords": "futebol,football,copa,campeonato,libertadores,brasileirão,série a,série b",
    "notification timezone": "America/Sao_Paulo",
    "team notification message": "Your team {team} plays today at {time} on {channel}",
    # Maintenance
    "vacuum interval hours": 0,
    # Security
    "enable security": False,
    "username": "admin",
    "password": "12345",
}


def is_true(value):
    """Accept real booleans, numbers and the "true"/"false" strings older configs stored."""
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return bool(value)


def _coerce_value(default, value):
    if value is None:
        return default
    if isinstance(default, bool):
        return is_true(value)
    if isinstance(default, (int, float)):
        try:
            return type(default)(value)
        except (TypeError, ValueError):
            return default
    return str(value)


def coerce_settings(settings):
    """Known keys only, each converted to the type of its default."""
    return {key: _coerce_value(default, settings.get(key)) for key, default in defaultSettings.items()}


@contextmanager
def _file_lock():
    """Serialize config writers across processes (no-op without fcntl)."""
    if fcntl is None:
        yield
        return
    os.makedirs(os.path.dirname(_lock_path), exist_ok=True)
    with open(_lock_path, "w", encoding="utf-8") as lock_file:
        fcntl.flock(lock_file, fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_file, fcntl.LOCK_UN)


def _read_config():
    try:
        with open(CONFIG_PATH, encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        return {}
    except (OSError, ValueError):
        # Keep the unreadable file around and start over from defaults
        stamp = datetime.utcnow().strftime("%Y%m%d%H%M%S")
        try:
            os.replace(CONFIG_PATH, f"{CONFIG_PATH}.corrupt.{stamp}")
        except OSError:
            pass
        return {}
    return data if isinstance(data, dict) else {}


def _write_config(data):
    config_dir = os.path.dirname(CONFIG_PATH)
    os.makedirs(config_dir, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", delete=False, dir=config_dir, encoding="utf-8") as tmp:
        json.dump(data, tmp, indent=4)
    os.replace(tmp.name, CONFIG_PATH)


def loadConfig():
    global config
    with _config_lock, _file_lock():
        data = _read_config()
        data["settings"] = coerce_settings(data.get("settings") or {})
        _write_config(data)
    config = data
    return data


def getSettings():
    settings = dict(config.get("settings") or coerce_settings({}))
    for key, env_name in ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value:
            settings[key] = _coerce_value(defaultSettings[key], value)
    return settings


def saveSettings(settings):
    config["settings"] = coerce_settings(settings)
    with _config_lock, _file_lock():
        _write_config(config)
