from __future__ import annotations

import logging
import os
import sys
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping

import yaml
from dotenv import load_dotenv

from cloudflare_dyndns.cloudflare_client import DEFAULT_API_URL, DEFAULT_API_VERSION
from cloudflare_dyndns.ip_resolver import DEFAULT_IP_SERVICES

APP_DIR_NAME = "cloudflare-dyndns"
REQUIRED_FIELDS = ("api_token", "domain", "subdomain")
ENV_PREFIX = "CLOUDFLARE_"
CONFIG_FILE_ENV = "DYNDNS_CONFIG_FILE"


class ConfigError(ValueError):
    pass


def _parse_bool(value: str | bool | None, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ConfigError(f"Invalid boolean value: {value}")


def _parse_int(value: Any, name: str) -> int:
    try:
        return int(str(value).strip())
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from exc


def _parse_millis(value: Any, name: str) -> float:
    return _parse_int(value, name) / 1000


def _parse_seconds(value: Any, name: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be a number of seconds, got {value!r}")
    try:
        return float(str(value).strip())
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number of seconds, got {value!r}") from exc


def _parse_str(value: Any, name: str) -> str:
    if isinstance(value, (dict, list, tuple, set)):
        raise ConfigError(f"{name} must be a string, got {type(value).__name__}")
    return str(value).strip()


def _parse_path(value: Any, name: str) -> Path:
    if not isinstance(value, (str, os.PathLike)):
        raise ConfigError(f"{name} must be a path, got {type(value).__name__}")
    return Path(value)


def _parse_list(value: Any) -> tuple[str, ...]:
    if isinstance(value, (list, tuple)):
        items = [str(item) for item in value]
    else:
        items = str(value).split(",")
    return tuple(item.strip() for item in items if item.strip())


def construct_fqdn(subdomain: str | None, domain: str | None) -> str:
    domain = (domain or "").strip()
    subdomain = (subdomain or "").strip()
    if not domain:
        return ""
    if not subdomain:
        return domain
    return f"{subdomain}.{domain}"


def _writable(directory: Path) -> bool:
    probe = directory
    while not probe.exists():
        if probe.parent == probe:
            return False
        probe = probe.parent
    return os.access(probe, os.W_OK)


def default_log_path() -> Path:
    if sys.platform == "win32":
        base = Path(os.getenv("PROGRAMDATA", "C:\\ProgramData"))
        return base / APP_DIR_NAME / "logs" / "cloudflare_dyndns.log"
    if sys.platform == "darwin":
        return Path("/Library/Logs") / APP_DIR_NAME / "cloudflare_dyndns.log"
    var_log = Path("/var/log") / APP_DIR_NAME
    if _writable(var_log):
        return var_log / "cloudflare_dyndns.log"
    return Path.home() / f".{APP_DIR_NAME}" / "logs" / "cloudflare_dyndns.log"


def default_ip_file_path() -> Path:
    if sys.platform == "win32":
        base = Path(os.getenv("LOCALAPPDATA", str(Path.home() / "AppData" / "Local")))
        return base / APP_DIR_NAME / "last_ip.txt"
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / APP_DIR_NAME / "last_ip.txt"
    var_lib = Path("/var/lib") / APP_DIR_NAME
    if _writable(var_lib):
        return var_lib / "last_ip.txt"
    return Path.home() / f".{APP_DIR_NAME}" / "last_ip.txt"


def env_file_locations() -> list[Path]:
    locations = [Path.cwd() / ".env", Path.home() / f".{APP_DIR_NAME}" / ".env"]
    if sys.platform == "win32":
        locations.append(Path(os.getenv("ProgramData", "C:\\ProgramData")) / APP_DIR_NAME / ".env")
    else:
        locations.append(Path("/etc") / APP_DIR_NAME / ".env")
    return locations


def load_env_files(locations: list[Path] | None = None, logger: logging.Logger | None = None) -> Path | None:
    """Load the first ``.env`` file found; variables already set are kept."""
    logger = logger or logging.getLogger(__name__)
    for location in locations if locations is not None else env_file_locations():
        if location.is_file():
            load_dotenv(location, override=False)
            logger.debug("Loaded configuration from %s", location)
            return location
    logger.debug("No .env file found. Using environment variables or direct configuration.")
    return None


@dataclass(frozen=True)
class AppConfig:
    api_token: str = ""
    zone_id: str = ""
    record_id: str = ""
    domain: str = ""
    subdomain: str = ""
    fqdn: str = ""
    ttl: int = 120
    proxied: bool = False
    retry_attempts: int = 3
    retry_delay_seconds: float = 5.0
    log_file: Path | None = None
    last_ip_file: Path = field(default_factory=lambda: Path("last_ip.txt"))
    ip_services: tuple[str, ...] = tuple(DEFAULT_IP_SERVICES)
    api_version: str = DEFAULT_API_VERSION
    api_url: str = DEFAULT_API_URL
    auto_detect_api: bool = False
    check_interval_seconds: float = 60
    adaptive_interval: bool = True
    min_interval_seconds: float = 30
    max_interval_seconds: float = 300
    request_timeout_seconds: int = 30
    log_level: str = "INFO"

    def missing_fields(self) -> list[str]:
        return [name.upper() for name in REQUIRED_FIELDS if not str(getattr(self, name) or "").strip()]

    def is_complete(self) -> bool:
        return not self.missing_fields()

    def validate(self, logger: logging.Logger | None = None) -> None:
        missing = self.missing_fields()
        if missing:
            raise ConfigError(
                f"Missing or empty required configuration: {', '.join(missing)}. "
                "Run 'cloudflare-dyndns --setup' or provide the required parameters."
            )
        if self.ttl < 60:
            (logger or logging.getLogger(__name__)).warning(
                "TTL less than 60 seconds may cause issues. Recommended minimum is 120 seconds."
            )

    def as_dict(self) -> dict[str, Any]:
        values = asdict(self)
        if values["api_token"]:
            values["api_token"] = "***"
        return values


def _bool_field(default: bool) -> Callable[[Any, str], bool]:
    return lambda value, _name: _parse_bool(value, default=default)


# field name -> parser for a value already in the field's unit (seconds for durations)
_FIELD_PARSERS: dict[str, Callable[[Any, str], Any]] = {
    "api_token": _parse_str,
    "zone_id": _parse_str,
    "record_id": _parse_str,
    "domain": _parse_str,
    "subdomain": _parse_str,
    "fqdn": _parse_str,
    "ttl": _parse_int,
    "proxied": _bool_field(False),
    "retry_attempts": _parse_int,
    "retry_delay_seconds": _parse_seconds,
    "log_file": _parse_path,
    "last_ip_file": _parse_path,
    "ip_services": lambda value, _name: _parse_list(value),
    "api_version": _parse_str,
    "api_url": _parse_str,
    "auto_detect_api": _bool_field(False),
    "check_interval_seconds": _parse_seconds,
    "adaptive_interval": _bool_field(True),
    "min_interval_seconds": _parse_seconds,
    "max_interval_seconds": _parse_seconds,
    "request_timeout_seconds": _parse_int,
    "log_level": _parse_str,
}

# field name -> environment key
_ENV_KEYS = {
    "retry_delay_seconds": "RETRY_DELAY",
    "check_interval_seconds": "CHECK_INTERVAL",
    "min_interval_seconds": "MIN_INTERVAL",
    "max_interval_seconds": "MAX_INTERVAL",
}
# Durations in the environment are given in milliseconds.
_MILLIS_FIELDS = frozenset(_ENV_KEYS)


def _env_key(name: str) -> str:
    return _ENV_KEYS.get(name, name.upper())


def _coerce(name: str, value: Any) -> Any:
    return _FIELD_PARSERS[name](value, _env_key(name))


def _env_value(environ: Mapping[str, str], key: str) -> str | None:
    for name in (key, f"{ENV_PREFIX}{key}"):
        value = environ.get(name)
        if value is not None and value != "":
            return value
    return None


def read_config_file(path: Path) -> dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed parsing YAML config {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Failed reading config file {path}: {exc}") from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping, got {type(data).__name__}")

    values: dict[str, Any] = {}
    for key, value in data.items():
        name = str(key).strip().lower()
        if name not in _FIELD_PARSERS:
            raise ConfigError(f"Unknown configuration key in {path}: {key}")
        if value is None:
            continue
        values[name] = _coerce(name, value)
    return values


def load_config(
    overrides: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
    config_file: Path | str | None = None,
) -> AppConfig:
    """Build the configuration from direct overrides, environment, config file and defaults.

    Earlier sources win. ``overrides`` uses the field names of :class:`AppConfig`;
    keys with a ``None`` value are ignored so CLI flags that were not given fall
    through to the next source.
    """
    environ = os.environ if environ is None else environ
    values: dict[str, Any] = {}

    file_path = config_file or environ.get(CONFIG_FILE_ENV)
    if file_path:
        values.update(read_config_file(Path(file_path)))

    for name in _FIELD_PARSERS:
        key = _env_key(name)
        raw = _env_value(environ, key)
        if raw is None:
            continue
        values[name] = _parse_millis(raw, key) if name in _MILLIS_FIELDS else _coerce(name, raw)

    for name, value in (overrides or {}).items():
        if name not in _FIELD_PARSERS:
            raise ConfigError(f"Unknown configuration override: {name}")
        if value is not None:
            values[name] = _coerce(name, value)

    explicit_fqdn = str(values.get("fqdn") or "").strip()
    values["fqdn"] = explicit_fqdn or construct_fqdn(values.get("subdomain"), values.get("domain"))

    values.setdefault("log_file", default_log_path())
    values.setdefault("last_ip_file", default_ip_file_path())
    if "ip_services" in values:
        values["ip_services"] = values["ip_services"] or tuple(DEFAULT_IP_SERVICES)

    config = AppConfig(**values)
    if config.retry_attempts < 1:
        raise ConfigError(f"RETRY_ATTEMPTS must be >= 1, got {config.retry_attempts}")
    if config.request_timeout_seconds <= 0:
        raise ConfigError(f"REQUEST_TIMEOUT_SECONDS must be > 0, got {config.request_timeout_seconds}")
    if config.min_interval_seconds <= 0 or config.max_interval_seconds < config.min_interval_seconds:
        raise ConfigError(
            "MIN_INTERVAL must be > 0 and MAX_INTERVAL must be >= MIN_INTERVAL, "
            f"got {config.min_interval_seconds}s and {config.max_interval_seconds}s"
        )
    if config.check_interval_seconds <= 0:
        raise ConfigError(f"CHECK_INTERVAL must be > 0, got {config.check_interval_seconds}s")
    return config
