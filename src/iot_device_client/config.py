"""
Device client configuration.

Single source for runtime configuration. Values come from command-line options, then
environment variables, optionally loaded from standard env files.

Priority (lowest -> highest):
1) /etc/iot-device-client.env (system install)
2) ~/.config/iot-device-client/.env (user install)
3) ./.env (project override)
4) process environment variables
5) command-line options (always win)
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from importlib.metadata import PackageNotFoundError, version as _pkg_version
from pathlib import Path
from typing import Iterable, Mapping, Optional

DEFAULT_PRIVATE_KEY_FILENAME = "ec_private.pem"
DEFAULT_MESSAGE = "Message"
DEFAULT_MQTT_HOST = "mqtt.googleapis.com"
DEFAULT_MQTT_PORT = 8883

# option name -> (flag shown to the user, env variable)
_REQUIRED = {
    "project_id": ("-p --project_id", "IOT_PROJECT_ID"),
    "device_path": ("-d --device_path", "IOT_DEVICE_PATH"),
    "publish_topic": ("-t --publish_topic", "IOT_PUBLISH_TOPIC"),
}

_ENV_KEYS = {
    "subscribe_topic": "IOT_SUBSCRIBE_TOPIC",
    "message": "IOT_MESSAGE",
    "private_key_path": "IOT_PRIVATE_KEY_PATH",
    "mqtt_host": "IOT_MQTT_HOST",
    "mqtt_port": "IOT_MQTT_PORT",
    "use_tls": "IOT_USE_TLS",
    "ca_certs": "IOT_CA_CERTS",
    "publish_qos": "IOT_PUBLISH_QOS",
    "subscribe_qos": "IOT_SUBSCRIBE_QOS",
    "publish_interval_s": "IOT_PUBLISH_INTERVAL",
    "token_ttl_s": "IOT_TOKEN_TTL",
    "connect_timeout": "IOT_CONNECT_TIMEOUT",
    "keepalive": "IOT_KEEPALIVE",
    "refresh_token_on_reconnect": "IOT_REFRESH_TOKEN_ON_RECONNECT",
    "key_capacity": "IOT_KEY_CAPACITY",
    "log_level": "IOT_LOG_LEVEL",
}


class ConfigError(ValueError):
    """Raised when configuration is missing or invalid."""


def package_version() -> str:
    try:
        return _pkg_version("iot-device-client")
    except PackageNotFoundError:
        return "0.0.0+dev"


def _env_paths() -> Iterable[Path]:
    # 1) system install
    yield Path("/etc/iot-device-client.env")

    # 2) user config dir
    if sys.platform == "win32":
        base = Path(os.environ.get("APPDATA", str(Path.home())))
    else:
        base = Path(os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config")))
    yield base / "iot-device-client" / ".env"

    # 3) project override
    yield Path(".env")


def _load_env_files() -> None:
    try:
        from dotenv import load_dotenv  # type: ignore
    except ImportError:
        return

    for p in _env_paths():
        if p.is_file():
            # never override the process environment
            load_dotenv(p, override=False)


def _lookup(overrides: Mapping[str, object], key: str, env_key: str) -> Optional[str]:
    v = overrides.get(key)
    if v is not None and v != "":
        return str(v)
    raw = os.getenv(env_key)
    if raw is None or raw == "":
        return None
    return raw


def _parse_int(key: str, raw: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid integer for {key}: {raw!r}") from exc


def _parse_bool(key: str, raw: str) -> bool:
    v = raw.strip().lower()
    if v in ("1", "true", "yes", "on"):
        return True
    if v in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"Invalid boolean for {key}: {raw!r}")


def _parse_qos(key: str, raw: str) -> int:
    qos = _parse_int(key, raw)
    if qos not in (0, 1, 2):
        raise ConfigError(f"{key} must be 0, 1 or 2, got {qos}")
    return qos


def _parse_positive(key: str, raw: str) -> int:
    value = _parse_int(key, raw)
    if value <= 0:
        raise ConfigError(f"{key} must be > 0")
    return value


def _validate_topic(key: str, topic: str) -> str:
    if "+" in topic or "#" in topic:
        raise ConfigError(f"{key} must not contain wildcards: {topic!r}")
    return topic


@dataclass(frozen=True, slots=True)
class ClientConfig:
    project_id: str
    device_path: str
    publish_topic: str
    subscribe_topic: str
    message: str
    private_key_path: Path
    mqtt_host: str
    mqtt_port: int
    use_tls: bool
    ca_certs: Optional[str]
    publish_qos: int
    subscribe_qos: int
    publish_interval_s: int
    token_ttl_s: int
    connect_timeout: int
    keepalive: int
    refresh_token_on_reconnect: bool
    key_capacity: int
    log_level: Optional[str]
    client_version: str


def load_config(
    overrides: Optional[Mapping[str, object]] = None,
    *,
    dotenv_enabled: bool = True,
) -> ClientConfig:
    """
    Build the client config from command-line overrides and the environment.

    ``overrides`` maps option names (``project_id``, ``mqtt_port``, ...) to values;
    ``None`` entries fall through to the environment.

    Returns an immutable ClientConfig. Raises ConfigError on failure; a missing-parameter
    error names every missing required option.
    """
    overrides = dict(overrides or {})
    if dotenv_enabled:
        _load_env_files()

    required: dict[str, str] = {}
    missing: list[str] = []
    for key, (flag, env_key) in _REQUIRED.items():
        v = _lookup(overrides, key, env_key)
        if v is None:
            missing.append(f"{flag} is required")
        else:
            required[key] = v
    if missing:
        raise ConfigError("\n".join(missing))

    def opt(key: str) -> Optional[str]:
        return _lookup(overrides, key, _ENV_KEYS[key])

    publish_topic = _validate_topic("publish_topic", required["publish_topic"])
    subscribe_topic = opt("subscribe_topic") or publish_topic

    port = _parse_int("mqtt_port", opt("mqtt_port") or str(DEFAULT_MQTT_PORT))
    if not (1 <= port <= 65535):
        raise ConfigError(f"mqtt_port out of range: {port}")

    use_tls_raw = opt("use_tls")
    refresh_raw = opt("refresh_token_on_reconnect")

    return ClientConfig(
        project_id=required["project_id"],
        device_path=required["device_path"],
        publish_topic=publish_topic,
        subscribe_topic=subscribe_topic,
        message=opt("message") or DEFAULT_MESSAGE,
        private_key_path=Path(opt("private_key_path") or DEFAULT_PRIVATE_KEY_FILENAME),
        mqtt_host=opt("mqtt_host") or DEFAULT_MQTT_HOST,
        mqtt_port=port,
        use_tls=_parse_bool("use_tls", use_tls_raw) if use_tls_raw else True,
        ca_certs=opt("ca_certs"),
        publish_qos=_parse_qos("publish_qos", opt("publish_qos") or "1"),
        subscribe_qos=_parse_qos("subscribe_qos", opt("subscribe_qos") or "2"),
        publish_interval_s=_parse_positive("publish_interval_s", opt("publish_interval_s") or "5"),
        token_ttl_s=_parse_positive("token_ttl_s", opt("token_ttl_s") or "3600"),
        connect_timeout=_parse_positive("connect_timeout", opt("connect_timeout") or "10"),
        keepalive=_parse_positive("keepalive", opt("keepalive") or "20"),
        refresh_token_on_reconnect=(
            _parse_bool("refresh_token_on_reconnect", refresh_raw) if refresh_raw else True
        ),
        key_capacity=_parse_positive("key_capacity", opt("key_capacity") or "256"),
        log_level=opt("log_level"),
        client_version=package_version(),
    )
