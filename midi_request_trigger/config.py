"""
Configuration loading and validation.

Handles YAML config parsing with environment variable expansion.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from . import SERVICE_NAME

logger = logging.getLogger(__name__)

DEFAULT_HTTP_PORT = 34936
DEFAULT_RETRY_INTERVAL = 60.0

_DURATION_PART = re.compile(r'(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)')
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


@dataclass
class MQTTConfig:
    """MQTT broker connection for a router."""
    host: str = ""
    port: int = 0
    client_id: str = ""
    user: str = ""
    password: str = ""
    # Base topic: <topic>/cmd, <topic>/send, <topic>/status, <topic>/status/check
    topic: str = ""
    disable_midi_firehose: bool = False
    disable_config_send: bool = False
    retry_connect: bool = False
    retry_interval: float = DEFAULT_RETRY_INTERVAL

    @property
    def enabled(self) -> bool:
        return bool(self.host) and self.port != 0


@dataclass
class NoteTrigger:
    """Rule fired by MIDI notes, producing HTTP and/or MQTT actions."""
    channel: int = 0
    match_all_channels: bool = False
    note: int = 0
    match_all_notes: bool = False
    velocity: int = 0
    match_all_velocities: bool = False
    delay_before: float = 0.0  # seconds
    delay_after: float = 0.0
    mqtt_topic: str = ""
    mqtt_payload: Any = None  # None publishes the note as JSON
    midi_info_in_request: bool = False
    insecure_skip_verify: bool = False
    url: str = ""
    method: str = "GET"
    body: str = ""
    headers: dict[str, str | list[str]] = field(default_factory=dict)
    timeout: float | None = None


@dataclass
class RequestTrigger:
    """Rule fired by an HTTP request or MQTT message, producing a MIDI note."""
    channel: int = 0
    note: int = 0
    velocity: int = 0
    midi_info_in_request: bool = False
    mqtt_topic: str = ""
    mqtt_sub_topic: str = ""
    disallow_payload: bool = False
    uri: str = ""


@dataclass
class RouterConfig:
    """A router binding one MIDI device to its triggers."""
    name: str
    device: str
    mqtt: MQTTConfig = field(default_factory=MQTTConfig)
    disable_listener: bool = False
    note_triggers: list[NoteTrigger] = field(default_factory=list)
    request_triggers: list[RequestTrigger] = field(default_factory=list)
    log_level: int = 0
    retry_interval: float = DEFAULT_RETRY_INTERVAL


@dataclass
class HTTPConfig:
    """HTTP listener configuration."""
    bind_addr: str = ""
    port: int = DEFAULT_HTTP_PORT
    debug: bool = True
    enabled: bool = True


@dataclass
class LogConfig:
    """Process wide logging configuration."""
    level: str = "info"  # debug, info, warn, error
    type: str = "console"  # console, json
    outputs: list[str] = field(default_factory=lambda: ["console", "default-file"])
    max_size: int = 1  # megabytes
    max_backups: int = 3
    compress: bool = True


@dataclass
class Config:
    """Root configuration object."""
    http: HTTPConfig = field(default_factory=HTTPConfig)
    log: LogConfig = field(default_factory=LogConfig)
    midi_routers: list[RouterConfig] = field(default_factory=list)


def expand_env_vars(value: str) -> str:
    """Expand environment variables in a string.

    Supports ${VAR} syntax.
    """
    pattern = re.compile(r'\$\{([^}]+)\}')

    def replacer(match: re.Match) -> str:
        var_name = match.group(1)
        return os.environ.get(var_name, "")

    return pattern.sub(replacer, value)


def expand_env_vars_recursive(obj: Any) -> Any:
    """Recursively expand environment variables in a data structure."""
    if isinstance(obj, str):
        return expand_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: expand_env_vars_recursive(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [expand_env_vars_recursive(item) for item in obj]
    return obj


def parse_duration(value: Any) -> float:
    """
    Parse a duration into seconds.

    Accepts plain numbers (seconds) or duration strings such as
    "500ms", "1.5s" or "1m30s".

    Raises:
        ValueError: If the value is not a valid duration.
    """
    if value is None or value == "":
        return 0.0
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)

    text = str(value).strip()
    try:
        return float(text)
    except ValueError:
        pass

    total = 0.0
    pos = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos == 0 or pos != len(text):
        raise ValueError(f"Invalid duration: {value!r}")
    return total


def parse_mqtt_config(data: dict[str, Any]) -> MQTTConfig:
    """Parse the MQTT section of a router."""
    return MQTTConfig(
        host=data.get("host", ""),
        port=int(data.get("port", 0) or 0),
        client_id=data.get("client_id", ""),
        user=data.get("user", ""),
        password=data.get("password", ""),
        topic=data.get("topic", ""),
        disable_midi_firehose=data.get("disable_midi_firehose", False),
        disable_config_send=data.get("disable_config_send", False),
        retry_connect=data.get("retry_connect", False),
        retry_interval=parse_duration(data.get("retry_interval", DEFAULT_RETRY_INTERVAL)),
    )


def parse_note_trigger(data: dict[str, Any]) -> NoteTrigger:
    """Parse a note trigger from config data."""
    # Older configs spell it "deplay_after"
    delay_after = data.get("delay_after", data.get("deplay_after"))

    return NoteTrigger(
        channel=int(data.get("channel") or 0),
        match_all_channels=data.get("match_all_channels", False),
        note=int(data.get("note") or 0),
        match_all_notes=data.get("match_all_notes", False),
        velocity=int(data.get("velocity") or 0),
        match_all_velocities=data.get("match_all_velocities", False),
        delay_before=parse_duration(data.get("delay_before")),
        delay_after=parse_duration(delay_after),
        mqtt_topic=data.get("mqtt_topic", ""),
        mqtt_payload=data.get("mqtt_payload"),
        midi_info_in_request=data.get("midi_info_in_request", False),
        insecure_skip_verify=data.get("insecure_skip_verify", False),
        url=data.get("url", ""),
        method=data.get("method") or "GET",
        body=data.get("body", ""),
        headers=dict(data.get("headers") or {}),
        timeout=parse_duration(data["timeout"]) if data.get("timeout") else None,
    )


def parse_request_trigger(data: dict[str, Any]) -> RequestTrigger:
    """Parse a request trigger from config data."""
    return RequestTrigger(
        channel=int(data.get("channel") or 0),
        note=int(data.get("note") or 0),
        velocity=int(data.get("velocity") or 0),
        midi_info_in_request=data.get("midi_info_in_request", False),
        mqtt_topic=data.get("mqtt_topic", ""),
        mqtt_sub_topic=data.get("mqtt_sub_topic", ""),
        disallow_payload=data.get("disallow_payload", False),
        uri=data.get("uri", ""),
    )


def parse_router_config(data: dict[str, Any]) -> RouterConfig:
    """Parse a MIDI router from config data."""
    return RouterConfig(
        name=data.get("name", ""),
        device=data.get("device", ""),
        mqtt=parse_mqtt_config(data.get("mqtt") or {}),
        disable_listener=data.get("disable_listener", False),
        note_triggers=[
            parse_note_trigger(entry) for entry in data.get("note_triggers") or []
        ],
        request_triggers=[
            parse_request_trigger(entry) for entry in data.get("request_triggers") or []
        ],
        log_level=int(data.get("log_level", 0)),
        retry_interval=parse_duration(data.get("retry_interval", DEFAULT_RETRY_INTERVAL)),
    )


def parse_config(raw: dict[str, Any]) -> Config:
    """Build a Config from already decoded YAML data."""
    raw = expand_env_vars_recursive(raw or {})

    config = Config()

    http_data = raw.get("http") or {}
    config.http = HTTPConfig(
        bind_addr=http_data.get("bind_addr", ""),
        port=int(http_data.get("port", DEFAULT_HTTP_PORT)),
        debug=http_data.get("debug", True),
        enabled=http_data.get("enabled", True),
    )

    log_data = raw.get("log") or {}
    defaults = LogConfig()
    config.log = LogConfig(
        level=log_data.get("level", defaults.level),
        type=log_data.get("type", defaults.type),
        outputs=list(log_data.get("outputs", defaults.outputs)),
        max_size=int(log_data.get("max_size", defaults.max_size)),
        max_backups=int(log_data.get("max_backups", defaults.max_backups)),
        compress=log_data.get("compress", defaults.compress),
    )

    config.midi_routers = [
        parse_router_config(entry) for entry in raw.get("midi_routers") or []
    ]
    return config


def default_config_paths() -> list[Path]:
    """Config locations searched when no explicit path is given."""
    return [
        Path("config.yaml").absolute(),
        Path.home() / ".config" / SERVICE_NAME / "config.yaml",
        Path("/etc") / SERVICE_NAME / "config.yaml",
    ]


def find_config(explicit: str | None = None) -> Path | None:
    """
    Find the configuration file to use.

    Args:
        explicit: Path supplied on the command line, tried first.

    Returns:
        The first existing path, or None.
    """
    candidates = [Path(explicit)] if explicit else []
    candidates.extend(default_config_paths())
    for path in candidates:
        if path.is_file():
            return path
    return None


def load_config(path: Path | None) -> Config:
    """
    Load configuration from a YAML file.

    A missing or unparsable file yields the default configuration so the
    service can still list devices.
    """
    if path is None:
        logger.warning("Unable to find a configuration file.")
        return Config()

    try:
        with open(path) as f:
            raw = yaml.safe_load(f)
        return parse_config(raw)
    except (OSError, yaml.YAMLError, ValueError, TypeError, KeyError) as e:
        logger.error("Error parsing configuration %s: %s", path, e)
        return Config()
