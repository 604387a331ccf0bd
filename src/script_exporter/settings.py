from __future__ import annotations

import re
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def _default_settings_path() -> Path:
    """Return bundled default settings TOML path.

    Example:
        ```python
        path = _default_settings_path()
        ```
    """
    return Path(__file__).with_name("default_settings.toml")


def _read_settings_toml(path: Path) -> dict[str, Any]:
    """Read settings TOML and return the `[exporter]` table or top-level keys.

    Example:
        ```python
        raw = _read_settings_toml(Path("/etc/script-exporter.toml"))
        ```
    """
    if not path.exists():
        return {}
    raw = tomllib.loads(path.read_text(encoding="utf-8"))
    settings_obj = raw.get("exporter", raw)
    if not isinstance(settings_obj, dict):
        raise ValueError("Exporter config must be a TOML table")
    return settings_obj


def parse_duration(value: str | int | float) -> float:
    """Parse a Go-style duration (`1m30s`, `500ms`) or bare seconds into seconds.

    Example:
        ```python
        parse_duration("1m30s")  # 90.0
        ```
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    text = value.strip()
    try:
        return float(text)
    except ValueError:
        pass
    if not text:
        raise ValueError("invalid duration: ''")
    total = 0.0
    pos = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise ValueError(f"invalid duration: {value!r}")
    return total


def _toml_bool(raw: dict[str, Any], key: str, default: bool) -> bool:
    """Return a boolean setting, rejecting anything but a TOML boolean.

    Example:
        ```python
        _toml_bool({"opentsdb": True}, "opentsdb", False)  # True
        ```
    """
    value = raw.get(key, default)
    if not isinstance(value, bool):
        raise ValueError(f"{key} must be a boolean, got {value!r}")
    return value


def split_listen_address(address: str) -> tuple[str, int]:
    """Split `host:port` (host optional) into a bindable pair.

    Example:
        ```python
        split_listen_address(":9661")  # ("0.0.0.0", 9661)
        ```
    """
    host, sep, port = address.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"listen address must look like 'host:port', got {address!r}")
    host = host.strip("[]") or "0.0.0.0"
    return host, int(port)


_DEFAULT_SETTINGS_RAW = _read_settings_toml(_default_settings_path())
DEFAULT_LISTEN_ADDRESS = str(_DEFAULT_SETTINGS_RAW.get("listen_address", ":9661"))
DEFAULT_TELEMETRY_PATH = str(_DEFAULT_SETTINGS_RAW.get("telemetry_path", "/metrics"))
DEFAULT_SCRIPT_PATH = str(_DEFAULT_SETTINGS_RAW.get("script_path", ""))
DEFAULT_OPENTSDB = _toml_bool(_DEFAULT_SETTINGS_RAW, "opentsdb", False)
DEFAULT_TIMEOUT_SECONDS = parse_duration(_DEFAULT_SETTINGS_RAW.get("timeout_seconds", 60))
DEFAULT_SCRIPT_WORKERS = int(_DEFAULT_SETTINGS_RAW.get("script_workers", 1))
DEFAULT_KILL_PROCESS_GROUP = _toml_bool(_DEFAULT_SETTINGS_RAW, "kill_process_group", False)
DEFAULT_LOG_LEVEL = str(_DEFAULT_SETTINGS_RAW.get("log_level", "INFO"))


@dataclass(slots=True)
class ExporterSettings:
    """Runtime configuration of the script exporter.

    Example:
        ```python
        settings = ExporterSettings(script_path="/opt/scripts", timeout_seconds=30)
        ```
    """

    listen_address: str = DEFAULT_LISTEN_ADDRESS
    telemetry_path: str = DEFAULT_TELEMETRY_PATH
    script_path: str = DEFAULT_SCRIPT_PATH
    opentsdb: bool = DEFAULT_OPENTSDB
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    script_workers: int = DEFAULT_SCRIPT_WORKERS
    kill_process_group: bool = DEFAULT_KILL_PROCESS_GROUP
    log_level: str = DEFAULT_LOG_LEVEL
    config_path: str | None = None

    def __post_init__(self) -> None:
        """Validate and normalize fields after dataclass initialization.

        Example:
            ```python
            ExporterSettings(telemetry_path="/metrics/")  # stored as "/metrics"
            ```
        """
        if self.script_workers < 1:
            raise ValueError("script_workers must be >= 1")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if not self.telemetry_path.startswith("/"):
            raise ValueError("telemetry_path must start with '/'")
        self.telemetry_path = self.telemetry_path.rstrip("/") or "/"
        if self.telemetry_path == "/":
            raise ValueError("telemetry_path must not be '/'")
        self.log_level = self.log_level.upper()
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(f"log_level must be one of {sorted(_LOG_LEVELS)}")
        split_listen_address(self.listen_address)

    @property
    def host(self) -> str:
        """Return the host part of the listen address.

        Example:
            ```python
            ExporterSettings(listen_address="127.0.0.1:9661").host  # "127.0.0.1"
            ```
        """
        return split_listen_address(self.listen_address)[0]

    @property
    def port(self) -> int:
        """Return the port part of the listen address.

        Example:
            ```python
            ExporterSettings().port  # 9661
            ```
        """
        return split_listen_address(self.listen_address)[1]

    def merged(self, **overrides: Any) -> "ExporterSettings":
        """Return a copy with every non-None override applied.

        Example:
            ```python
            settings = ExporterSettings().merged(script_workers=4, opentsdb=None)
            ```
        """
        values = {name: getattr(self, name) for name in self.__dataclass_fields__}
        values.update({key: value for key, value in overrides.items() if value is not None})
        return type(self)(**values)

    @classmethod
    def from_file(cls, config_path: str) -> "ExporterSettings":
        """Create settings from a TOML file, defaulting absent keys.

        Example:
            ```python
            settings = ExporterSettings.from_file("/etc/script-exporter.toml")
            ```
        """
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"config file not found: {config_path}")
        raw = _read_settings_toml(path)
        return cls(
            listen_address=str(raw.get("listen_address", DEFAULT_LISTEN_ADDRESS)),
            telemetry_path=str(raw.get("telemetry_path", DEFAULT_TELEMETRY_PATH)),
            script_path=str(raw.get("script_path", DEFAULT_SCRIPT_PATH)),
            opentsdb=_toml_bool(raw, "opentsdb", DEFAULT_OPENTSDB),
            timeout_seconds=parse_duration(raw.get("timeout_seconds", DEFAULT_TIMEOUT_SECONDS)),
            script_workers=int(raw.get("script_workers", DEFAULT_SCRIPT_WORKERS)),
            kill_process_group=_toml_bool(raw, "kill_process_group", DEFAULT_KILL_PROCESS_GROUP),
            log_level=str(raw.get("log_level", DEFAULT_LOG_LEVEL)),
            config_path=config_path,
        )
