"""Configuration loader for nodeadm.

Tool settings are merged from several sources, lowest precedence first:

1. Built-in defaults.
2. ``/etc/nodeadm/nodeadm.yml`` (or an override path).
3. Environment variables prefixed with ``NODEADM_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export NODEADM_VALIDATION__TIMEOUT=15m
    export NODEADM_PACKAGE_MANAGER__RETRY_DELAY=10s

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``.

These settings describe how nodeadm itself behaves (paths, retry policy,
timeouts). The NodeConfig document consumed by ``init`` and ``upgrade`` lives
in :mod:`nodeadm.nodeconfig`.
"""
from __future__ import annotations

import os
import re
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load nodeadm configuration. Install with "
        "`pip install nodeadm` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "NODEADM_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

DEFAULT_MANIFEST_URL = "https://hybrid-assets.eks.amazonaws.com/manifest.yaml"


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


# ----------------------------------------------------------------------
# Durations
# ----------------------------------------------------------------------
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


def parse_duration(value: str) -> float:
    """Parse a Go-style duration such as ``90s`` or ``1h30m`` into seconds.

    A bare ``0`` is accepted. Any other value without a unit is rejected.
    """
    text = value.strip()
    if not text:
        raise ValueError("time: invalid duration \"\"")
    sign = 1.0
    if text[0] in "+-":
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]
    if text == "0":
        return 0.0
    position = 0
    total = 0.0
    while position < len(text):
        match = _DURATION_PART.match(text, position)
        if match is None:
            raise ValueError(f"time: invalid duration \"{value}\"")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    return sign * total


def format_duration(seconds: float) -> str:
    """Render *seconds* as a compact duration string (``1h30m0s``)."""
    if seconds == 0:
        return "0s"
    whole = int(seconds)
    hours, remainder = divmod(whole, 3600)
    minutes, secs = divmod(remainder, 60)
    fraction = seconds - whole
    secs_text = f"{secs + fraction:g}s"
    if hours:
        return f"{hours}h{minutes}m{secs_text}"
    if minutes:
        return f"{minutes}m{secs_text}"
    return secs_text


# ----------------------------------------------------------------------
# Configuration sections
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class DownloadConfig:
    """Retry and timeout policy for artifact downloads."""

    attempts: int = 3
    timeout: float = 300.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"attempts": self.attempts, "timeout": format_duration(self.timeout)}


@dataclass(frozen=True)
class PackageManagerConfig:
    """Fixed-delay retry policy applied to distro package operations."""

    retry_delay: float = 5.0
    retry_timeout: float = 300.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "retry_delay": format_duration(self.retry_delay),
            "retry_timeout": format_duration(self.retry_timeout),
        }


@dataclass(frozen=True)
class ValidationConfig:
    """Timeouts used by the post-init node validation."""

    timeout: float = 600.0
    api_wait_timeout: float = 180.0
    poll_interval: float = 2.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "timeout": format_duration(self.timeout),
            "api_wait_timeout": format_duration(self.api_wait_timeout),
            "poll_interval": format_duration(self.poll_interval),
        }


@dataclass(frozen=True)
class SystemdConfig:
    """Systemd integration configuration values."""

    systemctl_bin: str = "systemctl"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"systemctl_bin": self.systemctl_bin}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for nodeadm."""

    config_file: Path
    tracker_file: Path
    logs_dir: Path
    runtime_dir: Path
    eks_config_dir: Path
    manifest_url: str
    lock_timeout: float
    download: DownloadConfig
    package_manager: PackageManagerConfig
    validation: ValidationConfig
    systemd: SystemdConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "tracker_file": str(self.tracker_file),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "eks_config_dir": str(self.eks_config_dir),
            "manifest_url": self.manifest_url,
            "lock_timeout": self.lock_timeout,
            "download": self.download.to_dict(),
            "package_manager": self.package_manager.to_dict(),
            "validation": self.validation.to_dict(),
            "systemd": self.systemd.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/nodeadm/nodeadm.yml",
    "tracker_file": "/opt/nodeadm/tracker",
    "logs_dir": "/var/log/nodeadm",
    "runtime_dir": "/run/nodeadm",
    "eks_config_dir": "/etc/eks",
    "manifest_url": DEFAULT_MANIFEST_URL,
    "lock_timeout": 30.0,
    "download": {
        "attempts": 3,
        "timeout": "5m",
    },
    "package_manager": {
        "retry_delay": "5s",
        "retry_timeout": "5m",
    },
    "validation": {
        "timeout": "10m",
        "api_wait_timeout": "3m",
        "poll_interval": "2s",
    },
    "systemd": {
        "systemctl_bin": "systemctl",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS = {
    "download": {"attempts", "timeout"},
    "package_manager": {"retry_delay", "retry_timeout"},
    "validation": {"timeout", "api_wait_timeout", "poll_interval"},
    "systemd": {"systemctl_bin"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    for section, allowed in _SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    manifest_url = raw.get("manifest_url")
    if not isinstance(manifest_url, str) or not manifest_url.startswith(("https://", "http://")):
        raise ConfigError(f"manifest_url must be an http(s) URL. Got {manifest_url!r}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    download_mapping = _as_dict(raw.get("download"), "download")
    attempts = _expect_int(download_mapping.get("attempts"), "download.attempts", default=3)
    if attempts < 1:
        raise ConfigError("download.attempts must be at least 1.")
    download = DownloadConfig(
        attempts=attempts,
        timeout=_expect_duration(download_mapping.get("timeout"), "download.timeout", default=300.0),
    )

    pm_mapping = _as_dict(raw.get("package_manager"), "package_manager")
    package_manager = PackageManagerConfig(
        retry_delay=_expect_duration(
            pm_mapping.get("retry_delay"), "package_manager.retry_delay", default=5.0
        ),
        retry_timeout=_expect_duration(
            pm_mapping.get("retry_timeout"), "package_manager.retry_timeout", default=300.0
        ),
    )

    validation_mapping = _as_dict(raw.get("validation"), "validation")
    validation = ValidationConfig(
        timeout=_expect_duration(
            validation_mapping.get("timeout"), "validation.timeout", default=600.0
        ),
        api_wait_timeout=_expect_duration(
            validation_mapping.get("api_wait_timeout"),
            "validation.api_wait_timeout",
            default=180.0,
        ),
        poll_interval=_expect_duration(
            validation_mapping.get("poll_interval"), "validation.poll_interval", default=2.0
        ),
    )

    systemd_mapping = _as_dict(raw.get("systemd"), "systemd")
    systemd = SystemdConfig(
        systemctl_bin=str(systemd_mapping.get("systemctl_bin", "systemctl")),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        tracker_file=_to_path(raw.get("tracker_file")),
        logs_dir=_to_path(raw.get("logs_dir")),
        runtime_dir=_to_path(raw.get("runtime_dir")),
        eks_config_dir=_to_path(raw.get("eks_config_dir")),
        manifest_url=str(raw.get("manifest_url", DEFAULT_MANIFEST_URL)),
        lock_timeout=_expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0),
        download=download,
        package_manager=package_manager,
        validation=validation,
        systemd=systemd,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_duration(value: object | None, label: str, *, default: float) -> float:
    """Accept Go-style duration strings or plain numbers of seconds."""
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a duration. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        try:
            seconds = parse_duration(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid duration for {label}: {value!r}.") from exc
    else:
        raise ConfigError(f"Expected {label} to be a duration. Got {type(value).__name__}.")
    if seconds < 0:
        raise ConfigError(f"{label} must not be negative. Got {value!r}.")
    return seconds


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "DownloadConfig",
    "PackageManagerConfig",
    "SystemdConfig",
    "ValidationConfig",
    "format_duration",
    "load_config",
    "parse_duration",
]
