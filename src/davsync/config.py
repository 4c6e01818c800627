"""Configuration loader for davsync.

Configuration values are read from multiple sources, later sources winning:

1. Built-in defaults.
2. ``~/.config/davsync/config.yml`` (or an override path).
3. Environment variables prefixed with ``DAVSYNC_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export DAVSYNC_SERVER__MAX_REDIRECTS=5
    export DAVSYNC_PROXY__MODE=none

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml
from packaging.version import InvalidVersion, Version

ENV_PREFIX = "DAVSYNC_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {
    CONFIG_ENV_VAR,
    f"{ENV_PREFIX}PASSWORD",
}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class ServerConfig:
    """Well-known server paths and discovery heuristics."""

    override_url: str | None = None
    status_path: str = "status.php"
    dav_path: str = "remote.php/webdav/"
    max_redirects: int = 10
    sso_indicators: tuple[str, ...] = ("saml", "wayf")
    min_version: str = "7.0.0"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "override_url": self.override_url,
            "status_path": self.status_path,
            "dav_path": self.dav_path,
            "max_redirects": self.max_redirects,
            "sso_indicators": list(self.sso_indicators),
            "min_version": self.min_version,
        }


@dataclass(frozen=True)
class TimeoutsConfig:
    """Per-probe deadlines in seconds."""

    plain: float = 10.0
    secure: float = 30.0
    request: float = 60.0

    def for_scheme(self, scheme: str) -> float:
        """Return the discovery timeout for *scheme*.

        Secure handshakes are slower, plaintext failures should fail fast.
        """
        return self.secure if scheme == "https" else self.plain

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"plain": self.plain, "secure": self.secure, "request": self.request}


@dataclass(frozen=True)
class ProxyConfig:
    """Proxy selection used for every probe of a setup run."""

    mode: str = "system"
    url: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"mode": self.mode, "url": self.url}


@dataclass(frozen=True)
class TLSConfig:
    """TLS verification settings."""

    verify: bool = True
    ca_bundle: Path | None = None
    inspect_certificates: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "verify": self.verify,
            "ca_bundle": str(self.ca_bundle) if self.ca_bundle is not None else None,
            "inspect_certificates": self.inspect_certificates,
        }


@dataclass(frozen=True)
class FoldersConfig:
    """Default local/remote folder pair offered by ``davsync setup``."""

    local: Path = Path("~/davsync")
    remote: str = "/"
    ignore_hidden_files: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "local": str(self.local),
            "remote": self.remote,
            "ignore_hidden_files": self.ignore_hidden_files,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for davsync."""

    config_file: Path
    app_name: str
    state_dir: Path
    registry_dir: Path
    logs_dir: Path
    server: ServerConfig
    timeouts: TimeoutsConfig
    proxy: ProxyConfig
    tls: TLSConfig
    folders: FoldersConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "app_name": self.app_name,
            "state_dir": str(self.state_dir),
            "registry_dir": str(self.registry_dir),
            "logs_dir": str(self.logs_dir),
            "server": self.server.to_dict(),
            "timeouts": self.timeouts.to_dict(),
            "proxy": self.proxy.to_dict(),
            "tls": self.tls.to_dict(),
            "folders": self.folders.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "~/.config/davsync/config.yml",
    "app_name": "davsync",
    "state_dir": "~/.local/share/davsync",
    "registry_dir": None,  # derived from state_dir when absent
    "logs_dir": None,  # derived from state_dir when absent
    "server": {
        "override_url": None,
        "status_path": "status.php",
        "dav_path": "remote.php/webdav/",
        "max_redirects": 10,
        "sso_indicators": ["saml", "wayf"],
        "min_version": "7.0.0",
    },
    "timeouts": {
        "plain": 10,
        "secure": 30,
        "request": 60,
    },
    "proxy": {
        "mode": "system",
        "url": None,
    },
    "tls": {
        "verify": True,
        "ca_bundle": None,
        "inspect_certificates": True,
    },
    "folders": {
        "local": "davsync",
        "remote": "/",
        "ignore_hidden_files": True,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_PROXY_MODES = {"system", "none", "manual"}
_SECTION_KEYS: dict[str, set[str]] = {
    "server": {
        "override_url",
        "status_path",
        "dav_path",
        "max_redirects",
        "sso_indicators",
        "min_version",
    },
    "timeouts": {"plain", "secure", "request"},
    "proxy": {"mode", "url"},
    "tls": {"verify", "ca_bundle", "inspect_certificates"},
    "folders": {"local", "remote", "ignore_hidden_files"},
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
        return Path(cli_override).expanduser()
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR]).expanduser()
    return Path(default_path).expanduser()


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

    for section, allowed in _SECTION_KEYS.items():
        section_map = _as_dict(raw.get(section), section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    proxy_map = _as_dict(raw.get("proxy"), "proxy")
    mode = str(proxy_map.get("mode", "system")).strip().lower()
    if mode not in ALLOWED_PROXY_MODES:
        allowed = ", ".join(sorted(ALLOWED_PROXY_MODES))
        raise ConfigError(f"Unsupported proxy mode '{mode}'. Allowed: {allowed}.")
    if mode == "manual" and not proxy_map.get("url"):
        raise ConfigError("proxy.url is required when proxy.mode is 'manual'.")

    server_map = _as_dict(raw.get("server"), "server")
    min_version = server_map.get("min_version")
    if min_version is not None:
        try:
            Version(str(min_version))
        except InvalidVersion as exc:
            raise ConfigError(
                f"server.min_version must be a version string. Got {min_version!r}."
            ) from exc


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    state_dir = _to_path(raw.get("state_dir"))

    registry_dir_value = raw.get("registry_dir")
    registry_dir = _to_path(registry_dir_value) if registry_dir_value else state_dir / "registry"
    logs_dir_value = raw.get("logs_dir")
    logs_dir = _to_path(logs_dir_value) if logs_dir_value else state_dir / "logs"

    server_mapping = _as_dict(raw.get("server"), "server")
    max_redirects = _expect_int(
        server_mapping.get("max_redirects"), "server.max_redirects", default=10
    )
    if max_redirects < 0:
        raise ConfigError("server.max_redirects must be non-negative.")
    indicators_raw = server_mapping.get("sso_indicators")
    if indicators_raw is None:
        indicators: tuple[str, ...] = ServerConfig().sso_indicators
    else:
        indicators = tuple(
            str(item).strip()
            for item in _as_sequence(indicators_raw, "server.sso_indicators")
            if str(item).strip()
        )
    override_url = server_mapping.get("override_url")
    server = ServerConfig(
        override_url=str(override_url).strip() or None if override_url else None,
        status_path=_strip_slashes(str(server_mapping.get("status_path", "status.php"))),
        dav_path=_normalize_dav_path(str(server_mapping.get("dav_path", "remote.php/webdav/"))),
        max_redirects=max_redirects,
        sso_indicators=indicators,
        min_version=str(server_mapping.get("min_version", "7.0.0")),
    )

    timeouts_mapping = _as_dict(raw.get("timeouts"), "timeouts")
    timeouts = TimeoutsConfig(
        plain=_expect_positive_float(timeouts_mapping.get("plain"), "timeouts.plain", default=10.0),
        secure=_expect_positive_float(
            timeouts_mapping.get("secure"), "timeouts.secure", default=30.0
        ),
        request=_expect_positive_float(
            timeouts_mapping.get("request"), "timeouts.request", default=60.0
        ),
    )

    proxy_mapping = _as_dict(raw.get("proxy"), "proxy")
    proxy_url = proxy_mapping.get("url")
    proxy = ProxyConfig(
        mode=str(proxy_mapping.get("mode", "system")).strip().lower(),
        url=str(proxy_url) if proxy_url else None,
    )

    tls_mapping = _as_dict(raw.get("tls"), "tls")
    ca_bundle_value = tls_mapping.get("ca_bundle")
    tls = TLSConfig(
        verify=bool(tls_mapping.get("verify", True)),
        ca_bundle=_to_path(ca_bundle_value) if ca_bundle_value else None,
        inspect_certificates=bool(tls_mapping.get("inspect_certificates", True)),
    )

    folders_mapping = _as_dict(raw.get("folders"), "folders")
    local_value = _to_path(folders_mapping.get("local", "davsync"))
    if not local_value.is_absolute():
        # Relative defaults live below the user's home directory.
        local_value = Path.home() / local_value
    folders = FoldersConfig(
        local=local_value,
        remote=str(folders_mapping.get("remote", "/") or "/"),
        ignore_hidden_files=bool(folders_mapping.get("ignore_hidden_files", True)),
    )

    return AppConfig(
        config_file=config_file,
        app_name=str(raw.get("app_name", "davsync")),
        state_dir=state_dir,
        registry_dir=registry_dir,
        logs_dir=logs_dir,
        server=server,
        timeouts=timeouts,
        proxy=proxy,
        tls=tls,
        folders=folders,
    )


def _strip_slashes(value: str) -> str:
    return value.strip().strip("/")


def _normalize_dav_path(value: str) -> str:
    stripped = _strip_slashes(value)
    return f"{stripped}/" if stripped else ""


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
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


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
    "FoldersConfig",
    "ProxyConfig",
    "ServerConfig",
    "TLSConfig",
    "TimeoutsConfig",
    "load_config",
]
