"""Configuration loader for sitedeploy.

Configuration values are merged from several sources, lowest precedence
first:

1. Built-in defaults.
2. ``/etc/sitedeploy/config.yml`` (or an override path).
3. Environment variables prefixed with ``SITEDEPLOY_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export SITEDEPLOY_DEPLOY__SETTLE_SECONDS=5
    export SITEDEPLOY_TLS__LOCAL_DOMAIN=lan

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

ENV_PREFIX = "SITEDEPLOY_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

if os.name == "nt":  # pragma: no cover - platform specific defaults
    DEFAULT_SITES_ROOT = r"C:\inetpub"
    DEFAULT_CERTS_DIR = r"C:\Certs"
else:
    DEFAULT_SITES_ROOT = "/srv/www"
    DEFAULT_CERTS_DIR = "/etc/sitedeploy/certs"


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class PackageConfig:
    """Deployment package conventions."""

    root_marker: str = "Publish"
    protected_files: tuple[str, ...] = ("appsettings.json", "web.config")
    sample_suffix: str = ".sample"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "root_marker": self.root_marker,
            "protected_files": list(self.protected_files),
            "sample_suffix": self.sample_suffix,
        }


@dataclass(frozen=True)
class DeployConfig:
    """Redeploy behaviour."""

    settle_seconds: float = 3.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"settle_seconds": self.settle_seconds}


@dataclass(frozen=True)
class PoolConfig:
    """Execution pool defaults for new sites."""

    runtime: str = "v4.0"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"runtime": self.runtime}


@dataclass(frozen=True)
class TLSConfig:
    """Certificate naming and trust store settings."""

    local_domain: str
    store_dir: Path
    store_name: str = "My"
    validity_years: int = 5

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "local_domain": self.local_domain,
            "store_dir": str(self.store_dir),
            "store_name": self.store_name,
            "validity_years": self.validity_years,
        }


@dataclass(frozen=True)
class BackupConfig:
    """Backup storage location. ``root`` of None means beside the package."""

    root: Path | None = None
    index: Path | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "root": str(self.root) if self.root is not None else None,
            "index": str(self.index) if self.index is not None else None,
        }


@dataclass(frozen=True)
class SystemdConfig:
    """Systemd integration configuration values."""

    enabled: bool = False
    systemctl_bin: str = "systemctl"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"enabled": self.enabled, "systemctl_bin": self.systemctl_bin}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for sitedeploy."""

    config_file: Path
    sites_root: Path
    certs_dir: Path
    state_dir: Path
    registry_dir: Path
    logs_dir: Path
    runtime_dir: Path
    lock_timeout: float
    package: PackageConfig
    deploy: DeployConfig
    pool: PoolConfig
    tls: TLSConfig
    backups: BackupConfig
    systemd: SystemdConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "sites_root": str(self.sites_root),
            "certs_dir": str(self.certs_dir),
            "state_dir": str(self.state_dir),
            "registry_dir": str(self.registry_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "lock_timeout": self.lock_timeout,
            "package": self.package.to_dict(),
            "deploy": self.deploy.to_dict(),
            "pool": self.pool.to_dict(),
            "tls": self.tls.to_dict(),
            "backups": self.backups.to_dict(),
            "systemd": self.systemd.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/sitedeploy/config.yml",
    "sites_root": DEFAULT_SITES_ROOT,
    "certs_dir": DEFAULT_CERTS_DIR,
    "state_dir": "/var/lib/sitedeploy",
    "registry_dir": None,  # derived from state_dir when absent
    "logs_dir": "/var/log/sitedeploy",
    "runtime_dir": "/run/sitedeploy",
    "lock_timeout": 30.0,
    "package": {
        "root_marker": "Publish",
        "protected_files": ["appsettings.json", "web.config"],
        "sample_suffix": ".sample",
    },
    "deploy": {
        "settle_seconds": 3.0,
    },
    "pool": {
        "runtime": "v4.0",
    },
    "tls": {
        "local_domain": "local",
        "store_dir": None,  # derived from state_dir when absent
        "store_name": "My",
        "validity_years": 5,
    },
    "backups": {
        "root": None,
        "index": None,
    },
    "systemd": {
        "enabled": False,
        "systemctl_bin": "systemctl",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    "package": {"root_marker", "protected_files", "sample_suffix"},
    "deploy": {"settle_seconds"},
    "pool": {"runtime"},
    "tls": {"local_domain", "store_dir", "store_name", "validity_years"},
    "backups": {"root", "index"},
    "systemd": {"enabled", "systemctl_bin"},
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

    for section, allowed in _SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    package_map = _as_dict(raw.get("package"), "package")
    marker = package_map.get("root_marker")
    if marker is not None and (not isinstance(marker, str) or not marker.strip("/ ")):
        raise ConfigError("package.root_marker must be a non-empty string.")
    protected = package_map.get("protected_files")
    if protected is not None:
        for index, item in enumerate(_as_sequence(protected, "package.protected_files")):
            if not isinstance(item, str) or not item.strip():
                raise ConfigError(f"package.protected_files[{index}] must be a non-empty string.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    state_dir = _to_path(raw.get("state_dir"))
    registry_dir_value = raw.get("registry_dir")
    registry_dir = _to_path(registry_dir_value) if registry_dir_value else state_dir / "registry"
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    package_map = _as_dict(raw.get("package"), "package")
    protected_raw = package_map.get("protected_files")
    protected = (
        tuple(str(item).strip() for item in _as_sequence(protected_raw, "package.protected_files"))
        if protected_raw is not None
        else PackageConfig().protected_files
    )
    package = PackageConfig(
        root_marker=str(package_map.get("root_marker", "Publish")).strip("/ "),
        protected_files=protected,
        sample_suffix=str(package_map.get("sample_suffix", ".sample")),
    )

    deploy_map = _as_dict(raw.get("deploy"), "deploy")
    settle = _expect_non_negative_float(
        deploy_map.get("settle_seconds"), "deploy.settle_seconds", default=3.0
    )

    pool_map = _as_dict(raw.get("pool"), "pool")

    tls_map = _as_dict(raw.get("tls"), "tls")
    store_dir_value = tls_map.get("store_dir")
    validity_years = _expect_int(tls_map.get("validity_years"), "tls.validity_years", default=5)
    if validity_years < 1:
        raise ConfigError("tls.validity_years must be at least 1.")
    tls = TLSConfig(
        local_domain=str(tls_map.get("local_domain", "local")).strip(".") or "local",
        store_dir=(
            _to_path(store_dir_value) if store_dir_value else state_dir / "certstore"
        ),
        store_name=str(tls_map.get("store_name", "My")),
        validity_years=validity_years,
    )

    backups_map = _as_dict(raw.get("backups"), "backups")
    backups_root_value = backups_map.get("root")
    backups_root = _to_path(backups_root_value) if backups_root_value else None
    backups_index_value = backups_map.get("index")
    if backups_index_value:
        backups_index: Path | None = _to_path(backups_index_value)
    elif backups_root is not None:
        backups_index = backups_root / "backups.json"
    else:
        backups_index = None

    systemd_map = _as_dict(raw.get("systemd"), "systemd")

    return AppConfig(
        config_file=config_file,
        sites_root=_to_path(raw.get("sites_root")),
        certs_dir=_to_path(raw.get("certs_dir")),
        state_dir=state_dir,
        registry_dir=registry_dir,
        logs_dir=_to_path(raw.get("logs_dir")),
        runtime_dir=_to_path(raw.get("runtime_dir")),
        lock_timeout=lock_timeout,
        package=package,
        deploy=DeployConfig(settle_seconds=settle),
        pool=PoolConfig(runtime=str(pool_map.get("runtime", "v4.0"))),
        tls=tls,
        backups=BackupConfig(root=backups_root, index=backups_index),
        systemd=SystemdConfig(
            enabled=bool(systemd_map.get("enabled", False)),
            systemctl_bin=str(systemd_map.get("systemctl_bin", "systemctl")),
        ),
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
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw


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


def _expect_float(value: object, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_positive_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return float(default)
    numeric = _expect_float(value, label)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return float(default)
    numeric = _expect_float(value, label)
    if numeric < 0:
        raise ConfigError(f"{label} must not be negative. Got {numeric}.")
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
    "BackupConfig",
    "ConfigError",
    "DeployConfig",
    "PackageConfig",
    "PoolConfig",
    "SystemdConfig",
    "TLSConfig",
    "load_config",
]
