"""Daemon settings.

Every tunable of the control plane lives in one pydantic model tree.
Values are layered: model defaults, the bundled defaults.yaml, an optional
operator file, then NETPLANE_* environment variables where a double
underscore separates sections (NETPLANE_RECOVERY__MAX_RETRIES=5).
"""

from __future__ import annotations

import copy
import os
import pathlib
from typing import Any, Literal, Mapping

import yaml
from pydantic import BaseModel, Field, ValidationError

from netplane.exceptions import ConfigError


# ---------------------------------------------------------------------------
# Config sub-models
# ---------------------------------------------------------------------------

class DaemonConfig(BaseModel):
    name: str = "netplane"
    data_dir: str = "./data"


class BackendConfig(BaseModel):
    type: Literal["nmcli", "memory"] = "nmcli"
    nmcli_path: str = "nmcli"
    command_timeout_seconds: float = Field(default=30.0, gt=0)


class RecoveryConfig(BaseModel):
    auto_recovery: bool = True
    max_retries: int = Field(default=3, ge=0)
    retry_delay_seconds: float = Field(default=2.0, ge=0)
    retry_backoff: float = Field(default=1.0, ge=1.0)
    history_capacity: int = Field(default=100, ge=1)
    sweep_interval_seconds: float = Field(default=300.0, gt=0)
    stale_after_seconds: float = Field(default=1800.0, ge=0)


class ProfilesConfig(BaseModel):
    auto_switch: bool = True
    check_interval_seconds: float = Field(default=30.0, gt=0)
    history_capacity: int = Field(default=100, ge=1)


class AuthorizationConfig(BaseModel):
    mode: Literal["polkit", "static-allow", "static-deny"] = "polkit"
    cache_ttl_seconds: float = Field(default=300.0, ge=0)
    pkcheck_path: str = "pkcheck"


class StoreConfig(BaseModel):
    enabled: bool = True
    path: str = "./data/netplane.db"
    max_events: int | None = Field(default=10000, ge=1)


class ApiConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8470


class LoggingConfig(BaseModel):
    level: str = "INFO"


# ---------------------------------------------------------------------------
# Top-level settings
# ---------------------------------------------------------------------------

class Settings(BaseModel):
    daemon: DaemonConfig = Field(default_factory=DaemonConfig)
    backend: BackendConfig = Field(default_factory=BackendConfig)
    recovery: RecoveryConfig = Field(default_factory=RecoveryConfig)
    profiles: ProfilesConfig = Field(default_factory=ProfilesConfig)
    authorization: AuthorizationConfig = Field(default_factory=AuthorizationConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)




# ---------------------------------------------------------------------------
# Layering
# ---------------------------------------------------------------------------

ENV_PREFIX = "NETPLANE_"

BUNDLED_DEFAULTS = pathlib.Path(__file__).resolve().parents[3] / "config" / "defaults.yaml"

# YAML 1.1 would read these as booleans; env values keep them as strings.
_YAML_WORD_BOOLS = frozenset({"y", "n", "yes", "no", "on", "off"})


def _merge_into(target: dict[str, Any], layer: dict[str, Any]) -> None:
    for key, value in layer.items():
        existing = target.get(key)
        if isinstance(existing, dict) and isinstance(value, dict):
            _merge_into(existing, value)
        else:
            target[key] = copy.deepcopy(value)


def _read_yaml_layer(path: pathlib.Path) -> dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        raise ConfigError(f"{path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    return data


def _coerce_env_value(raw: str) -> Any:
    """Turn ``"5"``, ``"2.5"`` and ``"true"`` into numbers and booleans."""
    if raw.strip().lower() in _YAML_WORD_BOOLS:
        return raw
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:
        return raw
    if isinstance(parsed, (bool, int, float)):
        return parsed
    return raw


def env_layer(environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Nested overrides from ``NETPLANE_SECTION__KEY=value`` variables."""
    environ = os.environ if environ is None else environ
    layer: dict[str, Any] = {}
    for name, raw in environ.items():
        if not name.startswith(ENV_PREFIX):
            continue
        path = [part for part in name[len(ENV_PREFIX):].lower().split("__") if part]
        if not path:
            continue
        node = layer
        for part in path[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = node[part] = {}
            node = child
        node[path[-1]] = _coerce_env_value(raw)
    return layer


def load_settings(config_path: pathlib.Path | None = None) -> Settings:
    """Build settings from model defaults, YAML and the environment.

    The bundled ``config/defaults.yaml`` is applied first when present,
    then *config_path* (a missing file is skipped), then ``NETPLANE_*``
    variables. Raises ``ConfigError`` on unreadable YAML or values the
    models reject.
    """
    data: dict[str, Any] = {}
    layers = [BUNDLED_DEFAULTS]
    if config_path is not None and config_path.resolve() != BUNDLED_DEFAULTS:
        layers.append(config_path)
    for path in layers:
        if path.is_file():
            _merge_into(data, _read_yaml_layer(path))
    _merge_into(data, env_layer())
    try:
        return Settings.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc
