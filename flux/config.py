"""Configuration resolution.

Settings for a run are merged key by key, later sources overriding earlier
ones:

    module defaults < config file < environment < CLI flags

The result is a read-only ``ResolvedConfig`` built once per invocation and
shared by every step of the run.
"""
import logging
import os
import tomllib
import types
import typing
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, Literal, Optional, Type

from pydantic import BaseModel, ConfigDict, ValidationError

from flux.errors import ConfigError

logger = logging.getLogger(__name__)

ENV_PREFIX = "FLUX_"
SYSTEM_CONFIG_PATH = Path("/etc/flux/flux.toml")


class ModuleSettings(BaseModel):
    """Base for a module's declared settings.

    Field defaults are the module defaults; undeclared keys from the config
    file are kept as extras for the module to interpret.
    """

    model_config = ConfigDict(frozen=True, extra="allow")


class GeneralSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")

    mode: Literal["interactive", "auto", "dry-run"] = "interactive"
    log_level: Literal["debug", "info", "warning", "error"] = "info"
    log_file: Optional[str] = None

    @property
    def interactive(self) -> bool:
        return self.mode == "interactive"

    @property
    def dry_run(self) -> bool:
        return self.mode == "dry-run"


class WorkflowPolicy(BaseModel):
    """Per-workflow overrides read from ``[workflows.<name>]``."""

    model_config = ConfigDict(frozen=True, extra="allow")

    stop_on_error: Optional[bool] = None
    confirm_modules: Optional[bool] = None


@dataclass(frozen=True)
class ConfigSlice:
    """The view of the resolved configuration handed to one module."""

    module: str
    settings: ModuleSettings
    general: GeneralSettings

    @property
    def dry_run(self) -> bool:
        return self.general.dry_run

    def get(self, key: str, default: Any = None) -> Any:
        return getattr(self.settings, key, default)


class ResolvedConfig(Mapping):
    """Module name -> validated settings for one run."""

    def __init__(
        self,
        general: GeneralSettings,
        modules: Mapping[str, ModuleSettings],
        errors: Optional[Mapping[str, ConfigError]] = None,
        workflows: Optional[Mapping[str, WorkflowPolicy]] = None,
        source: Optional[Path] = None,
    ):
        self.general = general
        self._modules = MappingProxyType(dict(modules))
        self.errors = MappingProxyType(dict(errors or {}))
        self.workflows = MappingProxyType(dict(workflows or {}))
        self.source = source

    def __getitem__(self, name: str) -> ModuleSettings:
        return self._modules[name]

    def __iter__(self):
        return iter(self._modules)

    def __len__(self) -> int:
        return len(self._modules)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ResolvedConfig):
            return NotImplemented
        return (
            self.general == other.general
            and dict(self._modules) == dict(other._modules)
            and {k: str(v) for k, v in self.errors.items()}
            == {k: str(v) for k, v in other.errors.items()}
            and dict(self.workflows) == dict(other.workflows)
        )

    __hash__ = None

    def slice_for(self, name: str) -> ConfigSlice:
        """Return the settings for ``name``, raising its ConfigError if invalid."""
        if name in self.errors:
            raise self.errors[name]
        settings = self._modules.get(name)
        if settings is None:
            settings = ModuleSettings()
        return ConfigSlice(module=name, settings=settings, general=self.general)

    def workflow_policy(self, name: str) -> WorkflowPolicy:
        return self.workflows.get(name, WorkflowPolicy())


def default_config_path(env: Optional[Mapping[str, str]] = None) -> Optional[Path]:
    """Find the config file: $FLUX_CONFIG, then /etc/flux, then ~/.config/flux."""
    env = os.environ if env is None else env
    explicit = env.get("FLUX_CONFIG")
    if explicit:
        return Path(explicit)
    if SYSTEM_CONFIG_PATH.is_file():
        return SYSTEM_CONFIG_PATH
    user_path = Path(env.get("HOME", "~")).expanduser() / ".config" / "flux" / "flux.toml"
    if user_path.is_file():
        return user_path
    return None


def load_config_file(path: Optional[Path]) -> Dict[str, Any]:
    """Read a TOML config file. A missing file yields an empty document."""
    if path is None or not Path(path).is_file():
        return {}
    logger.debug("Loading config from %s", path)
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Failed to parse config file {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Failed to read config file {path}: {e}") from e


def merge_settings(base: Mapping[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Key-level merge; nested tables are merged rather than replaced."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = merge_settings(merged[key], value)
        else:
            merged[key] = value
    return merged


def parse_set_options(options: Iterable[str]) -> Dict[str, Dict[str, Any]]:
    """Turn ``module.key=value`` strings into per-module overrides.

    A leading ``modules.`` is accepted so the full key path from the config
    file can be used.
    """
    overrides: Dict[str, Dict[str, Any]] = {}
    for option in options:
        path, sep, value = option.partition("=")
        if not sep:
            raise ConfigError(f"Invalid override '{option}', expected module.key=value")
        parts = path.strip().split(".")
        if parts[0] == "modules":
            parts = parts[1:]
        if len(parts) < 2 or not all(parts):
            raise ConfigError(f"Invalid override '{option}', expected module.key=value")
        module, keys = parts[0], parts[1:]
        node = overrides.setdefault(module, {})
        for key in keys[:-1]:
            node = node.setdefault(key, {})
        node[keys[-1]] = value.strip()
    return overrides


def env_var_name(module: str, key: str) -> str:
    return f"{ENV_PREFIX}{module.upper().replace('-', '_')}_{key.upper()}"


def _is_sequence_field(annotation: Any) -> bool:
    if typing.get_origin(annotation) in (typing.Union, types.UnionType):
        return any(_is_sequence_field(arg) for arg in typing.get_args(annotation))
    sequence_types = (list, tuple, set, frozenset)
    return annotation in sequence_types or typing.get_origin(annotation) in sequence_types


def _coerce_text(schema: Type[ModuleSettings], key: str, raw: str) -> Any:
    """Prepare a string from the environment or CLI for validation."""
    field = schema.model_fields.get(key)
    if field is not None and _is_sequence_field(field.annotation):
        return [item.strip() for item in raw.split(",") if item.strip()]
    return raw


def _coerce_all(schema: Type[ModuleSettings], values: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        key: _coerce_text(schema, key, value) if isinstance(value, str) else value
        for key, value in values.items()
    }


def _table(file_data: Mapping[str, Any], section: str) -> Mapping[str, Any]:
    value = file_data.get(section, {})
    if not isinstance(value, Mapping):
        raise ConfigError(f"[{section}] must be a table")
    return value


def _describe(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        location = ".".join(str(p) for p in err["loc"]) or "value"
        parts.append(f"{location}: {err['msg']}")
    return "; ".join(parts)


class ConfigResolver:
    """Builds a ``ResolvedConfig`` from the four configuration sources."""

    def __init__(self, schemas: Mapping[str, Type[ModuleSettings]]):
        self.schemas = dict(schemas)

    def env_overrides(self, env: Mapping[str, str]) -> Dict[str, Dict[str, Any]]:
        """Collect ``FLUX_<MODULE>_<KEY>`` variables for declared keys."""
        overrides: Dict[str, Dict[str, Any]] = {}
        for module, schema in self.schemas.items():
            for key in schema.model_fields:
                name = env_var_name(module, key)
                if name in env:
                    overrides.setdefault(module, {})[key] = env[name]
        return overrides

    def resolve_general(
        self,
        file_data: Mapping[str, Any],
        env: Mapping[str, str],
        cli_general: Optional[Mapping[str, Any]] = None,
    ) -> GeneralSettings:
        values = merge_settings({}, _table(file_data, "general"))
        for key in ("mode", "log_level", "log_file"):
            name = f"{ENV_PREFIX}{key.upper()}"
            if name in env:
                values[key] = env[name]
        values = merge_settings(values, cli_general or {})
        try:
            return GeneralSettings.model_validate(values)
        except ValidationError as e:
            raise ConfigError(f"Invalid [general] settings: {_describe(e)}") from e

    def resolve_workflows(self, file_data: Mapping[str, Any]) -> Dict[str, WorkflowPolicy]:
        policies = {}
        for name, table in _table(file_data, "workflows").items():
            if not isinstance(table, Mapping):
                raise ConfigError(f"[workflows.{name}] must be a table")
            try:
                policies[name] = WorkflowPolicy.model_validate(table)
            except ValidationError as e:
                raise ConfigError(f"Invalid [workflows.{name}] settings: {_describe(e)}") from e
        return policies

    def resolve(
        self,
        file_data: Optional[Mapping[str, Any]] = None,
        env: Optional[Mapping[str, str]] = None,
        cli_overrides: Optional[Mapping[str, Mapping[str, Any]]] = None,
        cli_general: Optional[Mapping[str, Any]] = None,
        source: Optional[Path] = None,
    ) -> ResolvedConfig:
        """Merge all sources. Same inputs always give an equal result."""
        file_data = file_data or {}
        env = env or {}
        cli_overrides = cli_overrides or {}

        file_modules = _table(file_data, "modules")
        env_modules = self.env_overrides(env)

        for name in set(file_modules) | set(cli_overrides):
            if name not in self.schemas:
                logger.debug("Ignoring settings for unknown module '%s'", name)

        modules: Dict[str, ModuleSettings] = {}
        errors: Dict[str, ConfigError] = {}
        for name, schema in self.schemas.items():
            if not isinstance(file_modules.get(name, {}), Mapping):
                errors[name] = ConfigError(f"[modules.{name}] must be a table", module=name)
                continue
            values = schema().model_dump()
            values = merge_settings(values, file_modules.get(name, {}))
            values = merge_settings(values, _coerce_all(schema, env_modules.get(name, {})))
            values = merge_settings(values, _coerce_all(schema, cli_overrides.get(name, {})))
            try:
                modules[name] = schema.model_validate(values)
            except ValidationError as e:
                errors[name] = ConfigError(
                    f"Invalid settings for module '{name}': {_describe(e)}", module=name
                )

        return ResolvedConfig(
            general=self.resolve_general(file_data, env, cli_general),
            modules=modules,
            errors=errors,
            workflows=self.resolve_workflows(file_data),
            source=source,
        )
