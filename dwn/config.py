"""
DWN Engine Configuration

Configuration values with YAML files, environment variables, validation and
change callbacks.

Configuration Sources (in order of precedence):
    1. Environment variables (DWN_*)
    2. Values set at runtime or loaded from a file
    3. Default values

Unlike a process-wide registry, every `ConfigManager` owns its own
`EngineConfig`, so two nodes in one process can run with different settings.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

import yaml

T = TypeVar("T")


class ConfigError(Exception):
    """Configuration error."""
    pass


class ConfigValidationError(ConfigError):
    """Configuration validation error."""
    pass


@dataclass
class ConfigValue(Generic[T]):
    """
    A single configuration value with metadata.

    Supports default values, environment variable binding,
    validation, and change callbacks.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    _value: Optional[T] = field(default=None, repr=False)
    _callbacks: List[Callable[[Optional[T], T], None]] = field(default_factory=list, repr=False)

    def get(self) -> T:
        """Get the current value."""
        if self.env_var and self.env_var in os.environ:
            value = self._coerce(os.environ[self.env_var])
            if self.validator and not self.validator(value):
                raise ConfigValidationError(f"Invalid value for {self.env_var}: {value!r}")
            return value
        return self._value if self._value is not None else self.default

    def set(self, value: T) -> None:
        """Set the value with validation."""
        if self.validator and not self.validator(value):
            raise ConfigValidationError(f"Invalid value for config: {value!r}")

        old_value = self._value
        self._value = value
        for callback in self._callbacks:
            callback(old_value, value)

    def _coerce(self, value: str) -> T:
        """Coerce string value to target type."""
        target_type = type(self.default)

        if target_type == bool:
            return value.strip().lower() in ("true", "1", "yes", "on")  # type: ignore
        elif target_type == int:
            try:
                return int(value)  # type: ignore
            except ValueError as ex:
                raise ConfigValidationError(f"{self.env_var} must be an integer, got {value!r}") from ex
        else:
            return value  # type: ignore

    def on_change(self, callback: Callable[[Optional[T], T], None]) -> None:
        """Register a change callback."""
        self._callbacks.append(callback)


@dataclass
class AuthorizationConfig:
    """Limits and modes of the authorization engine."""
    max_grant_chain_depth: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=4,
        env_var="DWN_MAX_GRANT_CHAIN_DEPTH",
        description="Maximum number of nested delegated grants",
        validator=lambda x: isinstance(x, int) and 1 <= x <= 32,
    ))
    role_inheritance: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="transitive",
        env_var="DWN_ROLE_INHERITANCE",
        description="Where context role records may sit (transitive, immediate)",
        validator=lambda x: x in ("transitive", "immediate"),
    ))
    max_record_depth: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=10,
        env_var="DWN_MAX_RECORD_DEPTH",
        description="Maximum protocol record nesting depth",
        validator=lambda x: isinstance(x, int) and 1 <= x <= 10,
    ))
    enforce_protocol_publication: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=True,
        env_var="DWN_ENFORCE_PUBLISHED",
        description="Reject non-owner writes to unpublished protocols",
    ))


@dataclass
class CacheConfig:
    """Configuration for injected lookup caches."""
    did_key_ttl_seconds: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=300,
        env_var="DWN_CACHE_DID_TTL",
        description="Resolved verification key TTL in seconds",
        validator=lambda x: x > 0,
    ))
    protocol_ttl_seconds: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=60,
        env_var="DWN_CACHE_PROTOCOL_TTL",
        description="Protocol definition TTL in seconds",
        validator=lambda x: x > 0,
    ))
    max_entries: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=10000,
        env_var="DWN_CACHE_MAX_ENTRIES",
        description="Maximum entries per cache",
        validator=lambda x: x > 0,
    ))


@dataclass
class ObservabilityConfig:
    """Configuration for Observability."""
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="info",
        env_var="DWN_LOG_LEVEL",
        description="Log level (debug, info, warning, error)",
        validator=lambda x: x in ("debug", "info", "warning", "error", "critical"),
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="json",
        env_var="DWN_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in ("json", "text"),
    ))
    audit_rejections: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=True,
        env_var="DWN_AUDIT_REJECTIONS",
        description="Record security-relevant rejections in the audit chain",
    ))
    audit_max_entries: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=10000,
        env_var="DWN_AUDIT_MAX_ENTRIES",
        description="Audit events kept in memory; older events are dropped",
        validator=lambda x: isinstance(x, int) and x > 0,
    ))


@dataclass
class EngineConfig:
    """Root configuration for a DWN authorization engine."""
    authorization: AuthorizationConfig = field(default_factory=AuthorizationConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        def extract_values(obj: Any) -> Any:
            if isinstance(obj, ConfigValue):
                return obj.get()
            elif hasattr(obj, "__dataclass_fields__"):
                return {k: extract_values(getattr(obj, k)) for k in obj.__dataclass_fields__}
            return obj

        return extract_values(self)

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), default_flow_style=False)


class ConfigManager:
    """Loads, updates and validates one `EngineConfig`."""

    def __init__(self, config: Optional[EngineConfig] = None):
        self._config = config or EngineConfig()
        self._config_paths: List[Path] = []

    @property
    def config(self) -> EngineConfig:
        return self._config

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as ex:
                raise ConfigError(f"Invalid YAML in {path}: {ex}") from ex

        if data:
            if not isinstance(data, dict):
                raise ConfigError(f"Configuration root must be a mapping: {path}")
            self.apply_dict(data)
        self._config_paths.append(path)

    def apply_dict(self, data: Dict[str, Any]) -> None:
        """Apply dictionary values to configuration."""
        def apply_to_config(config_obj: Any, values: Dict[str, Any], prefix: str) -> None:
            for key, value in values.items():
                path = f"{prefix}.{key}" if prefix else key
                if not hasattr(config_obj, key):
                    raise ConfigError(f"Unknown config key: {path}")
                attr = getattr(config_obj, key)
                if isinstance(attr, ConfigValue):
                    attr.set(value)
                elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
                    apply_to_config(attr, value, path)
                else:
                    raise ConfigError(f"Invalid config value at {path}")

        apply_to_config(self._config, data, "")

    def set(self, path: str, value: Any) -> None:
        """
        Set a configuration value by path.

        Example: manager.set("authorization.role_inheritance", "immediate")
        """
        attr = self._resolve(path)
        if not isinstance(attr, ConfigValue):
            raise ConfigError(f"Invalid config path: {path}")
        attr.set(value)

    def get(self, path: str) -> Any:
        """
        Get a configuration value by path.

        Example: manager.get("authorization.max_grant_chain_depth")
        """
        obj = self._resolve(path)
        if isinstance(obj, ConfigValue):
            return obj.get()
        return obj

    def _resolve(self, path: str) -> Any:
        obj: Any = self._config
        for part in path.split("."):
            if not hasattr(obj, part):
                raise ConfigError(f"Invalid config path: {path}")
            obj = getattr(obj, part)
        return obj

    def validate(self) -> List[str]:
        """
        Validate all configuration values.

        Returns list of validation errors.
        """
        errors: List[str] = []

        def validate_config(obj: Any, path: str = "") -> None:
            if isinstance(obj, ConfigValue):
                try:
                    value = obj.get()
                    if obj.validator and not obj.validator(value):
                        errors.append(f"{path}: validation failed for value {value}")
                except ConfigError as e:
                    errors.append(f"{path}: {e}")
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    field_path = f"{path}.{field_name}" if path else field_name
                    validate_config(getattr(obj, field_name), field_path)

        validate_config(self._config)
        return errors

    def export_schema(self) -> Dict[str, Any]:
        """Export configuration schema for documentation."""
        schema: Dict[str, Any] = {"properties": {}}

        def extract_schema(obj: Any, properties: Dict[str, Any]) -> None:
            if isinstance(obj, ConfigValue):
                properties["type"] = type(obj.default).__name__
                properties["default"] = str(obj.default)
                properties["description"] = obj.description
                if obj.env_var:
                    properties["env_var"] = obj.env_var
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    properties[field_name] = {}
                    extract_schema(getattr(obj, field_name), properties[field_name])

        extract_schema(self._config, schema["properties"])
        return schema


def load_config(path: Optional[Union[str, Path]] = None) -> EngineConfig:
    """Build a validated configuration, optionally from a YAML file."""
    manager = ConfigManager()
    if path is not None:
        manager.load_from_file(path)
    errors = manager.validate()
    if errors:
        raise ConfigValidationError("; ".join(errors))
    return manager.config
