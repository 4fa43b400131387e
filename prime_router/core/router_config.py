"""
Router Configuration Management
===============================

Unified configuration for the classifier, capacity monitor, routing engine,
quality gate, telemetry and the provider list.

CONFIGURATION HIERARCHY (highest to lowest priority):
    1. Environment variables (PRIME_ROUTER_*)
    2. Runtime overrides (ConfigManager.set)
    3. Explicit config file(s)
    4. Project config file (./prime_router.yaml)
    5. User config file (~/.prime_router/config.yaml)
    6. Default values

Provider records are loaded into an immutable ProviderSet and published to a
ProviderRegistry. Hot reload builds a new ProviderSet and swaps the registry
reference in one assignment; requests already in flight keep the snapshot
they started with.

Credentials are never stored in provider records. A record carries an opaque
``credentials_ref`` (``env:OPENAI_API_KEY``, ``file:/run/secrets/anthropic``)
that SecretResolver turns into a value at call time.

Example provider file:

    quality:
      scorer: composite
      min_score: 0.6
      escalation_cap: 2
    providers:
      - id: local-llama
        kind: local
        endpoint: http://127.0.0.1:8080/v1/chat/completions
        adapter: openai
        max_context_tokens: 8192
        priority: 10
      - id: claude
        kind: cloud
        endpoint: https://api.anthropic.com/v1/messages
        adapter: anthropic
        model: claude-sonnet-4-20250514
        credentials_ref: env:ANTHROPIC_API_KEY
        max_context_tokens: 200000
        rpm_limit: 50
        priority: 50
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import threading
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

import yaml

from prime_router.core.router_errors import ConfigError
from prime_router.core.router_models import ProviderDescriptor, ProviderKind, ProviderSet

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION SECTIONS
# =============================================================================

@dataclass
class ClassifierConfig:
    """Configuration for the complexity classifier."""

    token_threshold: int = 2000
    complex_domains: List[str] = field(
        default_factory=lambda: ["medical", "legal", "financial", "scientific"]
    )
    detect_pii: bool = True
    chars_per_token: float = 4.0


@dataclass
class MonitorConfig:
    """Configuration for the capacity monitor and circuit breakers."""

    window_seconds: float = 60.0
    failure_threshold: int = 5
    cooldown_seconds: float = 30.0
    quota_window_seconds: float = 60.0


@dataclass
class RoutingConfig:
    """Configuration for the routing engine."""

    ranking_policy: str = "weighted"
    affinity_weight: float = 0.3
    load_weight: float = 0.3
    priority_weight: float = 0.25
    tier_weight: float = 0.15
    max_fallback_chain: int = 3
    affinity_capacity: int = 10000


@dataclass
class QualityConfig:
    """Configuration for the quality gate."""

    scorer: str = "composite"
    min_score: float = 0.5
    escalation_cap: int = 2
    static_score: float = 1.0
    default_expected_tokens: int = 64


@dataclass
class TelemetryConfig:
    """Configuration for telemetry events."""

    enabled: bool = True
    log_events: bool = True
    jsonl_path: Optional[Path] = None


SECTION_TYPES = {
    "classifier": ClassifierConfig,
    "monitor": MonitorConfig,
    "routing": RoutingConfig,
    "quality": QualityConfig,
    "telemetry": TelemetryConfig,
}


@dataclass
class RouterConfig:
    """Master configuration aggregating every section plus the provider list."""

    classifier: ClassifierConfig = field(default_factory=ClassifierConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    routing: RoutingConfig = field(default_factory=RoutingConfig)
    quality: QualityConfig = field(default_factory=QualityConfig)
    telemetry: TelemetryConfig = field(default_factory=TelemetryConfig)
    providers: List[ProviderDescriptor] = field(default_factory=list)

    config_version: str = "1.0"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        result: Dict[str, Any] = {}
        for section_name in SECTION_TYPES:
            section = getattr(self, section_name)
            result[section_name] = {
                k: str(v) if isinstance(v, Path) else v
                for k, v in section.__dict__.items()
            }
        result["providers"] = [p.to_dict() for p in self.providers]
        result["config_version"] = self.config_version
        return result

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RouterConfig":
        """Create from dictionary. Unknown keys are ignored with a warning."""
        config = cls()
        merge_into(config, data)
        return config


def merge_into(config: RouterConfig, data: Mapping[str, Any]) -> None:
    """Merge a raw mapping onto an existing RouterConfig in place."""
    for section_name, section_data in (data or {}).items():
        if section_name == "providers":
            config.providers = parse_providers(section_data or [])
        elif section_name == "config_version":
            config.config_version = str(section_data)
        elif section_name in SECTION_TYPES:
            if section_data is None:
                continue
            if not isinstance(section_data, dict):
                raise ConfigError(f"Config section '{section_name}' must be a mapping")

            section = getattr(config, section_name)
            for key, value in section_data.items():
                if not hasattr(section, key):
                    logger.warning(f"Unknown config key: {section_name}.{key}")
                    continue
                try:
                    setattr(section, key, _coerce(getattr(section, key), value, key))
                except (TypeError, ValueError) as e:
                    raise ConfigError(f"Invalid value for {section_name}.{key}: {value!r} ({e})") from e
        else:
            logger.warning(f"Unknown config section: {section_name}")


def _coerce(current: Any, value: Any, key: str) -> Any:
    """Coerce a raw value to the type of the field's current value."""
    if value is None:
        return current
    if isinstance(current, Path) or key.endswith("_path"):
        return Path(value)
    if isinstance(current, bool):
        return _coerce_bool(value)
    if isinstance(current, int):
        return _coerce_int(value)
    if isinstance(current, float):
        return _coerce_float(value)
    if isinstance(current, list):
        if isinstance(value, str):
            return [v.strip() for v in value.split(",") if v.strip()]
        if not isinstance(value, (list, tuple)):
            raise TypeError(f"expected a list, got {type(value).__name__}")
        return [str(v) for v in value]
    if isinstance(current, str):
        if isinstance(value, (dict, list, tuple)):
            raise TypeError(f"expected a string, got {type(value).__name__}")
        return str(value)
    return value


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "yes", "on", "1"):
        return True
    if isinstance(value, str) and value.strip().lower() in ("false", "no", "off", "0"):
        return False
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    raise ValueError(f"expected a boolean, got {value!r}")


def _coerce_int(value: Any) -> int:
    if isinstance(value, bool):
        raise TypeError("expected an integer, got a boolean")
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError(f"expected an integer, got {value!r}")
        return int(value)
    if isinstance(value, (int, str)):
        return int(value)
    raise TypeError(f"expected an integer, got {type(value).__name__}")


def _coerce_float(value: Any) -> float:
    if isinstance(value, bool):
        raise TypeError("expected a number, got a boolean")
    if isinstance(value, (int, float, str)):
        return float(value)
    raise TypeError(f"expected a number, got {type(value).__name__}")


# =============================================================================
# PROVIDER RECORDS
# =============================================================================

LITERAL_SECRET_KEYS = frozenset({
    "api_key", "apikey", "key", "secret", "password", "token", "access_token", "credentials",
})

_PROVIDER_FIELDS = {f.name for f in fields(ProviderDescriptor)}


def parse_provider(record: Mapping[str, Any]) -> ProviderDescriptor:
    """Build a ProviderDescriptor from one declarative record."""
    if not isinstance(record, Mapping):
        raise ConfigError(f"Provider record must be a mapping, got {type(record).__name__}")

    data = dict(record)
    if "id" in data and "provider_id" not in data:
        data["provider_id"] = data.pop("id")

    provider_id = data.get("provider_id")
    if not provider_id or not isinstance(provider_id, str):
        raise ConfigError("Provider record is missing 'id'")

    leaked = sorted(LITERAL_SECRET_KEYS & set(data))
    if leaked:
        raise ConfigError(
            f"Provider {provider_id} carries literal credentials ({', '.join(leaked)}); "
            f"use credentials_ref instead"
        )

    ref = data.get("credentials_ref")
    if ref is not None and (not isinstance(ref, str) or ":" not in ref):
        raise ConfigError(f"Provider {provider_id}: credentials_ref must look like 'scheme:reference'")

    try:
        data["kind"] = ProviderKind(str(data.get("kind", "")).lower())
    except ValueError:
        raise ConfigError(f"Provider {provider_id}: kind must be 'local' or 'cloud'") from None

    unknown = set(data) - _PROVIDER_FIELDS
    if unknown:
        logger.warning(f"Provider {provider_id}: ignoring unknown keys {sorted(unknown)}")
        for key in unknown:
            data.pop(key)

    _coerce_provider_fields(provider_id, data)

    descriptor = ProviderDescriptor(**data)

    if descriptor.max_context_tokens <= 0:
        raise ConfigError(f"Provider {provider_id}: max_context_tokens must be positive")
    if descriptor.timeout_seconds <= 0:
        raise ConfigError(f"Provider {provider_id}: timeout_seconds must be positive")
    for key in ("rpm_limit", "tpm_limit"):
        limit = getattr(descriptor, key)
        if limit is not None and limit <= 0:
            raise ConfigError(f"Provider {provider_id}: {key} must be positive when set")

    return descriptor


_PROVIDER_INT_FIELDS = ("max_context_tokens", "rpm_limit", "tpm_limit", "priority")
_PROVIDER_FLOAT_FIELDS = ("timeout_seconds", "cost_per_1k_tokens")
_PROVIDER_STR_FIELDS = ("endpoint", "adapter", "model")
_NULLABLE_PROVIDER_FIELDS = frozenset({"model", "credentials_ref", "rpm_limit", "tpm_limit"})


def _coerce_provider_fields(provider_id: str, data: Dict[str, Any]) -> None:
    """Convert typed provider fields in place. Quoted numbers are accepted."""
    for key in list(data):
        value = data[key]
        if value is None and key not in _NULLABLE_PROVIDER_FIELDS:
            # null means "use the default"
            data.pop(key)
            continue
        if value is None:
            continue

        try:
            if key in _PROVIDER_INT_FIELDS:
                data[key] = _coerce_int(value)
            elif key in _PROVIDER_FLOAT_FIELDS:
                data[key] = _coerce_float(value)
            elif key == "enabled":
                data[key] = _coerce_bool(value)
            elif key in _PROVIDER_STR_FIELDS and not isinstance(value, str):
                raise TypeError(f"expected a string, got {type(value).__name__}")
            elif key == "capabilities":
                if isinstance(value, str):
                    value = [v.strip() for v in value.split(",") if v.strip()]
                elif not isinstance(value, (list, tuple, set, frozenset)):
                    raise TypeError(f"expected a list, got {type(value).__name__}")
                data[key] = frozenset(str(v) for v in value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Provider {provider_id}: invalid {key} {value!r} ({e})") from e


def parse_providers(records: Iterable[Mapping[str, Any]]) -> List[ProviderDescriptor]:
    """Parse a provider list, rejecting duplicate ids."""
    providers = [parse_provider(r) for r in records]
    seen = set()
    for provider in providers:
        if provider.provider_id in seen:
            raise ConfigError(f"Duplicate provider id: {provider.provider_id}")
        seen.add(provider.provider_id)
    return providers


# =============================================================================
# PROVIDER REGISTRY
# =============================================================================

class ProviderRegistry:
    """
    Holds the current ProviderSet.

    Readers take snapshot() once and keep using it. publish() replaces the
    whole set with a new immutable one; nothing is ever mutated in place.
    """

    def __init__(self, providers: Sequence[ProviderDescriptor] = ()):
        self._publish_lock = threading.Lock()
        self._current = ProviderSet(tuple(providers), version=1)
        self._listeners: List[Callable[[ProviderSet], None]] = []

    def snapshot(self) -> ProviderSet:
        return self._current

    @property
    def version(self) -> int:
        return self._current.version

    def publish(self, providers: Sequence[ProviderDescriptor]) -> ProviderSet:
        """Atomically replace the provider set."""
        with self._publish_lock:
            ids = [p.provider_id for p in providers]
            if len(ids) != len(set(ids)):
                raise ConfigError("Duplicate provider ids in published set")

            new_set = ProviderSet(tuple(providers), version=self._current.version + 1)
            self._current = new_set

        logger.info(f"Published provider set v{new_set.version} ({len(new_set)} providers)")

        for listener in list(self._listeners):
            try:
                listener(new_set)
            except Exception as e:
                logger.warning(f"Provider set listener error: {e}")

        return new_set

    def on_publish(self, listener: Callable[[ProviderSet], None]) -> Callable[[ProviderSet], None]:
        self._listeners.append(listener)
        return listener


# =============================================================================
# SECRETS
# =============================================================================

class SecretResolver:
    """
    Resolves opaque credential references.

    Built-in schemes:
        env:NAME        value of environment variable NAME
        file:/path      stripped contents of a file (Docker/K8s secrets)

    Additional schemes (vault, cloud secret managers) are registered with
    register(scheme, resolver).
    """

    def __init__(self):
        self._resolvers: Dict[str, Callable[[str], Optional[str]]] = {
            "env": self._resolve_env,
            "file": self._resolve_file,
        }

    def register(self, scheme: str, resolver: Callable[[str], Optional[str]]) -> None:
        self._resolvers[scheme] = resolver

    def resolve(self, ref: Optional[str]) -> Optional[str]:
        """Resolve a reference; None means the provider needs no credentials."""
        if not ref:
            return None

        scheme, _, target = ref.partition(":")
        resolver = self._resolvers.get(scheme)
        if resolver is None:
            raise ConfigError(f"Unknown credentials scheme: {scheme}")

        value = resolver(target)
        if not value:
            raise ConfigError(f"Credentials reference {scheme}:{target} resolved to nothing")
        return value

    @staticmethod
    def _resolve_env(name: str) -> Optional[str]:
        return os.environ.get(name)

    @staticmethod
    def _resolve_file(path: str) -> Optional[str]:
        try:
            return Path(path).read_text().strip()
        except OSError as e:
            logger.warning(f"Failed to read credentials file {path}: {e}")
            return None


# =============================================================================
# CONFIGURATION MANAGER
# =============================================================================

class ConfigManager:
    """
    Manages router configuration with support for:
    - Multiple config sources (files, env vars)
    - Validation
    - Hot reloading (provider set swapped atomically)
    - Change notifications

    Usage:
        manager = ConfigManager([Path("providers.yaml")])
        await manager.load()

        # Access config
        cap = manager.config.quality.escalation_cap

        # Override at runtime
        manager.set("quality.min_score", 0.7)

        # Watch for changes
        @manager.on_change("quality")
        def handle_quality_change(new_section):
            ...
    """

    ENV_PREFIX = "PRIME_ROUTER_"

    def __init__(
        self,
        config_paths: Optional[List[Path]] = None,
        registry: Optional[ProviderRegistry] = None,
        auto_reload: bool = False,
        poll_interval: float = 5.0,
    ) -> None:
        self._config_paths = [Path(p) for p in config_paths] if config_paths else self._default_paths()
        self._auto_reload = auto_reload
        self._poll_interval = poll_interval
        self._config = RouterConfig()
        self._overrides: Dict[str, Any] = {}
        self._change_callbacks: Dict[str, List[Callable]] = {}
        self._watch_task: Optional[asyncio.Task] = None
        self._file_mtimes: Dict[Path, float] = {}
        self._lock = asyncio.Lock()
        self.registry = registry or ProviderRegistry()

    def _default_paths(self) -> List[Path]:
        """Get default config file paths (highest priority first)."""
        return [
            Path("prime_router.yaml"),
            Path("prime_router.json"),
            Path.home() / ".prime_router" / "config.yaml",
            Path.home() / ".prime_router" / "config.json",
        ]

    @property
    def config(self) -> RouterConfig:
        """Get current configuration."""
        return self._config

    def load_sync(self) -> RouterConfig:
        """Build configuration from every source and publish providers."""
        config = RouterConfig()

        # Lowest priority file first so later files win
        for path in reversed(self._config_paths):
            if path.exists():
                merge_into(config, self._read_file(path))
                self._file_mtimes[path] = path.stat().st_mtime

        for key, value in self._overrides.items():
            self._apply(config, key, value)

        self._apply_env_vars(config)
        self._validate(config)

        self._config = config
        self.registry.publish(config.providers)

        logger.info(
            f"Configuration loaded (version {config.config_version}, "
            f"{len(config.providers)} providers)"
        )
        return config

    async def load(self) -> RouterConfig:
        """Load configuration from all sources."""
        async with self._lock:
            config = self.load_sync()

            if self._auto_reload and self._watch_task is None:
                self._watch_task = asyncio.create_task(self._watch_files())

            return config

    def _read_file(self, path: Path) -> Dict[str, Any]:
        """Read one config file. Parse errors are ConfigError."""
        try:
            content = path.read_text()
        except OSError as e:
            raise ConfigError(f"Failed to read {path}: {e}") from e

        try:
            if path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(content)
            else:
                data = json.loads(content)
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise ConfigError(f"Failed to parse {path}: {e}") from e

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(f"Top level of {path} must be a mapping")

        logger.debug(f"Loaded config from {path}")
        return data

    def _apply_env_vars(self, config: RouterConfig) -> None:
        """Apply environment variable overrides."""
        for key, value in os.environ.items():
            if not key.startswith(self.ENV_PREFIX):
                continue

            # PRIME_ROUTER_QUALITY_MIN_SCORE -> quality.min_score
            config_key = key[len(self.ENV_PREFIX):].lower().replace("_", ".", 1)

            try:
                self._apply(config, config_key, self._parse_env_value(value))
            except (TypeError, ValueError) as e:
                logger.warning(f"Failed to apply env var {key}: {e}")

    def _parse_env_value(self, value: str) -> Any:
        """Parse environment variable value."""
        if value.lower() in ("true", "yes"):
            return True
        if value.lower() in ("false", "no"):
            return False

        try:
            return int(value)
        except ValueError:
            pass

        try:
            return float(value)
        except ValueError:
            pass

        return value

    def _validate(self, config: RouterConfig) -> None:
        """Clamp numeric ranges."""
        quality = config.quality
        if not 0.0 <= quality.min_score <= 1.0:
            logger.warning(f"quality.min_score {quality.min_score} out of range, clamping to [0, 1]")
            quality.min_score = min(max(quality.min_score, 0.0), 1.0)

        if quality.escalation_cap < 0:
            logger.warning("quality.escalation_cap negative, setting to 0")
            quality.escalation_cap = 0

        monitor = config.monitor
        if monitor.failure_threshold < 1:
            logger.warning("monitor.failure_threshold must be >= 1, setting to 1")
            monitor.failure_threshold = 1

        if monitor.window_seconds <= 0:
            logger.warning("monitor.window_seconds must be positive, setting to 60")
            monitor.window_seconds = 60.0

        if monitor.cooldown_seconds < 0:
            logger.warning("monitor.cooldown_seconds negative, setting to 0")
            monitor.cooldown_seconds = 0.0

        routing = config.routing
        for weight in ("affinity_weight", "load_weight", "priority_weight", "tier_weight"):
            if getattr(routing, weight) < 0:
                logger.warning(f"routing.{weight} negative, setting to 0")
                setattr(routing, weight, 0.0)

        if routing.max_fallback_chain < 0:
            routing.max_fallback_chain = 0

    async def _watch_files(self) -> None:
        """Watch config files for changes."""
        while True:
            try:
                await asyncio.sleep(self._poll_interval)
                if self.files_changed():
                    await self.reload()

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning(f"Config watch error: {e}")

    def files_changed(self) -> bool:
        """Check whether any watched config file changed since last load."""
        for path in self._config_paths:
            if not path.exists():
                if path in self._file_mtimes:
                    return True
                continue
            if self._file_mtimes.get(path) != path.stat().st_mtime:
                logger.info(f"Config file changed: {path}")
                return True
        return False

    async def reload(self) -> RouterConfig:
        """
        Reload configuration from files.

        On any error the previous configuration and provider set stay active.
        """
        old_config = self._config
        try:
            await self.load()
        except ConfigError as e:
            logger.warning(f"Config reload rejected, keeping previous configuration: {e}")
            return old_config

        for section, callbacks in self._change_callbacks.items():
            old_section = getattr(old_config, section, None)
            new_section = getattr(self._config, section, None)

            if old_section != new_section:
                for callback in callbacks:
                    try:
                        if asyncio.iscoroutinefunction(callback):
                            await callback(new_section)
                        else:
                            callback(new_section)
                    except Exception as e:
                        logger.warning(f"Config change callback error: {e}")

        return self._config

    def _apply(self, config: RouterConfig, key: str, value: Any) -> None:
        parts = key.split(".")
        if len(parts) != 2 or parts[0] not in SECTION_TYPES:
            raise ValueError(f"Unknown config key: {key}")

        section = getattr(config, parts[0])
        if not hasattr(section, parts[1]):
            raise ValueError(f"Unknown config key: {key}")

        setattr(section, parts[1], _coerce(getattr(section, parts[1]), value, parts[1]))

    def set(self, key: str, value: Any) -> None:
        """Set a configuration value at runtime."""
        self._apply(self._config, key, value)
        self._overrides[key] = value

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value."""
        parts = key.split(".")

        if len(parts) == 1:
            return getattr(self._config, parts[0], default)
        if len(parts) == 2:
            section = getattr(self._config, parts[0], None)
            if section is not None:
                return getattr(section, parts[1], default)

        return default

    def on_change(self, section: str) -> Callable:
        """Decorator to register change callback for a section."""
        def decorator(func: Callable) -> Callable:
            self._change_callbacks.setdefault(section, []).append(func)
            return func
        return decorator

    async def shutdown(self) -> None:
        """Stop watching config files."""
        if self._watch_task:
            self._watch_task.cancel()
            try:
                await self._watch_task
            except asyncio.CancelledError:
                pass
            self._watch_task = None


def load_config(path: Optional[Path] = None, registry: Optional[ProviderRegistry] = None) -> ConfigManager:
    """Load configuration synchronously from an explicit file (or defaults)."""
    manager = ConfigManager([Path(path)] if path else None, registry=registry)
    manager.load_sync()
    return manager
