"""
Configuration management and loading.

Handles orchestrator, health, monitor, store and logging settings.
"""

import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml


class MediaBackend(Enum):
    """Media store implementations that can be wired from config."""
    LOCAL = "local"
    KUBO = "kubo"


@dataclass(frozen=True)
class OrchestratorConfig:
    """Saga behaviour: verification polling, principal checks, orphan grace."""
    verification_attempts: int = 5
    verification_delay_s: float = 10.0
    orphan_grace_period_minutes: float = 60.0
    critical_fields: Tuple[str, ...] = ("title", "ticket_price")
    min_principal_balance: Decimal = Decimal("0.01")
    allowed_networks: Tuple[int, ...] = (43113, 43114)
    signer_pattern: str = r"^0x[a-fA-F0-9]{40}$"
    max_capacity: int = 1_000_000
    sync_batch_size: int = 1000

    def __post_init__(self):
        """Validate orchestrator values."""
        if self.verification_attempts < 1:
            raise ValueError("verification_attempts must be >= 1")
        if self.verification_delay_s < 0:
            raise ValueError("verification_delay_s must be >= 0")
        if self.orphan_grace_period_minutes < 0:
            raise ValueError("orphan_grace_period_minutes must be >= 0")
        if not self.critical_fields:
            raise ValueError("critical_fields must not be empty")
        if self.min_principal_balance < 0:
            raise ValueError("min_principal_balance must be >= 0")
        if not self.allowed_networks:
            raise ValueError("allowed_networks must not be empty")
        if self.max_capacity < 1:
            raise ValueError("max_capacity must be >= 1")
        if self.sync_batch_size < 1:
            raise ValueError("sync_batch_size must be >= 1")
        try:
            re.compile(self.signer_pattern)
        except re.error as e:
            raise ValueError(f"signer_pattern is not a valid regex: {e}")


@dataclass(frozen=True)
class HealthConfig:
    """Per-store health probing."""
    cache_ttl_s: float = 60.0
    timeout_s: float = 5.0
    degraded_threshold_ms: float = 2000.0

    def __post_init__(self):
        if self.cache_ttl_s < 0:
            raise ValueError("cache_ttl_s must be >= 0")
        if self.timeout_s <= 0:
            raise ValueError("timeout_s must be > 0")
        if self.degraded_threshold_ms <= 0:
            raise ValueError("degraded_threshold_ms must be > 0")


@dataclass(frozen=True)
class MonitorConfig:
    """Alert thresholds and reconciliation sweep schedule."""
    alerts_enabled: bool = True
    response_time_threshold_ms: float = 5000.0
    error_rate_threshold_pct: float = 5.0
    sweep_interval_minutes: float = 60.0
    latency_smoothing: float = 0.2

    def __post_init__(self):
        if self.response_time_threshold_ms <= 0:
            raise ValueError("response_time_threshold_ms must be > 0")
        if not 0 <= self.error_rate_threshold_pct <= 100:
            raise ValueError("error_rate_threshold_pct must be between 0 and 100")
        if self.sweep_interval_minutes <= 0:
            raise ValueError("sweep_interval_minutes must be > 0")
        if not 0 < self.latency_smoothing <= 1:
            raise ValueError("latency_smoothing must be in (0, 1]")


@dataclass(frozen=True)
class MediaConfig:
    backend: MediaBackend = MediaBackend.LOCAL
    directory: str = "media"
    api_url: str = "http://127.0.0.1:5001"
    gateway_url: str = "http://127.0.0.1:8080"


@dataclass(frozen=True)
class StoresConfig:
    """Locations of the concrete stores."""
    cache_db_path: str = "ledger_saga_cache.db"
    ledger_db_path: str = "ledger_saga_ledger.db"
    operations_db_path: str = "ledger_saga_operations.db"
    network_id: int = 43113
    media: MediaConfig = field(default_factory=MediaConfig)


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    file: Optional[str] = None

    def __post_init__(self):
        if self.level.upper() not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown logging level: {self.level}")


@dataclass(frozen=True)
class Settings:
    """Complete configuration."""
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    stores: StoresConfig = field(default_factory=StoresConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def load_settings(path: Optional[str] = None) -> Settings:
    """Load and validate settings from a YAML file.

    Strict validation: unknown keys and wrong types are errors, never
    silently ignored. Missing keys take their defaults.

    Args:
        path: Path to YAML configuration file, or None for defaults

    Returns:
        Validated Settings object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if path is None:
        return Settings()

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    _check_keys(raw_config, {'orchestrator', 'health', 'monitor', 'stores', 'logging'}, "config")

    return Settings(
        orchestrator=_parse_orchestrator(_section(raw_config, 'orchestrator')),
        health=_parse_health(_section(raw_config, 'health')),
        monitor=_parse_monitor(_section(raw_config, 'monitor')),
        stores=_parse_stores(_section(raw_config, 'stores')),
        logging=_parse_logging(_section(raw_config, 'logging')),
    )


def _section(raw: Dict, name: str) -> Dict:
    data = raw.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return data


def _check_keys(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _number(data: Dict, key: str, path: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    return float(value)


def _integer(data: Dict, key: str, path: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{key}' in {path} must be an integer")
    return value


def _string(data: Dict, key: str, path: str, default: Optional[str]) -> Optional[str]:
    value = data.get(key, default)
    if value is not None and not isinstance(value, str):
        raise ValueError(f"'{key}' in {path} must be a string")
    return value


def _parse_orchestrator(data: Dict) -> OrchestratorConfig:
    path = "orchestrator"
    defaults = OrchestratorConfig()
    _check_keys(data, {
        'verification_attempts', 'verification_delay_s', 'orphan_grace_period_minutes',
        'critical_fields', 'min_principal_balance', 'allowed_networks',
        'signer_pattern', 'max_capacity', 'sync_batch_size',
    }, path)

    critical_fields = data.get('critical_fields', list(defaults.critical_fields))
    if not isinstance(critical_fields, list) or not all(isinstance(f, str) for f in critical_fields):
        raise ValueError(f"'critical_fields' in {path} must be a list of strings")

    networks = data.get('allowed_networks', list(defaults.allowed_networks))
    if not isinstance(networks, list) or not all(
        isinstance(n, int) and not isinstance(n, bool) for n in networks
    ):
        raise ValueError(f"'allowed_networks' in {path} must be a list of integers")

    raw_balance = data.get('min_principal_balance', str(defaults.min_principal_balance))
    try:
        min_balance = Decimal(str(raw_balance))
    except InvalidOperation:
        raise ValueError(f"'min_principal_balance' in {path} must be a decimal number")

    return OrchestratorConfig(
        verification_attempts=_integer(data, 'verification_attempts', path, defaults.verification_attempts),
        verification_delay_s=_number(data, 'verification_delay_s', path, defaults.verification_delay_s),
        orphan_grace_period_minutes=_number(
            data, 'orphan_grace_period_minutes', path, defaults.orphan_grace_period_minutes
        ),
        critical_fields=tuple(critical_fields),
        min_principal_balance=min_balance,
        allowed_networks=tuple(networks),
        signer_pattern=_string(data, 'signer_pattern', path, defaults.signer_pattern),
        max_capacity=_integer(data, 'max_capacity', path, defaults.max_capacity),
        sync_batch_size=_integer(data, 'sync_batch_size', path, defaults.sync_batch_size),
    )


def _parse_health(data: Dict) -> HealthConfig:
    path = "health"
    defaults = HealthConfig()
    _check_keys(data, {'cache_ttl_s', 'timeout_s', 'degraded_threshold_ms'}, path)
    return HealthConfig(
        cache_ttl_s=_number(data, 'cache_ttl_s', path, defaults.cache_ttl_s),
        timeout_s=_number(data, 'timeout_s', path, defaults.timeout_s),
        degraded_threshold_ms=_number(data, 'degraded_threshold_ms', path, defaults.degraded_threshold_ms),
    )


def _parse_monitor(data: Dict) -> MonitorConfig:
    path = "monitor"
    defaults = MonitorConfig()
    _check_keys(data, {
        'alerts_enabled', 'response_time_threshold_ms', 'error_rate_threshold_pct',
        'sweep_interval_minutes', 'latency_smoothing',
    }, path)
    alerts_enabled = data.get('alerts_enabled', defaults.alerts_enabled)
    if not isinstance(alerts_enabled, bool):
        raise ValueError(f"'alerts_enabled' in {path} must be a boolean")
    return MonitorConfig(
        alerts_enabled=alerts_enabled,
        response_time_threshold_ms=_number(
            data, 'response_time_threshold_ms', path, defaults.response_time_threshold_ms
        ),
        error_rate_threshold_pct=_number(
            data, 'error_rate_threshold_pct', path, defaults.error_rate_threshold_pct
        ),
        sweep_interval_minutes=_number(data, 'sweep_interval_minutes', path, defaults.sweep_interval_minutes),
        latency_smoothing=_number(data, 'latency_smoothing', path, defaults.latency_smoothing),
    )


def _parse_stores(data: Dict) -> StoresConfig:
    path = "stores"
    defaults = StoresConfig()
    _check_keys(data, {'cache_db_path', 'ledger_db_path', 'operations_db_path', 'network_id', 'media'}, path)

    media_data = _section(data, 'media')
    media_path = "stores.media"
    media_defaults = MediaConfig()
    _check_keys(media_data, {'backend', 'directory', 'api_url', 'gateway_url'}, media_path)

    backend_str = _string(media_data, 'backend', media_path, media_defaults.backend.value)
    try:
        backend = MediaBackend(backend_str.lower())
    except ValueError:
        valid_backends = [b.value for b in MediaBackend]
        raise ValueError(f"'backend' in {media_path} must be one of: {valid_backends}")

    media = MediaConfig(
        backend=backend,
        directory=_string(media_data, 'directory', media_path, media_defaults.directory),
        api_url=_string(media_data, 'api_url', media_path, media_defaults.api_url),
        gateway_url=_string(media_data, 'gateway_url', media_path, media_defaults.gateway_url),
    )

    return StoresConfig(
        cache_db_path=_string(data, 'cache_db_path', path, defaults.cache_db_path),
        ledger_db_path=_string(data, 'ledger_db_path', path, defaults.ledger_db_path),
        operations_db_path=_string(data, 'operations_db_path', path, defaults.operations_db_path),
        network_id=_integer(data, 'network_id', path, defaults.network_id),
        media=media,
    )


def _parse_logging(data: Dict) -> LoggingConfig:
    path = "logging"
    _check_keys(data, {'level', 'file'}, path)
    return LoggingConfig(
        level=_string(data, 'level', path, "INFO"),
        file=_string(data, 'file', path, None),
    )


def describe(settings: Settings) -> Dict[str, Any]:
    """Flatten settings for diagnostics output."""
    return {
        "verification_attempts": settings.orchestrator.verification_attempts,
        "verification_delay_s": settings.orchestrator.verification_delay_s,
        "orphan_grace_period_minutes": settings.orchestrator.orphan_grace_period_minutes,
        "allowed_networks": list(settings.orchestrator.allowed_networks),
        "health_cache_ttl_s": settings.health.cache_ttl_s,
        "sweep_interval_minutes": settings.monitor.sweep_interval_minutes,
        "media_backend": settings.stores.media.backend.value,
        "network_id": settings.stores.network_id,
    }
