"""
Configuration loader for the campaign-relay pipeline.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class BrokerConfig:
    backend: str = "memory"             # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    poll_timeout_seconds: float = 10.0  # blocking dequeue wait per poll
    error_backoff_seconds: float = 5.0  # pause after a broker-level failure
    monitored_queues: list[str] = field(
        default_factory=lambda: ["customer.jobs", "order.jobs", "campaign.jobs"]
    )


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./campaign_relay.db"        # postgresql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory"


@dataclass
class DeliveryConfig:
    batch_size: int = 10
    batch_delay_seconds: float = 1.0


@dataclass
class VendorConfig:
    success_rate: float = 0.9
    send_delay_ms: tuple[int, int] = (50, 200)
    receipt_delay_ms: tuple[int, int] = (100, 500)
    stagger_ms: tuple[int, int] = (10, 50)


@dataclass
class CustomerConfig:
    import_batch_size: int = 100


@dataclass
class Settings:
    app_name: str = "campaign-relay"
    debug: bool = False
    broker: BrokerConfig = field(default_factory=BrokerConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    delivery: DeliveryConfig = field(default_factory=DeliveryConfig)
    vendor: VendorConfig = field(default_factory=VendorConfig)
    customers: CustomerConfig = field(default_factory=CustomerConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _range(value: Any, default: tuple[int, int]) -> tuple[int, int]:
    if not value:
        return default
    low, high = value
    return int(low), int(high)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "CAMPAIGN_RELAY_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "broker" in raw:
            b = raw["broker"]
            defaults = BrokerConfig()
            settings.broker = BrokerConfig(
                backend=b.get("backend", defaults.backend),
                redis_url=b.get("redis_url", defaults.redis_url),
                poll_timeout_seconds=float(b.get("poll_timeout_seconds", defaults.poll_timeout_seconds)),
                error_backoff_seconds=float(b.get("error_backoff_seconds", defaults.error_backoff_seconds)),
                monitored_queues=list(b.get("monitored_queues", defaults.monitored_queues)),
            )

        if "database" in raw:
            db = raw["database"]
            settings.database = DatabaseConfig(
                url=db.get("url", settings.database.url),
                store_backend=db.get("store_backend", settings.database.store_backend),
            )

        if "delivery" in raw:
            d = raw["delivery"]
            settings.delivery = DeliveryConfig(
                batch_size=int(d.get("batch_size", 10)),
                batch_delay_seconds=float(d.get("batch_delay_seconds", 1.0)),
            )

        if "vendor" in raw:
            v = raw["vendor"]
            defaults = VendorConfig()
            settings.vendor = VendorConfig(
                success_rate=float(v.get("success_rate", defaults.success_rate)),
                send_delay_ms=_range(v.get("send_delay_ms"), defaults.send_delay_ms),
                receipt_delay_ms=_range(v.get("receipt_delay_ms"), defaults.receipt_delay_ms),
                stagger_ms=_range(v.get("stagger_ms"), defaults.stagger_ms),
            )

        if "customers" in raw:
            settings.customers = CustomerConfig(
                import_batch_size=int(raw["customers"].get("import_batch_size", 100)),
            )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
