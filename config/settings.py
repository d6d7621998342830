"""
Configuration loader for the scheduled chat delivery service.
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
class DatabaseConfig:
    url: str = "sqlite:///./chat_scheduler.db"        # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory"


@dataclass
class QueueConfig:
    backend: str = "memory"             # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    consumer_group: str = "delivery-workers"
    consumer_concurrency: int = 1       # max in-flight envelopes per worker
    max_retries: int = 3                # retry-lane round-trips before dead-lettering
    retry_delay_seconds: float = 5.0    # cool-down in the retry lane
    visibility_timeout_seconds: float = 300.0  # unacked deliveries are redelivered after this
    promote_interval_seconds: float = 1.0      # seconds between retry-lane scans
    dlq_maxlen: int = 10000             # approximate cap on the dead-letter stream (redis)


@dataclass
class SchedulerConfig:
    enabled: bool = True
    interval_seconds: float = 60.0
    batch_size: int = 500
    release_on_enqueue_failure: bool = False   # False: enqueue failure is terminal
    claim_timeout_seconds: float = 900.0       # queued claims older than this are re-enqueued


@dataclass
class PresenceConfig:
    backend: str = "memory"             # "memory" | "redis"
    redis_url: str = "redis://localhost:6379"
    key_prefix: str = "presence"


@dataclass
class Settings:
    app_name: str = "ChatScheduler"
    debug: bool = False
    timezone: str = "UTC"
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    presence: PresenceConfig = field(default_factory=PresenceConfig)


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


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "CHAT_SCHEDULER_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.timezone = raw.get("timezone", settings.timezone)

        if "database" in raw:
            db = raw["database"]
            settings.database = DatabaseConfig(
                url=db.get("url", settings.database.url),
                store_backend=db.get("store_backend", settings.database.store_backend),
            )

        if "queue" in raw:
            q = raw["queue"]
            defaults = QueueConfig()
            settings.queue = QueueConfig(
                backend=q.get("backend", defaults.backend),
                redis_url=q.get("redis_url", defaults.redis_url),
                consumer_group=q.get("consumer_group", defaults.consumer_group),
                consumer_concurrency=int(q.get("consumer_concurrency", defaults.consumer_concurrency)),
                max_retries=int(q.get("max_retries", defaults.max_retries)),
                retry_delay_seconds=float(q.get("retry_delay_seconds", defaults.retry_delay_seconds)),
                visibility_timeout_seconds=float(
                    q.get("visibility_timeout_seconds", defaults.visibility_timeout_seconds)
                ),
                promote_interval_seconds=float(
                    q.get("promote_interval_seconds", defaults.promote_interval_seconds)
                ),
                dlq_maxlen=int(q.get("dlq_maxlen", defaults.dlq_maxlen)),
            )

        if "scheduler" in raw:
            s = raw["scheduler"]
            defaults = SchedulerConfig()
            settings.scheduler = SchedulerConfig(
                enabled=s.get("enabled", defaults.enabled),
                interval_seconds=float(s.get("interval_seconds", defaults.interval_seconds)),
                batch_size=int(s.get("batch_size", defaults.batch_size)),
                release_on_enqueue_failure=s.get(
                    "release_on_enqueue_failure", defaults.release_on_enqueue_failure
                ),
                claim_timeout_seconds=float(
                    s.get("claim_timeout_seconds", defaults.claim_timeout_seconds)
                ),
            )

        if "presence" in raw:
            p = raw["presence"]
            settings.presence = PresenceConfig(
                backend=p.get("backend", "memory"),
                redis_url=p.get("redis_url", "redis://localhost:6379"),
                key_prefix=p.get("key_prefix", "presence"),
            )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop cached settings (for testing)."""
    global _settings
    _settings = None
