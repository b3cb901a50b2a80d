"""Runtime configuration for the analytics service."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

ENV_PREFIX = "ANALYTICS_"
DEVELOPMENT_ENVIRONMENTS = frozenset({"development", "local", "test"})
KNOWN_ENVIRONMENTS = DEVELOPMENT_ENVIRONMENTS | {"production"}

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}
_LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class ConfigurationError(Exception):
    """Raised when an environment variable holds an unusable value."""


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)


def _get(environ: Mapping[str, str], name: str, default: str) -> str:
    value = environ.get(ENV_PREFIX + name)
    if value is None or value == "":
        return default
    return value


def _get_int(environ: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = _get(environ, name, str(default))
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}") from exc
    if value < minimum:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be >= {minimum}, got {value}")
    return value


def _get_float(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = _get(environ, name, str(default))
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}") from exc
    if value < 0:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must not be negative, got {value}")
    return value


def _get_bool(environ: Mapping[str, str], name: str, default: bool) -> bool:
    raw = _get(environ, name, "true" if default else "false").strip().lower()
    if raw in _TRUE_VALUES:
        return True
    if raw in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"{ENV_PREFIX}{name} must be a boolean, got {raw!r}")


def _get_optional(environ: Mapping[str, str], name: str) -> Optional[str]:
    value = environ.get(ENV_PREFIX + name)
    return value or None


@dataclass(frozen=True)
class Settings:
    """Process-wide settings, built once at start-up and handed to each component."""

    database_url: str = "sqlite:///./analytics.db"
    environment: str = "development"
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    cookie_domain: Optional[str] = None
    worker_concurrency: int = 10
    worker_enabled: bool = True
    queue_name: str = "analytics-events"
    queue_max_attempts: int = 3
    queue_backoff_seconds: float = 2.0
    queue_visibility_timeout: float = 30.0
    queue_poll_interval: float = 0.5
    queue_remove_on_complete: bool = True
    max_batch_size: int = 100
    admin_jwt_secret: Optional[str] = None
    admin_jwt_audience: Optional[str] = None

    @property
    def cookie_secure(self) -> bool:
        return self.environment not in DEVELOPMENT_ENVIRONMENTS

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        if environ is None:
            environ = os.environ

        environment = _get(environ, "ENVIRONMENT", cls.environment).strip().lower()
        if environment not in KNOWN_ENVIRONMENTS:
            raise ConfigurationError(
                f"{ENV_PREFIX}ENVIRONMENT must be one of {sorted(KNOWN_ENVIRONMENTS)}, got {environment!r}"
            )

        log_level = _get(environ, "LOG_LEVEL", cls.log_level).strip().upper()
        if log_level not in _LOG_LEVELS:
            raise ConfigurationError(f"{ENV_PREFIX}LOG_LEVEL must be one of {_LOG_LEVELS}, got {log_level!r}")

        return cls(
            database_url=_get(environ, "DATABASE_URL", cls.database_url),
            environment=environment,
            host=_get(environ, "HOST", cls.host),
            port=_get_int(environ, "PORT", cls.port, minimum=1),
            log_level=log_level,
            cookie_domain=_get_optional(environ, "COOKIE_DOMAIN"),
            worker_concurrency=_get_int(environ, "WORKER_CONCURRENCY", cls.worker_concurrency, minimum=1),
            worker_enabled=_get_bool(environ, "WORKER_ENABLED", cls.worker_enabled),
            queue_name=_get(environ, "QUEUE_NAME", cls.queue_name),
            queue_max_attempts=_get_int(environ, "QUEUE_MAX_ATTEMPTS", cls.queue_max_attempts, minimum=1),
            queue_backoff_seconds=_get_float(environ, "QUEUE_BACKOFF_SECONDS", cls.queue_backoff_seconds),
            queue_visibility_timeout=_get_float(
                environ, "QUEUE_VISIBILITY_TIMEOUT", cls.queue_visibility_timeout
            ),
            queue_poll_interval=_get_float(environ, "QUEUE_POLL_INTERVAL", cls.queue_poll_interval),
            queue_remove_on_complete=_get_bool(
                environ, "QUEUE_REMOVE_ON_COMPLETE", cls.queue_remove_on_complete
            ),
            max_batch_size=_get_int(environ, "MAX_BATCH_SIZE", cls.max_batch_size, minimum=1),
            admin_jwt_secret=_get_optional(environ, "ADMIN_JWT_SECRET"),
            admin_jwt_audience=_get_optional(environ, "ADMIN_JWT_AUDIENCE"),
        )
