"""
Environment configuration

Reads the process environment (after loading a ``.env`` file with
python-dotenv) into the engine and server config dataclasses. Invalid
values fail fast with ConfigError at startup.
"""

import os
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional, TypeVar

from dotenv import load_dotenv

from .errors import ConfigError
from .execution_engine import ExecutionConfig

T = TypeVar("T")

APP_ENVIRONMENTS = ("development", "production", "test")


@dataclass
class ServerConfig:
    """HTTP/WebSocket bind settings"""
    host: str = "0.0.0.0"
    port: int = 3000


@dataclass
class Settings:
    """Everything the process needs at startup"""
    app_env: str = "development"
    log_level: str = "INFO"
    log_file: Optional[str] = None
    server: ServerConfig = field(default_factory=ServerConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)


def _read(env: Mapping[str, str], name: str, default: T, cast: Callable[[str], T]) -> T:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw.strip())
    except ValueError:
        raise ConfigError(f"{name} has an invalid value: {raw!r}")


def _flag(raw: str) -> bool:
    value = raw.lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise ValueError(raw)


def _positive(name: str, value: float) -> None:
    if value <= 0:
        raise ConfigError(f"{name} must be positive")


def load_settings(env_file: Optional[str] = None,
                  environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build settings from the environment

    Args:
        env_file: Optional .env path; when None python-dotenv searches upwards
            from the working directory
        environ: Mapping to read instead of os.environ (no .env loading)
    """
    if environ is None:
        load_dotenv(env_file)
        environ = os.environ

    app_env = _read(environ, "APP_ENV", "development", str).lower()
    if app_env not in APP_ENVIRONMENTS:
        raise ConfigError(f"APP_ENV must be one of: {', '.join(APP_ENVIRONMENTS)}")

    server = ServerConfig(
        host=_read(environ, "HOST", "0.0.0.0", str),
        port=_read(environ, "PORT", 3000, int),
    )
    if not 0 < server.port < 65536:
        raise ConfigError("PORT must be between 1 and 65535")

    execution = ExecutionConfig(
        database_url=_read(environ, "DATABASE_URL", "sqlite:///orders.db", str),
        cache_ttl_seconds=_read(environ, "CACHE_TTL_SECONDS", 3600.0, float),
        max_concurrent_orders=_read(environ, "MAX_CONCURRENT_ORDERS", 10, int),
        max_orders_per_minute=_read(environ, "MAX_ORDERS_PER_MINUTE", 100, int),
        max_retry_attempts=_read(environ, "MAX_RETRY_ATTEMPTS", 3, int),
        retry_backoff_seconds=_read(environ, "RETRY_BACKOFF_MS", 2000.0, float) / 1000.0,
        enqueue_delay_seconds=_read(environ, "ENQUEUE_DELAY_MS", 1000.0, float) / 1000.0,
        default_slippage=_read(environ, "SLIPPAGE_TOLERANCE", 0.01, float),
        shutdown_timeout_seconds=_read(environ, "SHUTDOWN_TIMEOUT_SECONDS", 30.0, float),
        recover_on_start=_read(environ, "RECOVER_ON_START", True, _flag),
        simulation_failure_rate=_read(environ, "SIMULATION_FAILURE_RATE", 0.05, float),
    )

    _positive("CACHE_TTL_SECONDS", execution.cache_ttl_seconds)
    _positive("MAX_CONCURRENT_ORDERS", execution.max_concurrent_orders)
    _positive("MAX_ORDERS_PER_MINUTE", execution.max_orders_per_minute)
    _positive("MAX_RETRY_ATTEMPTS", execution.max_retry_attempts)
    if execution.retry_backoff_seconds < 0 or execution.enqueue_delay_seconds < 0:
        raise ConfigError("RETRY_BACKOFF_MS and ENQUEUE_DELAY_MS must not be negative")
    if not 0.0 <= execution.default_slippage <= 1.0:
        raise ConfigError("SLIPPAGE_TOLERANCE must be between 0 and 1")
    if not 0.0 <= execution.simulation_failure_rate <= 1.0:
        raise ConfigError("SIMULATION_FAILURE_RATE must be between 0 and 1")

    return Settings(
        app_env=app_env,
        log_level=_read(environ, "LOG_LEVEL", "INFO", str).upper(),
        log_file=_read(environ, "LOG_FILE", None, str),
        server=server,
        execution=execution,
    )
