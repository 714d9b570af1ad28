"""
Harness configuration module.

This module defines configuration classes for different environments
(development, testing, production). Connection settings for the server
under load are loaded from environment variables with sensible defaults,
and can be overridden from a YAML file for repeatable test runs.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml

# Base directory of the project
BASE_DIR = Path(__file__).resolve().parent


def _env_flag(name: str, default: str = "0") -> bool:
    return os.environ.get(name, default).lower() in {"1", "true", "yes", "on"}


class Config:
    """Base configuration with default settings."""

    # Host (and optional port) of the server to put under load.
    DOMAIN: str = os.environ.get("PERF_DOMAIN", "localhost:8000")
    USERNAME: str = os.environ.get("PERF_USERNAME", "superadmin")
    PASSWORD: str = os.environ.get("PERF_PASSWORD", "superadmin")

    # Transport options
    USE_HTTP: bool = _env_flag("PERF_HTTP")
    FORCE_IPV4: bool = _env_flag("PERF_IPV4")
    INSECURE: bool = _env_flag("PERF_INSECURE", "1")
    PROTOCOL: str = os.environ.get("PERF_PROTOCOL", "http/1.1")
    FAKE_AUTH: bool = _env_flag("PERF_FAKE_AUTH")

    # Login retry loop
    LOGIN_ATTEMPTS: int = int(os.environ.get("PERF_LOGIN_ATTEMPTS", "100"))
    RETRY_INTERVAL: float = float(os.environ.get("PERF_RETRY_INTERVAL", "1"))

    # Seconds to wait for a connection. Streaming reads are never timed out.
    REQUEST_TIMEOUT: float = float(os.environ.get("PERF_REQUEST_TIMEOUT", "10"))

    # Autoupdate lines can carry whole committee trees or poll results.
    MAX_LINE_BYTES: int = int(os.environ.get("PERF_MAX_LINE_BYTES", str(16 << 20)))

    SHOW_ALL_ERRORS: bool = _env_flag("PERF_SHOW_ALL_ERRORS")


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG: bool = True
    TESTING: bool = False


class TestingConfig(Config):
    """Testing environment configuration."""

    DEBUG: bool = True
    TESTING: bool = True

    # Tests talk to a local fake server over plain http.
    DOMAIN: str = os.environ.get("TEST_PERF_DOMAIN", "127.0.0.1:5099")
    USE_HTTP: bool = True

    # Keep failing test runs short
    LOGIN_ATTEMPTS: int = int(os.environ.get("TEST_PERF_LOGIN_ATTEMPTS", "5"))
    RETRY_INTERVAL: float = 0.01
    REQUEST_TIMEOUT: float = 2


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG: bool = False
    TESTING: bool = False
    INSECURE: bool = _env_flag("PERF_INSECURE")


# Configuration mapping for easy access
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}


def get_config(env: str | None = None) -> type[Config]:
    """
    Get the configuration class for the specified environment.

    Args:
        env: Environment name (development, testing, production).
             If None, uses PERF_ENV environment variable.

    Returns:
        Configuration class for the specified environment.
    """
    if env is None:
        env = os.environ.get("PERF_ENV", "development")
    return config.get(env, config["default"])


def load_overrides(path: str | Path) -> dict[str, Any]:
    """
    Read setting overrides from a YAML file.

    Keys are matched case-insensitively against the ``Config`` attribute
    names, so ``domain: example.org`` overrides ``DOMAIN``.

    Args:
        path: Path to a YAML file containing a top-level mapping.

    Returns:
        A dictionary of upper-cased setting names to values.

    Raises:
        ValueError: If the file does not contain a mapping or names an
            unknown setting.
    """
    with Path(path).open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Overrides file {path} must contain a mapping")

    overrides: dict[str, Any] = {}
    for key, value in data.items():
        name = str(key).upper()
        if not hasattr(Config, name):
            raise ValueError(f"Unknown setting {key!r} in {path}")
        overrides[name] = value
    return overrides
