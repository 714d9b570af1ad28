"""
Autoupdate load harness.

Simulates many users of the server under load: logs them in, opens
autoupdate streams, sends backend actions and reports timings.

Key Concepts Demonstrated:
- Factory function (create_client) for environment-aware configuration
- Explicit cancellation tokens threaded through every blocking call
- Bounded worker pools with streaming result collection
"""

from __future__ import annotations

import logging
from pathlib import Path

from config import get_config, load_overrides
from perf_app.client import Client
from perf_app.session import Session

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def create_session(
    config_name: str | None = None, overrides_file: str | Path | None = None
) -> Session:
    """
    Build the connection settings for one environment.

    Args:
        config_name: Optional environment key ("development", "testing",
            "production").  When *None*, the PERF_ENV environment variable
            is consulted, defaulting to "development".
        overrides_file: Optional YAML file whose settings win over the
            environment's.

    Returns:
        An immutable :class:`Session`.
    """
    config_class = get_config(config_name)
    overrides = load_overrides(overrides_file) if overrides_file else None
    logger.info("Creating session with config: %s", config_class.__name__)
    return Session.from_config(config_class, overrides)


def create_client(
    config_name: str | None = None, overrides_file: str | Path | None = None
) -> Client:
    """Construct a (not yet logged in) client for one environment."""
    return Client(create_session(config_name, overrides_file))
