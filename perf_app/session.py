"""
Connection parameters for one simulated user.

A :class:`Session` is immutable: it is built once (usually from a config
class, see :meth:`Session.from_config`) and then owned by the
:class:`~perf_app.client.Client` created from it.
"""

from __future__ import annotations

import dataclasses
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from perf_app.errors import ConfigError

SUPPORTED_PROTOCOLS = ("http/1.1",)


def interval_retry(seconds: float) -> Callable[[], threading.Event]:
    """
    Build a retry provider that allows the next attempt after *seconds*.

    Each call returns a fresh event that a timer thread sets once the pause
    is over.
    """

    def retry_event() -> threading.Event:
        event = threading.Event()
        timer = threading.Timer(seconds, event.set)
        timer.daemon = True
        timer.start()
        return event

    return retry_event


def immediate_retry() -> threading.Event:
    """Retry provider that never pauses."""
    event = threading.Event()
    event.set()
    return event


@dataclass(frozen=True)
class Session:
    """
    Immutable connection settings.

    Attributes:
        domain: Host (and optional port) of the server, without scheme.
        username: Login name used by :meth:`Client.login`.
        password: Password used by :meth:`Client.login`.
        use_http: Talk plain http instead of https.
        force_ipv4: Only connect over IPv4.
        insecure: Skip TLS certificate verification.
        protocol: HTTP protocol variant.  Only ``"http/1.1"`` is carried.
        login_attempts: Upper bound of the login retry loop.
        retry_event: Returns an event that is set when the next login
            attempt may start.
        request_timeout: Seconds to wait for a connection.
        max_line_bytes: Largest accepted autoupdate line.
        fake_auth: Skip the login request and assume user id 1.
    """

    domain: str = "localhost:8000"
    username: str = "superadmin"
    password: str = "superadmin"
    use_http: bool = False
    force_ipv4: bool = False
    insecure: bool = True
    protocol: str = "http/1.1"
    login_attempts: int = 100
    retry_event: Callable[[], threading.Event] = field(
        default=interval_retry(1.0), repr=False, compare=False
    )
    request_timeout: float = 10
    max_line_bytes: int = 16 << 20
    fake_auth: bool = False

    def __post_init__(self) -> None:
        if not self.domain:
            raise ConfigError("domain must not be empty")
        if "://" in self.domain:
            raise ConfigError(f"domain {self.domain!r} must not contain a scheme")
        if self.protocol not in SUPPORTED_PROTOCOLS:
            raise ConfigError(f"unsupported protocol {self.protocol!r}")
        if self.login_attempts < 1:
            raise ConfigError("login_attempts must be at least 1")

    @property
    def addr(self) -> str:
        """The domain with the http or https prefix."""
        scheme = "http" if self.use_http else "https"
        return f"{scheme}://{self.domain}"

    def replace(self, **changes: Any) -> Session:
        return dataclasses.replace(self, **changes)

    @classmethod
    def from_config(cls, config_class: Any, overrides: dict[str, Any] | None = None) -> Session:
        """
        Build a session from a ``config.Config`` class.

        Args:
            config_class: Class (or object) exposing the upper-case
                settings of :mod:`config`.
            overrides: Optional upper-case settings that win over the
                class attributes, e.g. from ``config.load_overrides``.
        """
        settings = {
            name: getattr(config_class, name)
            for name in dir(config_class)
            if name.isupper()
        }
        settings.update(overrides or {})

        return cls(
            domain=settings["DOMAIN"],
            username=settings["USERNAME"],
            password=settings["PASSWORD"],
            use_http=bool(settings["USE_HTTP"]),
            force_ipv4=bool(settings["FORCE_IPV4"]),
            insecure=bool(settings["INSECURE"]),
            protocol=settings["PROTOCOL"],
            login_attempts=int(settings["LOGIN_ATTEMPTS"]),
            retry_event=interval_retry(float(settings["RETRY_INTERVAL"])),
            request_timeout=float(settings["REQUEST_TIMEOUT"]),
            max_line_bytes=int(settings["MAX_LINE_BYTES"]),
            fake_auth=bool(settings["FAKE_AUTH"]),
        )
