"""
Shared pytest fixtures for the load harness test suite.

Integration tests run the harness against an in-process fake server
(see :mod:`shared.fake_server`) on a free local port.  Every test gets a
fresh backend, so scripted responses never leak between tests.

Key Concepts Demonstrated:
- Fixture scopes and fixture dependencies
- Live server fixtures with explicit teardown
- Fast retries so failure-path tests stay quick
"""

from __future__ import annotations

import os

import pytest

# Set testing environment before importing the harness
os.environ["PERF_ENV"] = "testing"

from perf_app.client import Client
from perf_app.session import Session, immediate_retry
from shared.fake_server import FakeBackend, FakeServer


# -----------------------------------------------------------------------------
# Fake server fixtures
# -----------------------------------------------------------------------------

@pytest.fixture(scope="function")
def fake_server():
    """
    Start a fake server for one test.

    Yields:
        The running :class:`FakeServer`.  Scripting happens through its
        ``backend`` attribute.
    """
    server = FakeServer(FakeBackend()).start()
    yield server
    server.stop()


@pytest.fixture(scope="function")
def fake_backend(fake_server):
    """The scriptable state of the running fake server."""
    return fake_server.backend


# -----------------------------------------------------------------------------
# Client fixtures
# -----------------------------------------------------------------------------

@pytest.fixture(scope="function")
def session(fake_server):
    """Session pointing at the fake server, with retries that never pause."""
    return Session(
        domain=fake_server.domain,
        username="superadmin",
        password="superadmin",
        use_http=True,
        login_attempts=5,
        retry_event=immediate_retry,
        request_timeout=2,
    )


@pytest.fixture(scope="function")
def client(session):
    """A client that is not logged in yet."""
    with Client(session) as test_client:
        yield test_client


@pytest.fixture(scope="function")
def logged_in_client(client):
    """A client that logged in against the fake server."""
    client.login()
    return client

