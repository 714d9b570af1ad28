"""
Test runs built from the worker pool primitives.

Each scenario measures one aspect of the server under load and renders
its :class:`~perf_app.results.TestResult` reports as text:

1. :class:`ConnectTest` -- open all autoupdate connections and wait for
   the first data on each.
2. :class:`OneWriteTest` -- send one write request and measure how long
   every connection takes to see the change.
3. :class:`ManyWriteTest` -- send one write request per sender and wait
   until every connection saw all changes.
4. :class:`KeepOpenTest` -- hold all connections open until cancelled.
   Not part of a usual run, but handy to watch the server with many open
   streams.

Scenarios expect logged in clients.  A write scenario expects its
connections to be open, so run :class:`ConnectTest` first.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Sequence
from dataclasses import dataclass

from perf_app.actions import ActionSender
from perf_app.cancel import CancelToken
from perf_app.connection import Connection
from perf_app.errors import PerfError
from perf_app.results import TestResult
from perf_app.workers import (
    collect,
    connect_clients,
    listen_to_clients,
    run_parallel,
    send_clients,
)

logger = logging.getLogger(__name__)


class _Timer:
    """Logs the start and the duration of a scenario."""

    def __init__(self, name: str):
        self.name = name

    def __enter__(self) -> _Timer:
        logger.info("Start %s", self.name)
        self._start = time.monotonic()
        return self

    def __exit__(self, *exc_info: object) -> None:
        logger.info("%s took %dms", self.name, (time.monotonic() - self._start) * 1000)


def _listen_in_background(
    connections: Sequence[Connection],
    count: int,
    result: TestResult,
    cancel: CancelToken,
) -> threading.Thread:
    thread = threading.Thread(
        target=lambda: collect(listen_to_clients(connections, count, cancel=cancel), result),
        name="perf-listen",
        daemon=True,
    )
    thread.start()
    return thread


@dataclass
class ConnectTest:
    """Time to open every connection, and to the first data after that."""

    connections: Sequence[Connection]
    parallel: int = 0
    show_all_errors: bool = False

    def run(self, cancel: CancelToken | None = None) -> str:
        cancel = cancel or CancelToken()
        connected = TestResult("Time to establish the connection", self.show_all_errors)
        received = TestResult(
            "Time until data has been received since the connection", self.show_all_errors
        )

        with _Timer("ConnectTest"):
            open_connections = []
            for outcome in connect_clients(self.connections, self.parallel, cancel):
                if outcome.ok:
                    connected.add(outcome.duration)
                    open_connections.append(outcome.item)
                else:
                    connected.add_error(outcome.error)

            collect(listen_to_clients(open_connections, 1, since_connect=True, cancel=cancel), received)

        return connected.render() + "\n" + received.render()


@dataclass
class OneWriteTest:
    """Time until every connection received the change of one write."""

    sender: ActionSender
    connections: Sequence[Connection]
    show_all_errors: bool = False

    def run(self, cancel: CancelToken | None = None) -> str:
        cancel = cancel or CancelToken()
        received = TestResult(
            "Time until data is received after one write request", self.show_all_errors
        )

        with _Timer("OneWriteTest"):
            listen_cancel = cancel.child()
            listener = _listen_in_background(self.connections, 1, received, listen_cancel)
            try:
                self.sender.send(cancel)
            except PerfError:
                listen_cancel.cancel()
                raise
            finally:
                listener.join()

        return received.render()


@dataclass
class ManyWriteTest:
    """Time to send one write per sender and until all changes arrived."""

    senders: Sequence[ActionSender]
    connections: Sequence[Connection]
    parallel: int = 0
    show_all_errors: bool = False

    def run(self, cancel: CancelToken | None = None) -> str:
        if not self.senders:
            raise ValueError("ManyWriteTest needs at least one sender")

        cancel = cancel or CancelToken()
        sent = TestResult("Time to send the write requests", self.show_all_errors)
        received = TestResult(
            "Time until all data is received after many write requests", self.show_all_errors
        )

        with _Timer("ManyWriteTest"):
            listen_cancel = cancel.child()
            listener = _listen_in_background(
                self.connections, len(self.senders), received, listen_cancel
            )
            collect(send_clients(self.senders, self.parallel, cancel), sent)
            if sent.error_count == len(self.senders):
                # nothing was written, so nothing will arrive
                listen_cancel.cancel()
            listener.join()

        return sent.render() + "\n" + received.render()


@dataclass
class KeepOpenTest:
    """Hold every connection open until cancelled and count the lines."""

    connections: Sequence[Connection]
    show_all_errors: bool = False

    def run(self, cancel: CancelToken | None = None) -> str:
        cancel = cancel or CancelToken()
        held = TestResult("Time the connections were held open", self.show_all_errors)
        lines = [0] * len(self.connections)
        index_of = {id(conn): i for i, conn in enumerate(self.connections)}

        def hold(conn: Connection) -> None:
            lines[index_of[id(conn)]] = conn.keep_open(cancel=cancel)

        with _Timer("KeepOpenTest"):
            collect(run_parallel(self.connections, hold, 0, cancel), held)

        return held.render() + f"lines received: {sum(lines)}\n"


def run_tests(tests: Sequence, cancel: CancelToken | None = None) -> str:
    """Run *tests* in order and join their reports.  Stops when cancelled."""
    cancel = cancel or CancelToken()
    reports = []
    for test in tests:
        reports.append(test.run(cancel))
        if cancel.cancelled:
            break
    return "\n".join(reports)
