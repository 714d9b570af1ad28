"""
Fan-out / fan-in over many simulated clients.

:func:`run_parallel` applies one operation to a list of items with a
bounded number of worker threads and yields one :class:`Outcome` per item
as soon as it is known, in completion order.  The login / connect / send /
listen helpers are thin wrappers that pick the operation.

Key Concepts:
- ``parallel == 0`` means one worker per item.
- Outcomes are queued without bound, so a slow consumer never stalls the
  workers.
- Operation errors are captured per item and never abort sibling items.
- Once the cancel token fires, items that have not started yet finish with
  :class:`~perf_app.errors.CancellationError`; running items observe the
  token through their own blocking calls.
"""

from __future__ import annotations

import logging
import queue
import time
from collections.abc import Callable, Iterable, Iterator, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Generic, Protocol, TypeVar

from perf_app.cancel import CancelToken
from perf_app.errors import CancellationError
from perf_app.results import TestResult

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """
    Result of one work item: a duration in seconds XOR an error.

    ``started`` is the ``time.monotonic()`` reading taken right before the
    operation ran.
    """

    item: T
    duration: float | None = None
    error: BaseException | None = None
    started: float | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class Loginer(Protocol):
    def login(self, cancel: CancelToken | None = None) -> None: ...


class Connecter(Protocol):
    def connect(self, cancel: CancelToken | None = None) -> None: ...


class Sender(Protocol):
    def send(self, cancel: CancelToken | None = None) -> None: ...


class Listener(Protocol):
    # time.monotonic() reading of the moment the connection opened
    connected_at: float | None

    def expect_data(
        self, count: int, since_connect: bool = False, cancel: CancelToken | None = None
    ) -> None: ...


def _timed(item: T, operation: Callable[[T], Any], cancel: CancelToken) -> Outcome[T]:
    if cancel.cancelled:
        return Outcome(item, error=CancellationError("cancelled before start"))
    start = time.monotonic()
    try:
        operation(item)
    except Exception as exc:
        return Outcome(item, error=exc, started=start)
    return Outcome(item, duration=time.monotonic() - start, started=start)


def run_parallel(
    items: Sequence[T],
    operation: Callable[[T], Any],
    parallel: int = 0,
    cancel: CancelToken | None = None,
) -> Iterator[Outcome[T]]:
    """
    Run *operation* on every item with at most *parallel* workers.

    Args:
        items: Work items.
        operation: Called once per item.  Its return value is ignored;
            raising marks the item as failed.
        parallel: Worker bound.  ``0`` starts one worker per item.
        cancel: Token that stops items from starting.

    Yields:
        Exactly one :class:`Outcome` per item, in completion order.  The
        iterator ends after the last item finished.
    """
    if parallel < 0:
        raise ValueError("parallel must not be negative")
    if not items:
        return

    cancel = cancel or CancelToken()
    workers = len(items) if parallel == 0 else min(parallel, len(items))
    outcomes: queue.SimpleQueue[Outcome[T]] = queue.SimpleQueue()

    def deliver(item: T, future: Future) -> None:
        if future.cancelled():
            return
        error = future.exception()
        outcomes.put(future.result() if error is None else Outcome(item, error=error))

    executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="perf-worker")
    try:
        for item in items:
            future = executor.submit(_timed, item, operation, cancel)
            future.add_done_callback(lambda f, item=item: deliver(item, f))

        for _ in range(len(items)):
            yield outcomes.get()
    finally:
        executor.shutdown(wait=False, cancel_futures=True)


def collect(outcomes: Iterable[Outcome[Any]], result: TestResult) -> TestResult:
    """Feed every outcome into *result* and return it."""
    for outcome in outcomes:
        if outcome.error is not None:
            result.add_error(outcome.error)
        else:
            result.add(outcome.duration)
    return result


def login_clients(
    clients: Sequence[Loginer], parallel: int = 0, cancel: CancelToken | None = None
) -> Iterator[Outcome[Loginer]]:
    """Log in every client, *parallel* at a time."""
    return run_parallel(clients, lambda client: client.login(cancel=cancel), parallel, cancel)


def connect_clients(
    connections: Sequence[Connecter], parallel: int = 0, cancel: CancelToken | None = None
) -> Iterator[Outcome[Connecter]]:
    """Open every connection, *parallel* at a time."""
    return run_parallel(connections, lambda conn: conn.connect(cancel=cancel), parallel, cancel)


def send_clients(
    senders: Sequence[Sender], parallel: int = 0, cancel: CancelToken | None = None
) -> Iterator[Outcome[Sender]]:
    """Send the write request of every sender, *parallel* at a time."""
    return run_parallel(senders, lambda sender: sender.send(cancel=cancel), parallel, cancel)


def listen_to_clients(
    listeners: Sequence[Listener],
    count: int,
    since_connect: bool = False,
    cancel: CancelToken | None = None,
) -> Iterator[Outcome[Listener]]:
    """
    Wait until every listener received *count* lines, or failed.

    All listeners wait at the same time.  The duration runs from the start
    of the wait, or from the moment the listener's connection opened if
    that came later.
    """

    def expect(listener: Listener) -> None:
        listener.expect_data(count, since_connect, cancel=cancel)

    for outcome in run_parallel(listeners, expect, 0, cancel):
        connected_at = outcome.item.connected_at
        if outcome.ok and connected_at is not None and connected_at > outcome.started:
            finished = outcome.started + outcome.duration
            outcome = Outcome(
                outcome.item, duration=finished - connected_at, started=connected_at
            )
        yield outcome


def dummy_username(index: int, meeting_id: int = 0) -> str:
    """Name of the *index*-th generated user (counting from 1)."""
    if meeting_id > 0:
        return f"m{meeting_id}dummy{index}"
    return f"dummy{index}"


def mass_login(
    clients: Sequence[Any],
    password: str,
    meeting_id: int = 0,
    parallel: int = 0,
    cancel: CancelToken | None = None,
) -> Iterator[Outcome[Any]]:
    """
    Log in many clients as generated dummy users.

    Client *i* logs in as :func:`dummy_username` ``(i, meeting_id)``.
    Failed logins are logged and reported as error outcomes.
    """
    numbered = list(enumerate(clients, start=1))

    def login(entry: tuple[int, Any]) -> None:
        index, client = entry
        client.login_with_credentials(dummy_username(index, meeting_id), password, cancel=cancel)

    for outcome in run_parallel(numbered, login, parallel, cancel):
        index, client = outcome.item
        if outcome.error is not None and not isinstance(outcome.error, CancellationError):
            logger.warning(
                "Login failed for user %s: %s", dummy_username(index, meeting_id), outcome.error
            )
        yield Outcome(client, outcome.duration, outcome.error, outcome.started)
