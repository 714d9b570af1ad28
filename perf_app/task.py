"""
Client-side handle for backend actions.

The backend answers an action request either directly (2xx) or with
``202 Accepted`` and the id of an ``action_worker``.  In the second case
the real result only shows up later in the autoupdate stream.  A
:class:`Task` covers both cases with one interface: callers wait for
:meth:`Task.done` and then read :attr:`Task.response` or :attr:`Task.error`.

Key invariants:
- A task is resolved at most once; later resolution attempts are ignored.
- Once done, exactly one of ``response`` / ``error`` is set.
"""

from __future__ import annotations

import copy
import logging
import threading
from collections.abc import Callable, Iterable

import requests

from perf_app.cancel import CancelToken
from perf_app.errors import (
    CancellationError,
    DecodeError,
    PerfError,
    StreamBrokenError,
    TaskAbortedError,
)
from perf_app.stream import ChangeLine

logger = logging.getLogger(__name__)

ACTION_WORKER_COLLECTION = "action_worker"
STATE_END = "end"
STATE_ABORTED = "aborted"


class Task:
    """A pending or completed backend action result."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._response: requests.Response | None = None
        self._error: Exception | None = None
        self._callbacks: list[Callable[[Task], None]] = []

    @classmethod
    def completed(cls, response: requests.Response) -> Task:
        task = cls()
        task.set_result(response)
        return task

    @property
    def response(self) -> requests.Response | None:
        """The terminal response.  ``None`` until done or when failed."""
        with self._lock:
            return self._response

    @property
    def error(self) -> Exception | None:
        """The terminal error.  ``None`` until done or when successful."""
        with self._lock:
            return self._error

    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the task is done or *timeout* passes."""
        return self._done.wait(timeout)

    def result(self) -> requests.Response:
        """
        Return the response of a finished task.

        Raises:
            RuntimeError: If the task is not done yet.
            PerfError: A copy of the terminal error of a failed task,
                chained to the stored error in ``error``.
        """
        if not self._done.is_set():
            raise RuntimeError("task is not done")
        with self._lock:
            if self._error is not None:
                raise copy.copy(self._error) from self._error
            return self._response

    def add_done_callback(self, callback: Callable[[Task], None]) -> None:
        """Call *callback* with the task once it is done (or now, if it is)."""
        with self._lock:
            if not self._done.is_set():
                self._callbacks.append(callback)
                return
        callback(self)

    def set_result(self, response: requests.Response) -> bool:
        return self._resolve(response, None)

    def set_error(self, error: Exception) -> bool:
        return self._resolve(None, error)

    def _resolve(self, response: requests.Response | None, error: Exception | None) -> bool:
        """Store the outcome.  Returns False if the task was already done."""
        if (response is None) == (error is None):
            raise ValueError("exactly one of response and error must be given")

        with self._lock:
            if self._done.is_set():
                return False
            self._response = response
            self._error = error
            self._done.set()
            callbacks, self._callbacks = self._callbacks, []

        for callback in callbacks:
            try:
                callback(self)
            except Exception:
                logger.exception("Task done callback %r failed", callback)
        return True

    def __repr__(self) -> str:
        if not self.done():
            state = "pending"
        elif self.error is not None:
            state = f"failed: {self.error}"
        else:
            state = "completed"
        return f"<Task {state}>"


def action_worker_id(body: object) -> int:
    """
    Return the id of the action worker from a ``202`` response body.

    The backend packs it as ``{"results": [[{"fqid": "action_worker/<id>"}]]}``.

    Raises:
        DecodeError: If the body does not have that shape.
    """
    results = body.get("results") if isinstance(body, dict) else None
    if not isinstance(results, list) or not results:
        raise DecodeError("invalid response, no outer list")

    inner = results[0]
    if not isinstance(inner, list) or not inner or not isinstance(inner[0], dict):
        raise DecodeError("invalid response, no inner list")

    fqid = inner[0].get("fqid")
    collection, _, id_str = str(fqid).partition("/")
    if collection != ACTION_WORKER_COLLECTION or not id_str:
        raise DecodeError(f"invalid response, wrong fqid {fqid}")

    try:
        return int(id_str)
    except ValueError as exc:
        raise DecodeError(f"invalid response, wrong id {id_str}") from exc


def worker_subscription(worker_id: int) -> list[dict]:
    """Autoupdate request body for the state and result of one action worker."""
    return [
        {
            "collection": ACTION_WORKER_COLLECTION,
            "ids": [worker_id],
            "fields": {"state": None, "result": None},
        }
    ]


def synthetic_response(body: bytes, url: str | None = None) -> requests.Response:
    """Build a ``200 OK`` response carrying *body*."""
    response = requests.Response()
    response.status_code = 200
    response.reason = "OK"
    response._content = body
    response.encoding = "utf-8"
    response.headers["Content-Type"] = "application/json"
    response.url = url
    return response


def follow_worker(
    task: Task,
    worker_id: int,
    lines: Iterable[ChangeLine],
    cancel: CancelToken | None = None,
    url: str | None = None,
) -> None:
    """
    Read autoupdate lines until the worker reaches a terminal state.

    Resolves *task* with a synthetic response for ``end``, with
    :class:`TaskAbortedError` for ``aborted`` and with
    :class:`StreamBrokenError` if *lines* ends first.  Errors raised while
    reading (decode or transport errors) fail the task, unless *cancel*
    fired, in which case the task fails with :class:`CancellationError`.
    """
    state_key = f"{ACTION_WORKER_COLLECTION}/{worker_id}/state"
    result_key = f"{ACTION_WORKER_COLLECTION}/{worker_id}/result"

    # Lines carry only changed keys, so the result may arrive before "end".
    result = b"null"

    try:
        for line in lines:
            if result_key in line:
                result = line.raw(result_key)
            if state_key not in line:
                continue
            state = line.value(state_key)
            if state == STATE_END:
                task.set_result(synthetic_response(result, url))
                return
            if state == STATE_ABORTED:
                task.set_error(TaskAbortedError(f"action worker {worker_id} aborted"))
                return
            logger.debug("Action worker %d in state %r", worker_id, state)
    except (PerfError, requests.RequestException, OSError) as exc:
        if cancel is not None and cancel.cancelled:
            task.set_error(CancellationError("action worker poll cancelled"))
        else:
            task.set_error(exc)
        return

    if cancel is not None and cancel.cancelled:
        task.set_error(CancellationError("action worker poll cancelled"))
    else:
        task.set_error(StreamBrokenError("autoupdate connection was broken"))
