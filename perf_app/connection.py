"""
Long-lived autoupdate connections.

A :class:`Connection` holds one open autoupdate stream for a client.  It
is the unit the connect and listen phases of a test run work on: the
worker pool opens many connections at once, then waits until each of
them delivered a number of lines.
"""

from __future__ import annotations

import contextlib
import logging
import threading
import time
from collections.abc import Callable, Iterator
from typing import Any

import requests

from perf_app.cancel import CancelToken
from perf_app.client import AUTOUPDATE_PATH, Client, abort_response
from perf_app.errors import CancellationError, PerfError, StreamBrokenError

logger = logging.getLogger(__name__)

# Organization with the names of all its committees.
DEFAULT_SUBSCRIPTION: list[dict[str, Any]] = [
    {
        "collection": "organization",
        "ids": [1],
        "fields": {
            "committee_ids": {
                "type": "relation-list",
                "collection": "committee",
                "fields": {"name": None},
            }
        },
    }
]


class Connection:
    """
    One autoupdate stream of one client.

    Attributes:
        client: The logged in client that owns the stream.
        connected_at: ``time.monotonic()`` reading of the moment the stream
            opened, ``None`` while closed.
        received: Number of lines read so far.
    """

    def __init__(
        self,
        client: Client,
        body: Any = None,
        *,
        path: str = AUTOUPDATE_PATH,
        compress: bool = False,
        skip_first: bool = False,
    ):
        self.client = client
        self.body = DEFAULT_SUBSCRIPTION if body is None else body
        self.path = path
        self.params: dict[str, str] = {}
        if compress:
            self.params["compress"] = "1"
        if skip_first:
            self.params["skip_first"] = "1"

        self.connected_at: float | None = None
        self.received = 0
        self._response: requests.Response | None = None
        self._lines: Iterator[bytes] | None = None
        self._lock = threading.Lock()

    def connect(self, cancel: CancelToken | None = None) -> None:
        """
        Open the stream.  Returns once the response headers arrived.

        Raises:
            PerfError: If the request fails.
        """
        kwargs: dict[str, Any] = {"params": self.params or None, "stream": True, "cancel": cancel}
        if isinstance(self.body, (bytes, str)):
            kwargs["body"] = self.body
        else:
            kwargs["json"] = self.body

        response = self.client.do_raw("GET", self.path, **kwargs)
        with self._lock:
            self._close_locked()
            self._response = response
            self._lines = self.client.iter_lines(response, cancel)
            self.connected_at = time.monotonic()
            self.received = 0

    def connect_with_retry(
        self, attempts: int = 100, interval: float = 1.0, cancel: CancelToken | None = None
    ) -> None:
        """
        Like :meth:`connect`, but tries again after *interval* seconds.

        Raises:
            CancellationError: If *cancel* fired.
            PerfError: The last error, once *attempts* are used up.
        """
        cancel = cancel or CancelToken()
        for attempt in range(1, attempts + 1):
            try:
                self.connect(cancel)
                return
            except CancellationError:
                raise
            except PerfError as exc:
                if attempt == attempts:
                    raise
                logger.info("Can not open %s (attempt %d): %s", self.path, attempt, exc)
            cancel.sleep(interval)

    @property
    def connected(self) -> bool:
        return self._response is not None

    @contextlib.contextmanager
    def _abort_on(self, cancel: CancelToken | None) -> Iterator[None]:
        """Shut the stream down when *cancel* fires while reading."""
        response = self._response
        if cancel is None or response is None:
            yield
            return

        unregister = cancel.on_cancel(lambda: abort_response(response))
        try:
            yield
        except PerfError as exc:
            if cancel.cancelled and not isinstance(exc, CancellationError):
                raise CancellationError("stream read cancelled") from exc
            raise
        finally:
            unregister()

    def _next_line(self) -> bytes:
        if self._lines is None:
            raise StreamBrokenError("connection is not open")
        try:
            line = next(self._lines)
        except StopIteration:
            self.close()
            raise StreamBrokenError("autoupdate connection was closed by the server") from None
        self.received += 1
        return line

    def expect_data(
        self, count: int, since_connect: bool = False, cancel: CancelToken | None = None
    ) -> None:
        """
        Block until *count* more lines arrived.

        With *since_connect*, lines that already arrived since the
        connection opened are counted as well.

        Raises:
            StreamBrokenError: If the stream ends first.
            CancellationError: If the stream was cancelled.
        """
        target = count if since_connect else self.received + count
        with self._abort_on(cancel):
            while self.received < target:
                self._next_line()

    def keep_open(
        self, on_line: Callable[[int], None] | None = None, cancel: CancelToken | None = None
    ) -> int:
        """
        Read lines until the stream ends or is cancelled.

        Args:
            on_line: Called with the 0-based index of every line.
            cancel: Token that ends the read.  Cancellation is a clean end.

        Returns:
            The number of lines read.

        Raises:
            StreamBrokenError: If the connection is not open.
            PerfError: If reading failed.
        """
        if self._lines is None:
            raise StreamBrokenError("connection is not open")

        start = self.received
        try:
            with self._abort_on(cancel):
                while True:
                    index = self.received
                    self._next_line()
                    if on_line is not None:
                        on_line(index)
        except CancellationError:
            logger.debug("Stream %s cancelled after %d lines", self.path, self.received)
        except StreamBrokenError:
            logger.info("Stream %s closed by the server after %d lines", self.path, self.received)
        finally:
            self.close()
        return self.received - start

    def close(self) -> None:
        with self._lock:
            self._close_locked()

    def _close_locked(self) -> None:
        if self._response is not None:
            self._response.close()
        self._response = None
        self._lines = None
        self.connected_at = None
