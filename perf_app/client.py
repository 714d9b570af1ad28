"""
Authenticated HTTP client for the server under load.

A :class:`Client` wraps a ``requests.Session`` built from a
:class:`~perf_app.session.Session` and adds what every simulated user
needs:

  * **Login** with a bounded retry loop.  Servers under load answer
    logins with 5xx or drop connections; the client waits for the
    session's retry signal and tries again.  A ``403`` ends the loop
    because retrying bad credentials cannot succeed.
  * **Auth propagation**: the ``authentication`` token header and the
    ``refreshId`` cookie are attached to every request.
  * **Backend workers**: an action answered with ``202 Accepted`` is
    turned into a :class:`~perf_app.task.Task` that follows the action
    worker through the autoupdate stream.
  * **Cancellation**: every blocking call takes a
    :class:`~perf_app.cancel.CancelToken`.  Firing it shuts down the
    sockets of pending requests and open responses, so calls blocked on
    the headers or on a read return at once.

Precondition: ``login`` must not run concurrently on the same client.
Log clients in first (for example with
:func:`perf_app.workers.login_clients`) and share them afterwards.
"""

from __future__ import annotations

import contextlib
import json
import logging
import socket
import threading
from collections.abc import Iterator
from http.cookiejar import Cookie
from typing import Any
from urllib.parse import urljoin

import requests
import urllib3
from jwt.utils import base64url_decode
from requests.adapters import HTTPAdapter
from requests.structures import CaseInsensitiveDict
from urllib3.connection import HTTPConnection, HTTPSConnection
from urllib3.connectionpool import HTTPConnectionPool, HTTPSConnectionPool

from perf_app.cancel import CancelToken
from perf_app.errors import (
    AuthError,
    CancellationError,
    DecodeError,
    HTTPStatusError,
    TokenDecodeError,
    TransportError,
)
from perf_app.session import Session
from perf_app.stream import ChangeLine, iter_changes, iter_lines
from perf_app.task import Task, action_worker_id, follow_worker, worker_subscription

logger = logging.getLogger(__name__)

LOGIN_PATH = "/system/auth/login"
ACTION_PATH = "/system/action/handle_request"
AUTOUPDATE_PATH = "/system/autoupdate"

AUTH_HEADER = "authentication"
REFRESH_COOKIE = "refreshId"

# Size of one read from a streaming response.  Chunked responses still
# deliver each HTTP chunk as soon as it arrives.
STREAM_CHUNK_SIZE = 64 * 1024

_READ_ERRORS = (requests.RequestException, urllib3.exceptions.HTTPError, OSError, ValueError)


# Cancel token of the request the current thread is sending.
_in_flight = threading.local()


def _shutdown_socket(sock: socket.socket | None) -> None:
    if sock is None:
        return
    with contextlib.suppress(OSError):
        sock.shutdown(socket.SHUT_RDWR)


class _CancellableMixin:
    """
    Aborts the wait for the response headers when the request's cancel
    token fires, so a server that accepted the connection and stalls does
    not block the caller.
    """

    def getresponse(self, *args: Any, **kwargs: Any) -> Any:
        cancel: CancelToken | None = getattr(_in_flight, "cancel", None)
        if cancel is None:
            return super().getresponse(*args, **kwargs)

        unregister = cancel.on_cancel(lambda: _shutdown_socket(self.sock))
        try:
            return super().getresponse(*args, **kwargs)
        finally:
            unregister()


class _CancellableHTTPConnection(_CancellableMixin, HTTPConnection):
    pass


class _CancellableHTTPSConnection(_CancellableMixin, HTTPSConnection):
    pass


class _CancellableHTTPConnectionPool(HTTPConnectionPool):
    ConnectionCls = _CancellableHTTPConnection


class _CancellableHTTPSConnectionPool(HTTPSConnectionPool):
    ConnectionCls = _CancellableHTTPSConnection


class _CancellableAdapter(HTTPAdapter):
    """Adapter whose connections honour the cancel token of ``Client._send``."""

    def init_poolmanager(self, *args: Any, **kwargs: Any) -> None:
        super().init_poolmanager(*args, **kwargs)
        self.poolmanager.pool_classes_by_scheme = {
            "http": _CancellableHTTPConnectionPool,
            "https": _CancellableHTTPSConnectionPool,
        }


class _IPv4Adapter(_CancellableAdapter):
    """
    Adapter that binds outgoing sockets to an IPv4 source address.

    IPv6 candidates returned by DNS fail to bind and are skipped, so only
    IPv4 connections are made.
    """

    def init_poolmanager(self, *args: Any, **kwargs: Any) -> None:
        kwargs["source_address"] = ("0.0.0.0", 0)
        super().init_poolmanager(*args, **kwargs)


def decode_user_id(token: str) -> int:
    """
    Return the user id from an auth token.

    The token is not verified.  Only its middle segment is read, which is
    base64url encoded JSON with a ``userId`` field; the header and the
    signature segments are ignored.

    Raises:
        TokenDecodeError: If the token is malformed or has no integer
            ``userId``.
    """
    parts = token.split(".")
    if len(parts) != 3:
        raise TokenDecodeError(f"auth token {token!r} does not have three segments")

    try:
        claims = json.loads(base64url_decode(parts[1]))
    except (ValueError, TypeError) as exc:
        raise TokenDecodeError(f"decoding auth token payload {parts[1]!r}: {exc}") from exc
    if not isinstance(claims, dict):
        raise TokenDecodeError(f"auth token payload is not an object: {claims!r}")

    user_id = claims.get("userId")
    if not isinstance(user_id, int) or isinstance(user_id, bool):
        raise TokenDecodeError(f"auth token has no integer userId: {claims!r}")
    return user_id


def abort_response(response: requests.Response) -> None:
    """Wake up any thread blocked reading *response*."""
    connection = getattr(response.raw, "connection", None)
    sock = getattr(connection, "sock", None)
    if sock is None:
        response.close()
        return
    _shutdown_socket(sock)


def _bind_cancel(response: requests.Response, cancel: CancelToken) -> None:
    """Abort *response* when *cancel* fires, until the response is closed."""
    unregister = cancel.on_cancel(lambda: abort_response(response))
    close = response.close

    def close_and_unregister() -> None:
        unregister()
        close()

    response.close = close_and_unregister


def read_chunks(response: requests.Response, cancel: CancelToken | None = None) -> Iterator[bytes]:
    """
    Iterate over the body of a streaming response.

    Raises:
        TransportError: If the connection fails while reading.
        CancellationError: If reading stopped because *cancel* fired.
    """
    try:
        yield from response.iter_content(chunk_size=STREAM_CHUNK_SIZE)
    except _READ_ERRORS as exc:
        if cancel is not None and cancel.cancelled:
            raise CancellationError("stream read cancelled") from exc
        raise TransportError(f"reading {response.url}: {exc}") from exc


class Client:
    """
    One simulated user.

    Attributes:
        session: The immutable connection settings.
        auth_token: Token from the last successful login.
        auth_cookie: ``refreshId`` cookie from the last successful login.
    """

    def __init__(self, session: Session):
        self.session = session
        self.auth_token = ""
        self.auth_cookie: Cookie | None = None
        self._user_id = 0
        self._login_lock = threading.Lock()

        self._http = requests.Session()
        adapter_class = _IPv4Adapter if session.force_ipv4 else _CancellableAdapter
        adapter = adapter_class(pool_maxsize=32)
        self._http.mount("http://", adapter)
        self._http.mount("https://", adapter)
        if session.insecure:
            self._http.verify = False
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    def __enter__(self) -> Client:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self._http.close()

    @property
    def user_id(self) -> int:
        """Id of the logged in user, ``0`` before login."""
        return self._user_id

    def resolve(self, url: str) -> str:
        """Resolve a relative *url* against the session address."""
        return urljoin(self.session.addr + "/", url)

    # -----------------------------------------------------------------
    # Login
    # -----------------------------------------------------------------

    def login(self, cancel: CancelToken | None = None) -> None:
        """Log in with the credentials of the session."""
        self.login_with_credentials(self.session.username, self.session.password, cancel)

    def login_with_credentials(
        self, username: str, password: str, cancel: CancelToken | None = None
    ) -> None:
        """
        Log in and store the auth token, cookie and user id.

        Args:
            username: Login name.
            password: Plain-text password.
            cancel: Token that aborts the retry loop.

        Raises:
            AuthError: If the server rejected the credentials (403) or all
                attempts failed.
            TokenDecodeError: If the returned token carries no user id.
            CancellationError: If *cancel* fired.
        """
        cancel = cancel or CancelToken()
        if not self._login_lock.acquire(blocking=False):
            raise AuthError("login already in progress on this client")
        try:
            if self.session.fake_auth:
                self._user_id = 1
                return

            response = self._login_with_retry(username, password, cancel)
            token = response.headers.get(AUTH_HEADER, "")
            user_id = decode_user_id(token)

            self.auth_token = token
            self.auth_cookie = next(
                (cookie for cookie in response.cookies if cookie.name == REFRESH_COOKIE), None
            )
            self._user_id = user_id
        finally:
            self._login_lock.release()
        logger.debug("Logged in %s as user %d", username, user_id)

    def _login_with_retry(
        self, username: str, password: str, cancel: CancelToken
    ) -> requests.Response:
        attempts = self.session.login_attempts
        last_error: Exception | None = None

        for attempt in range(1, attempts + 1):
            cancel.raise_if_cancelled()
            try:
                return self._send(
                    "POST",
                    self.resolve(LOGIN_PATH),
                    CaseInsensitiveDict({"Content-Type": "application/json"}),
                    cancel,
                    json={"username": username, "password": password},
                )
            except HTTPStatusError as exc:
                if exc.status_code == 403:
                    raise AuthError(f"login rejected for {username}") from exc
                last_error = exc
            except TransportError as exc:
                last_error = exc

            logger.debug("Login attempt %d/%d for %s failed: %s", attempt, attempts, username, last_error)
            if attempt < attempts:
                cancel.wait_for(self.session.retry_event())

        raise AuthError(f"login for {username} failed after {attempts} attempts") from last_error

    # -----------------------------------------------------------------
    # Requests
    # -----------------------------------------------------------------

    def _send(
        self,
        method: str,
        url: str,
        headers: CaseInsensitiveDict,
        cancel: CancelToken,
        *,
        stream: bool = False,
        **kwargs: Any,
    ) -> requests.Response:
        """
        Execute one request and check its status.

        *cancel* shuts down the socket while the headers are awaited and,
        since bodies are always fetched lazily, while the body is read.
        Non-streaming and failed responses are read completely and closed
        before returning.
        """
        cancel.raise_if_cancelled()
        _in_flight.cancel = cancel
        try:
            response = self._http.request(
                method,
                url,
                headers=headers,
                stream=True,
                timeout=(self.session.request_timeout, None),
                **kwargs,
            )
        except requests.RequestException as exc:
            if cancel.cancelled:
                raise CancellationError(f"{method} {url} cancelled") from exc
            raise TransportError(f"sending {method} {url}: {exc}") from exc
        finally:
            _in_flight.cancel = None

        _bind_cancel(response, cancel)

        if not stream or not 200 <= response.status_code <= 299:
            try:
                response.content  # read the body before closing
            except _READ_ERRORS as exc:
                response.close()
                if cancel.cancelled:
                    raise CancellationError(f"{method} {url} cancelled") from exc
                raise TransportError(f"reading {method} {url}: {exc}") from exc
            response.close()

        if not 200 <= response.status_code <= 299:
            raise HTTPStatusError(response.status_code, response.content)
        return response

    def do_raw(
        self,
        method: str,
        url: str,
        *,
        body: bytes | str | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
        params: dict[str, Any] | None = None,
        stream: bool = False,
        cancel: CancelToken | None = None,
    ) -> requests.Response:
        """
        Send an authenticated request without following backend workers.

        Args:
            method: HTTP method.
            url: Absolute URL, or a path resolved against the session
                address.
            body: Raw request body.
            json: Request body to encode as JSON (instead of *body*).
            headers: Extra headers.  ``Content-Type`` defaults to
                ``application/json``.
            params: Query parameters.
            stream: Leave the body unread.  The caller must close the
                response.
            cancel: Token that aborts the request.

        Returns:
            The 2xx response.

        Raises:
            HTTPStatusError: For any non-2xx status, with the body.
            TransportError: For network-level failures.
            CancellationError: If *cancel* fired.
        """
        cancel = cancel or CancelToken()
        request_headers = CaseInsensitiveDict(headers or {})
        request_headers.setdefault("Content-Type", "application/json")
        if self.auth_token:
            request_headers[AUTH_HEADER] = self.auth_token
        if self.auth_cookie is not None:
            request_headers["Cookie"] = f"{self.auth_cookie.name}={self.auth_cookie.value}"

        return self._send(
            method,
            self.resolve(url),
            request_headers,
            cancel,
            stream=stream,
            data=body,
            json=json,
            params=params,
        )

    def do_task(self, method: str, url: str, **kwargs: Any) -> Task:
        """
        Like :meth:`do_raw`, but returns a :class:`Task`.

        A ``202 Accepted`` answer starts a background thread that follows
        the action worker through the autoupdate stream.  Every other 2xx
        answer gives an already completed task.

        Raises:
            DecodeError: If a 202 body does not name an action worker.
        """
        cancel = kwargs.get("cancel") or CancelToken()
        kwargs["cancel"] = cancel
        response = self.do_raw(method, url, **kwargs)
        if response.status_code != 202:
            return Task.completed(response)
        return self._backend_worker(response, cancel)

    def do(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        """
        Send a request and wait for its backend worker, if any.

        Returns as soon as the task is done or *cancel* fires.  On
        cancellation the task is abandoned, not waited for.

        Raises:
            CancellationError: If *cancel* fired first.
            TaskAbortedError: If the backend aborted the action.
            StreamBrokenError: If the autoupdate stream ended early.
        """
        cancel = kwargs.get("cancel") or CancelToken()
        kwargs["cancel"] = cancel
        task = self.do_task(method, url, **kwargs)

        finished = threading.Event()
        task.add_done_callback(lambda _: finished.set())
        cancel.wait_for(finished)
        return task.result()

    def _backend_worker(self, response: requests.Response, cancel: CancelToken) -> Task:
        try:
            body = response.json()
        except ValueError as exc:
            raise DecodeError(f"decode backend response: {exc}") from exc
        worker_id = action_worker_id(body)

        stream_response = self.do_raw(
            "GET",
            AUTOUPDATE_PATH,
            json=worker_subscription(worker_id),
            stream=True,
            cancel=cancel,
        )

        task = Task()

        def poll() -> None:
            try:
                follow_worker(
                    task,
                    worker_id,
                    self.iter_changes(stream_response, cancel),
                    cancel,
                    url=response.url,
                )
            finally:
                stream_response.close()

        thread = threading.Thread(target=poll, name=f"action-worker-{worker_id}", daemon=True)
        thread.start()
        logger.debug("Following action worker %d", worker_id)
        return task

    # -----------------------------------------------------------------
    # Streams
    # -----------------------------------------------------------------

    def iter_lines(
        self, response: requests.Response, cancel: CancelToken | None = None
    ) -> Iterator[bytes]:
        """Raw lines of a streaming response."""
        return iter_lines(read_chunks(response, cancel), self.session.max_line_bytes)

    def iter_changes(
        self, response: requests.Response, cancel: CancelToken | None = None
    ) -> Iterator[ChangeLine]:
        """Decoded change lines of a streaming autoupdate response."""
        return iter_changes(read_chunks(response, cancel), self.session.max_line_bytes)
