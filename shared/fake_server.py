"""
In-process fake of the server under load.

Serves the three endpoints the harness talks to from a Flask app running
in a background thread:

* ``POST /system/auth/login`` -- scripted failures, then a token header and
  a ``refreshId`` cookie.
* ``POST /system/action/handle_request`` -- scripted responses (direct
  2xx, ``202`` with an action worker, errors).  Successful writes can be
  broadcast to the open autoupdate streams.
* ``GET /system/autoupdate`` -- scripted newline-delimited JSON lines per
  action worker, or the generic lines for plain subscriptions.  Streams can
  be held open until the test releases them.

The server speaks HTTP/1.1 so streamed bodies go out chunked, line by
line, the way the real autoupdate service sends them.
"""

from __future__ import annotations

import json
import threading
import time
from collections import deque
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

from flask import Flask, Response, jsonify, request
from werkzeug.serving import WSGIRequestHandler, make_server

from shared.test_helpers import create_test_token

# Upper bound for held-open streams, so a forgotten release never hangs
# the test session.
MAX_HOLD_SECONDS = 10


class _HTTP11RequestHandler(WSGIRequestHandler):
    protocol_version = "HTTP/1.1"

    def log_request(self, *args: Any, **kwargs: Any) -> None:
        pass


@dataclass
class WorkerScript:
    """Lines the autoupdate sends for one action worker."""

    lines: list[str]
    hold_open: bool = False


@dataclass
class FakeBackend:
    """Scriptable state behind the fake server."""

    user_id: int = 1
    login_failures: int = 0
    login_failure_status: int = 500
    reject_login: bool = False
    login_attempts: int = 0
    action_responses: deque = field(default_factory=deque)
    action_requests: list[dict[str, Any]] = field(default_factory=list)
    worker_scripts: dict[int, WorkerScript] = field(default_factory=dict)
    autoupdate_lines: list[str] = field(default_factory=list)
    hold_autoupdate: bool = True
    # Push a line to every generic stream for each successful write
    broadcast_writes: bool = False
    autoupdate_requests: list[dict[str, Any]] = field(default_factory=list)
    release: threading.Event = field(default_factory=threading.Event)
    lock: threading.Lock = field(default_factory=threading.Lock)

    def queue_action_response(self, status: int, body: Any) -> None:
        self.action_responses.append((status, body))

    def queue_worker(self, worker_id: int, lines: list[Any], **kwargs: Any) -> None:
        """Answer the next action with 202 and script the worker's lines."""
        self.queue_action_response(202, {"results": [[{"fqid": f"action_worker/{worker_id}"}]]})
        encoded = [line if isinstance(line, str) else json.dumps(line) for line in lines]
        self.worker_scripts[worker_id] = WorkerScript(encoded, **kwargs)

    def push_line(self, line: Any) -> None:
        """Add a line for generic autoupdate subscriptions."""
        with self.lock:
            self.autoupdate_lines.append(line if isinstance(line, str) else json.dumps(line))


def create_fake_app(backend: FakeBackend) -> Flask:
    """Build the Flask app that serves *backend*."""
    app = Flask(__name__)

    @app.route("/system/auth/login", methods=["POST"])
    def login():
        with backend.lock:
            backend.login_attempts += 1
            attempt = backend.login_attempts

        if backend.reject_login:
            return jsonify({"success": False, "message": "Username or password is incorrect."}), 403
        if attempt <= backend.login_failures:
            return jsonify({"error": "server busy"}), backend.login_failure_status

        response = jsonify({"success": True, "message": "Authentication successful!"})
        response.headers["authentication"] = create_test_token(backend.user_id)
        response.set_cookie("refreshId", f"refresh-{backend.user_id}", httponly=True)
        return response

    @app.route("/system/action/handle_request", methods=["POST"])
    def handle_request():
        backend.action_requests.append(
            {
                "body": request.get_json(silent=True),
                "authentication": request.headers.get("authentication"),
                "cookie": request.cookies.get("refreshId"),
                "content_type": request.headers.get("Content-Type"),
            }
        )
        if backend.action_responses:
            status, body = backend.action_responses.popleft()
        else:
            status, body = 200, {"success": True, "message": "Actions handled successfully", "results": [[{"id": 1}]]}

        if backend.broadcast_writes and status < 400:
            backend.push_line({f"write/{len(backend.action_requests)}/data": request.get_json(silent=True)})
        return jsonify(body), status

    @app.route("/system/autoupdate", methods=["GET"])
    def autoupdate():
        subscription = json.loads(request.get_data() or b"null")
        backend.autoupdate_requests.append(
            {"body": subscription, "args": dict(request.args)}
        )

        first = subscription[0] if isinstance(subscription, list) and subscription else {}
        if first.get("collection") == "action_worker":
            script = backend.worker_scripts.get(first["ids"][0], WorkerScript([]))
            return Response(_stream(backend, script.lines, script.hold_open), mimetype="application/json")

        return Response(_generic_stream(backend), mimetype="application/json")

    return app


def _stream(backend: FakeBackend, lines: list[str], hold_open: bool) -> Iterator[bytes]:
    for line in lines:
        yield (line + "\n").encode()
    if hold_open:
        backend.release.wait(MAX_HOLD_SECONDS)


def _generic_stream(backend: FakeBackend) -> Iterator[bytes]:
    """Send every pushed line, also those pushed while the stream is open."""
    sent = 0
    deadline = time.monotonic() + MAX_HOLD_SECONDS
    while time.monotonic() < deadline:
        with backend.lock:
            pending = backend.autoupdate_lines[sent:]
        for line in pending:
            yield (line + "\n").encode()
            sent += 1
        if not backend.hold_autoupdate or backend.release.is_set():
            return
        backend.release.wait(0.01)


class FakeServer:
    """Runs the fake app on a free local port in a daemon thread."""

    def __init__(self, backend: FakeBackend | None = None):
        self.backend = backend or FakeBackend()
        self._server = make_server(
            "127.0.0.1",
            0,
            create_fake_app(self.backend),
            threaded=True,
            request_handler=_HTTP11RequestHandler,
        )
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)

    @property
    def domain(self) -> str:
        return f"127.0.0.1:{self._server.server_port}"

    def start(self) -> FakeServer:
        self._thread.start()
        return self

    def stop(self) -> None:
        self.backend.release.set()
        self._server.shutdown()
        self._server.server_close()
