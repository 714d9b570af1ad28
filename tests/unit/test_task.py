"""
Unit tests for backend action tasks.

Drives :func:`follow_worker` with in-memory change lines, so the state
machine of an action worker can be checked without a server.

Key SDET Concepts Demonstrated:
- State-transition testing (pending, end, aborted, broken)
- Verifying single-resolution semantics
- Negative testing for malformed 202 bodies
"""

from __future__ import annotations

import json

import pytest

from perf_app.cancel import CancelToken
from perf_app.errors import (
    CancellationError,
    DecodeError,
    StreamBrokenError,
    TaskAbortedError,
)
from perf_app.stream import ChangeLine
from perf_app.task import (
    Task,
    action_worker_id,
    follow_worker,
    synthetic_response,
    worker_subscription,
)

pytestmark = pytest.mark.unit


def _line(data: dict) -> ChangeLine:
    return ChangeLine.decode(json.dumps(data).encode())


def _failing_lines(error: Exception):
    yield _line({"action_worker/3/state": "running"})
    raise error


# -----------------------------------------------------------------------------
# Task
# -----------------------------------------------------------------------------

def test_completed_task_is_done_with_response():
    """Test that Task.completed gives a done task with only a response."""
    # Arrange
    response = synthetic_response(b"{}")

    # Act
    task = Task.completed(response)

    # Assert
    assert task.done()
    assert task.response is response
    assert task.error is None
    assert task.result() is response


def test_task_resolves_only_once():
    """Test that the first outcome wins and later ones are ignored."""
    # Arrange
    task = Task()
    error = TaskAbortedError("aborted")

    # Act
    first = task.set_error(error)
    second = task.set_result(synthetic_response(b"{}"))

    # Assert
    assert first is True
    assert second is False
    assert task.error is error
    assert task.response is None


def test_task_result_before_done_raises():
    """Test that result() refuses to answer for a pending task."""
    task = Task()

    with pytest.raises(RuntimeError):
        task.result()
    assert not task.wait(0.01)


def test_task_result_raises_stored_error():
    """Test that result() re-raises the terminal error."""
    task = Task()
    task.set_error(StreamBrokenError("broken"))

    with pytest.raises(StreamBrokenError):
        task.result()


def test_task_result_raises_fresh_error_per_call():
    """Test that each result() call raises its own copy chained to the stored error."""
    # Arrange
    task = Task()
    task.set_error(StreamBrokenError("broken"))

    # Act
    with pytest.raises(StreamBrokenError) as first:
        task.result()
    with pytest.raises(StreamBrokenError) as second:
        task.result()

    # Assert
    assert first.value is not second.value
    assert first.value is not task.error
    assert first.value.__cause__ is task.error
    assert second.value.__cause__ is task.error
    assert str(first.value) == "broken"


def test_task_done_callbacks_run_once():
    """Test that callbacks run on resolution, and at once when already done."""
    # Arrange
    task = Task()
    calls = []
    task.add_done_callback(calls.append)

    # Act
    task.set_result(synthetic_response(b"{}"))
    task.set_result(synthetic_response(b"{}"))
    task.add_done_callback(calls.append)

    # Assert
    assert calls == [task, task]


def test_task_requires_exactly_one_outcome():
    """Test that a resolution with neither or both outcomes is rejected."""
    task = Task()

    with pytest.raises(ValueError):
        task._resolve(None, None)
    with pytest.raises(ValueError):
        task._resolve(synthetic_response(b"{}"), DecodeError("x"))


# -----------------------------------------------------------------------------
# 202 bodies
# -----------------------------------------------------------------------------

def test_action_worker_id_reads_fqid():
    """Test that the worker id is taken from the first result's fqid."""
    body = {"results": [[{"fqid": "action_worker/17"}]]}

    assert action_worker_id(body) == 17


@pytest.mark.parametrize(
    "body",
    [
        None,
        {},
        {"results": []},
        {"results": [[]]},
        {"results": [["action_worker/1"]]},
        {"results": [[{"fqid": "motion/1"}]]},
        {"results": [[{"fqid": "action_worker/"}]]},
        {"results": [[{"fqid": "action_worker/abc"}]]},
    ],
)
def test_action_worker_id_rejects_malformed_bodies(body):
    """Test that bodies without a valid action worker fqid raise DecodeError."""
    with pytest.raises(DecodeError):
        action_worker_id(body)


def test_worker_subscription_asks_for_state_and_result():
    """Test the autoupdate body used to follow one worker."""
    assert worker_subscription(4) == [
        {"collection": "action_worker", "ids": [4], "fields": {"state": None, "result": None}}
    ]


# -----------------------------------------------------------------------------
# follow_worker
# -----------------------------------------------------------------------------

def test_follow_worker_end_gives_raw_result():
    """Test that the end state resolves with the raw result bytes."""
    # Arrange
    task = Task()
    lines = [
        _line({"action_worker/3/state": "running"}),
        _line({"other/1/field": "end"}),
        _line({"action_worker/3/state": "end", "action_worker/3/result": "ok"}),
    ]

    # Act
    follow_worker(task, 3, lines)

    # Assert
    response = task.result()
    assert response.status_code == 200
    assert response.content == b'"ok"'
    assert response.json() == "ok"


def test_follow_worker_end_without_result_gives_null():
    """Test that a missing result is forwarded as JSON null."""
    task = Task()

    follow_worker(task, 3, [_line({"action_worker/3/state": "end"})])

    assert task.result().content == b"null"


def test_follow_worker_keeps_result_sent_before_end():
    """Test that a result on an earlier line is used when end arrives alone."""
    # Arrange
    task = Task()
    lines = [
        ChangeLine.decode(rb'{"action_worker/7/state":"running","action_worker/7/result":"\"ok\""}'),
        ChangeLine.decode(rb'{"action_worker/7/state":"end"}'),
    ]

    # Act
    follow_worker(task, 7, lines)

    # Assert
    assert task.result().content == rb'"\"ok\""'
    assert task.result().json() == '"ok"'


def test_follow_worker_latest_result_wins():
    """Test that a later result line replaces an earlier one."""
    task = Task()
    lines = [
        _line({"action_worker/3/result": "first"}),
        _line({"action_worker/3/state": "running", "action_worker/3/result": "second"}),
        _line({"other/1/state": "end"}),
        _line({"action_worker/3/state": "end"}),
    ]

    follow_worker(task, 3, lines)

    assert task.result().content == b'"second"'


def test_follow_worker_aborted_fails_task():
    """Test that the aborted state fails the task with TaskAbortedError."""
    task = Task()

    follow_worker(task, 3, [_line({"action_worker/3/state": "aborted"})])

    assert isinstance(task.error, TaskAbortedError)
    assert task.response is None


def test_follow_worker_end_of_stream_is_broken():
    """Test that a stream ending before a terminal state fails the task."""
    task = Task()

    follow_worker(task, 3, [_line({"action_worker/3/state": "running"})])

    assert isinstance(task.error, StreamBrokenError)


def test_follow_worker_propagates_read_errors():
    """Test that a decode error while reading fails the task with that error."""
    # Arrange
    task = Task()
    error = DecodeError("bad line")

    # Act
    follow_worker(task, 3, _failing_lines(error))

    # Assert
    assert task.error is error


def test_follow_worker_reports_cancellation():
    """Test that read errors after cancellation become CancellationError."""
    # Arrange
    task = Task()
    cancel = CancelToken()
    cancel.cancel()

    # Act
    follow_worker(task, 3, _failing_lines(OSError("socket shut down")), cancel)

    # Assert
    assert isinstance(task.error, CancellationError)


def test_follow_worker_end_of_stream_after_cancel():
    """Test that a stream closed by cancellation is not reported as broken."""
    task = Task()
    cancel = CancelToken()
    cancel.cancel()

    follow_worker(task, 3, [], cancel)

    assert isinstance(task.error, CancellationError)
