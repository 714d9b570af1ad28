"""
Backend action requests.

Actions are the server's write operations.  They are posted to the action
endpoint as ``[{"action": <name>, "data": [<payload>, ...]}]``; the answer
is either immediate or, for slow actions, a backend worker that
:meth:`Client.do` follows until it finished.
"""

from __future__ import annotations

import json
import uuid
from typing import Any

import requests

from perf_app.cancel import CancelToken
from perf_app.client import ACTION_PATH, Client
from perf_app.errors import DecodeError


def action_body(action: str, data: list[Any]) -> list[dict[str, Any]]:
    return [{"action": action, "data": data}]


def build_action_data(content: str, amount: int) -> list[Any]:
    """
    Expand a payload template into *amount* payloads.

    In every copy, ``\\i`` is replaced with the 1-based copy number and
    ``\\u`` with a fresh UUID, so one template can create many distinct
    objects.

    Raises:
        DecodeError: If a copy is not valid JSON.
    """
    data = []
    for index in range(1, amount + 1):
        text = content.replace("\\i", str(index)).replace("\\u", str(uuid.uuid4()))
        try:
            data.append(json.loads(text))
        except ValueError as exc:
            raise DecodeError(f"action payload {index} is not valid JSON: {exc}") from exc
    return data


def send_action(
    client: Client, action: str, data: list[Any], cancel: CancelToken | None = None
) -> requests.Response:
    """Post one action and wait for its result, following backend workers."""
    return client.do("POST", ACTION_PATH, json=action_body(action, data), cancel=cancel)


def action_results(response: requests.Response) -> list[list[Any]]:
    """
    Return the ``results`` of an action response.

    Raises:
        DecodeError: If the body is not JSON, reports no success, or has no
            result list.
    """
    try:
        body = response.json()
    except ValueError as exc:
        raise DecodeError(f"decode action response: {exc}") from exc

    if not isinstance(body, dict) or not body.get("success", False):
        raise DecodeError(f"backend returned no success: {body!r}")
    results = body.get("results")
    if not isinstance(results, list):
        raise DecodeError(f"action response has no results: {body!r}")
    return results


class ActionSender:
    """
    A client with a prepared write request.

    The write phases of a test run send one action per sender through
    :func:`perf_app.workers.send_clients`.
    """

    def __init__(self, client: Client, action: str, data: list[Any]):
        self.client = client
        self.action = action
        self.data = data

    def send(self, cancel: CancelToken | None = None) -> None:
        send_action(self.client, self.action, self.data, cancel)
