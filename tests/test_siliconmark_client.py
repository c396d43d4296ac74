from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import requests

from errors import AuthFailure, JobCreationFailure
from siliconmark_client import SiliconMarkClient
from utils import DEFAULT_CONFIG


def _response(payload) -> MagicMock:
    response = MagicMock()
    response.json.return_value = payload
    return response


def _client() -> SiliconMarkClient:
    client = SiliconMarkClient(DEFAULT_CONFIG["siliconmark"])
    client.session = MagicMock()
    return client


def test_login_reads_nested_token() -> None:
    client = _client()
    client.session.post.return_value = _response({"data": {"id_token": "abc"}})

    assert client.login("me@example.com", "pw") == "abc"

    url = client.session.post.call_args.args[0]
    assert url == "https://api.silicondata.com/api/user/login"
    assert client.session.post.call_args.kwargs["json"] == {"email": "me@example.com", "password": "pw"}


def test_login_reads_top_level_token() -> None:
    client = _client()
    client.session.post.return_value = _response({"id_token": "top"})
    assert client.login("me@example.com", "pw") == "top"


@pytest.mark.parametrize("payload", [{}, {"data": {"id_token": None}}, {"id_token": "null"}, ["x"]])
def test_login_without_token_is_auth_failure(payload) -> None:
    client = _client()
    client.session.post.return_value = _response(payload)
    with pytest.raises(AuthFailure):
        client.login("me@example.com", "bad")


def test_login_request_error_is_auth_failure() -> None:
    client = _client()
    client.session.post.side_effect = requests.ConnectionError("down")
    with pytest.raises(AuthFailure, match="down"):
        client.login("me@example.com", "pw")


def test_create_job_sends_bearer_token_and_payload() -> None:
    client = _client()
    client.session.post.side_effect = [
        _response({"data": {"id_token": "bearer"}}),
        _response({"data": {"token": "agent-key", "id": 77}}),
    ]
    client.login("me@example.com", "pw")

    job = client.create_job("quickmark-machine-1-20250101-000000", "QuickMark benchmark")

    assert job.token == "agent-key"
    assert job.job_id == "77"
    call = client.session.post.call_args
    assert call.args[0] == "https://api.silicondata.com/api/silicon-mark/v1/jobs"
    assert call.kwargs["headers"] == {"Authorization": "Bearer bearer"}
    assert call.kwargs["json"] == {
        "name": "quickmark-machine-1-20250101-000000",
        "benchmarks": ["quick_mark"],
        "node_count": 1,
        "description": "QuickMark benchmark",
    }


def test_create_job_requires_login() -> None:
    with pytest.raises(JobCreationFailure, match="Not logged in"):
        _client().create_job("name", "description")


def test_create_job_without_token_fails() -> None:
    client = _client()
    client.session.post.side_effect = [
        _response({"id_token": "bearer"}),
        _response({"error": "quota exceeded"}),
    ]
    client.login("me@example.com", "pw")
    with pytest.raises(JobCreationFailure, match="quota exceeded"):
        client.create_job("name", "description")
