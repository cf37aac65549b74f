from __future__ import annotations

import json
from typing import Any, Dict, List

import pytest
import requests

from covbot.errors import GitHubApiError
from covbot.tools.github import GitHubClient


def _response(status: int, payload: Any) -> requests.Response:
    response = requests.Response()
    response.status_code = status
    response._content = json.dumps(payload).encode("utf-8")
    response.headers["Content-Type"] = "application/json"
    return response


class FakeSession:
    def __init__(self, response: requests.Response | Exception) -> None:
        self.response = response
        self.calls: List[Dict[str, Any]] = []

    def post(self, url: str, **kwargs: Any) -> requests.Response:
        self.calls.append({"url": url, **kwargs})
        if isinstance(self.response, Exception):
            raise self.response
        return self.response


def _open(client: GitHubClient):
    return client.create_pull_request(
        "acme",
        "widgets",
        title="Improve test coverage for math.ts",
        body="body",
        head="coverage/src-math-20240101000000",
        base="main",
    )


def test_create_pull_request_posts_to_repo_endpoint() -> None:
    session = FakeSession(_response(201, {"html_url": "https://github.com/acme/widgets/pull/7", "number": 7}))
    client = GitHubClient("tok", api_url="https://ghe.example.com/api/v3/", session=session)

    pull_request = _open(client)

    assert pull_request.url == "https://github.com/acme/widgets/pull/7"
    assert pull_request.number == 7
    call = session.calls[0]
    assert call["url"] == "https://ghe.example.com/api/v3/repos/acme/widgets/pulls"
    assert call["headers"]["Authorization"] == "Bearer tok"
    assert call["json"]["head"] == "coverage/src-math-20240101000000"
    assert call["json"]["base"] == "main"


def test_api_error_carries_status_and_message() -> None:
    payload = {"message": "Validation Failed", "errors": [{"message": "A pull request already exists"}]}
    client = GitHubClient("tok", session=FakeSession(_response(422, payload)))

    with pytest.raises(GitHubApiError) as excinfo:
        _open(client)

    assert excinfo.value.status_code == 422
    assert "Validation Failed (A pull request already exists)" in str(excinfo.value)


def test_network_failure_is_wrapped() -> None:
    client = GitHubClient("tok", session=FakeSession(requests.ConnectionError("connection refused")))

    with pytest.raises(GitHubApiError, match="connection refused"):
        _open(client)


def test_token_is_required() -> None:
    session = FakeSession(_response(201, {}))
    with pytest.raises(GitHubApiError, match="token"):
        _open(GitHubClient(None, session=session))
    assert session.calls == []


def test_missing_html_url_is_an_error() -> None:
    client = GitHubClient("tok", session=FakeSession(_response(201, {"number": 1})))
    with pytest.raises(GitHubApiError, match="pull request URL"):
        _open(client)
