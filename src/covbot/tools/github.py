"""Minimal GitHub REST client: just enough to open pull requests."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from ..errors import GitHubApiError

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 30.0


@dataclass(slots=True, frozen=True)
class PullRequest:
    url: str
    number: Optional[int] = None


class GitHubClient:
    """Thin wrapper over ``requests`` for the GitHub REST API."""

    def __init__(
        self,
        token: str | None,
        *,
        api_url: str = "https://api.github.com",
        session: requests.Session | None = None,
        timeout: float = DEFAULT_TIMEOUT_S,
    ) -> None:
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def create_pull_request(
        self,
        owner: str,
        repo: str,
        *,
        title: str,
        body: str,
        head: str,
        base: str,
    ) -> PullRequest:
        """Open a pull request from ``head`` into ``base``."""

        if not self.token:
            raise GitHubApiError("A GitHub token is required to open pull requests")

        url = f"{self.api_url}/repos/{owner}/{repo}/pulls"
        payload = {"title": title, "body": body, "head": head, "base": base}
        try:
            response = self.session.post(url, headers=self._headers(), json=payload, timeout=self.timeout)
        except requests.RequestException as error:
            raise GitHubApiError(f"GitHub request failed: {error}") from error

        if not 200 <= response.status_code < 300:
            raise GitHubApiError(
                f"GitHub API {response.status_code} creating pull request: {_error_message(response)}",
                status_code=response.status_code,
            )

        data: Dict[str, Any] = response.json()
        html_url = data.get("html_url")
        if not html_url:
            raise GitHubApiError("GitHub response did not include a pull request URL")
        LOGGER.info("Opened pull request %s", html_url)
        return PullRequest(url=str(html_url), number=data.get("number"))


def _error_message(response: requests.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text.strip()[:500] or response.reason or "unknown error"
    if isinstance(data, dict):
        message = str(data.get("message") or "")
        errors = data.get("errors")
        if isinstance(errors, list) and errors:
            details = "; ".join(
                str(item.get("message") or item) if isinstance(item, dict) else str(item) for item in errors
            )
            return f"{message} ({details})" if message else details
        if message:
            return message
    return str(data)[:500]


__all__ = ["GitHubClient", "PullRequest"]
