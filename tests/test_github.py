from __future__ import annotations

import io
import json
import urllib.error
import urllib.request
from typing import List, Optional

import pytest

from branchdiff.services.errors import RepositoryLookupError
from branchdiff.services.github import GitHubClient


class FakeResponse(io.BytesIO):
    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class FakeOpener:
    def __init__(self, payload: Optional[dict] = None, status: int = 200) -> None:
        self._payload = payload or {}
        self._status = status
        self.requests: List[urllib.request.Request] = []

    def __call__(self, request: urllib.request.Request, timeout: float) -> FakeResponse:
        self.requests.append(request)
        if self._status >= 400:
            raise urllib.error.HTTPError(request.full_url, self._status, "error", hdrs=None, fp=None)
        return FakeResponse(json.dumps(self._payload).encode("utf-8"))


@pytest.mark.unit
def test_default_branch_sends_versioned_authorized_request() -> None:
    opener = FakeOpener({"full_name": "acme/web", "default_branch": "trunk"})
    client = GitHubClient("https://api.github.test/", opener=opener)

    assert client.default_branch("acme", "web", "ghp_abc") == "trunk"

    request = opener.requests[0]
    assert request.full_url == "https://api.github.test/repos/acme/web"
    assert request.get_header("Accept") == "application/vnd.github+json"
    assert request.get_header("X-github-api-version") == "2022-11-28"
    assert request.get_header("Authorization") == "Bearer ghp_abc"


@pytest.mark.unit
def test_anonymous_request_has_no_authorization_header() -> None:
    opener = FakeOpener({"default_branch": "main"})
    GitHubClient(opener=opener).default_branch("acme", "web")
    assert opener.requests[0].get_header("Authorization") is None


@pytest.mark.unit
@pytest.mark.parametrize("status, fragment", [(404, "not found"), (401, "denied"), (403, "denied"), (502, "HTTP 502")])
def test_http_errors_become_lookup_errors(status: int, fragment: str) -> None:
    client = GitHubClient(opener=FakeOpener(status=status))
    with pytest.raises(RepositoryLookupError, match=fragment):
        client.default_branch("acme", "web")


@pytest.mark.unit
def test_missing_default_branch_is_an_error() -> None:
    client = GitHubClient(opener=FakeOpener({"full_name": "acme/web"}))
    with pytest.raises(RepositoryLookupError, match="no default branch"):
        client.default_branch("acme", "web")

