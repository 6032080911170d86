from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from typing import Any, Callable, Dict, Optional
from urllib.parse import quote

from branchdiff.constants import DEFAULT_GITHUB_API_URL
from branchdiff.services.errors import RepositoryLookupError
from branchdiff.services.settings import PipelineSettings, get_settings_store

LOGGER = logging.getLogger("branchdiff.github")

API_VERSION = "2022-11-28"


class GitHubClient:
    """Minimal read-only client for the repository metadata the pipeline needs."""

    def __init__(
        self,
        api_url: str = DEFAULT_GITHUB_API_URL,
        *,
        timeout: float = 10.0,
        opener: Callable[..., Any] = urllib.request.urlopen,
    ) -> None:
        self._api_url = api_url.rstrip("/")
        self._timeout = timeout
        self._opener = opener

    @classmethod
    def from_settings(cls, settings: PipelineSettings) -> "GitHubClient":
        return cls(settings.github_api_url)

    def _request(self, path: str, token: Optional[str]) -> urllib.request.Request:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": API_VERSION,
            "User-Agent": "branchdiff",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return urllib.request.Request(f"{self._api_url}{path}", headers=headers)

    def _get_json(self, path: str, token: Optional[str]) -> Dict[str, Any]:
        request = self._request(path, token)
        try:
            with self._opener(request, timeout=self._timeout) as response:
                payload = json.loads(response.read().decode("utf-8"))
        except urllib.error.HTTPError as exc:
            if exc.code == 404:
                raise RepositoryLookupError(f"GitHub resource {path} not found") from exc
            if exc.code in (401, 403):
                raise RepositoryLookupError(f"GitHub denied access to {path} (HTTP {exc.code})") from exc
            raise RepositoryLookupError(f"GitHub request for {path} failed with HTTP {exc.code}") from exc
        except (urllib.error.URLError, OSError, ValueError) as exc:
            raise RepositoryLookupError(f"GitHub request for {path} failed: {exc}") from exc
        if not isinstance(payload, dict):
            raise RepositoryLookupError(f"Unexpected GitHub response for {path}")
        return payload

    def default_branch(self, owner: str, name: str, token: Optional[str] = None) -> str:
        path = f"/repos/{quote(owner, safe='')}/{quote(name, safe='')}"
        payload = self._get_json(path, token)
        branch = payload.get("default_branch")
        if not isinstance(branch, str) or not branch.strip():
            raise RepositoryLookupError(f"Repository {owner}/{name} reports no default branch")
        LOGGER.debug("Default branch for %s/%s is %s", owner, name, branch)
        return branch


_github_client: Optional[GitHubClient] = None


def get_github_client() -> GitHubClient:
    global _github_client
    if _github_client is None:
        _github_client = GitHubClient.from_settings(get_settings_store().get())
    return _github_client
