from __future__ import annotations

from pathlib import Path
from typing import Generator, List, Optional, Tuple

import pytest
from fastapi.testclient import TestClient

from branchdiff.main import app
from branchdiff.routes import api as api_routes
from branchdiff.routes import config as config_routes
from branchdiff.schemas import DiffResult
from branchdiff.services.errors import RepositoryLookupError
from branchdiff.services.sandbox import RepositorySpec
from branchdiff.services.settings import PipelineSettings, SettingsStore


class StubOrchestrator:
    def __init__(self) -> None:
        self.calls: List[Tuple[RepositorySpec, str, str, Optional[float]]] = []

    def run(self, repository, baseline_ref, candidate_ref, overall_timeout=None) -> DiffResult:
        self.calls.append((repository, baseline_ref, candidate_ref, overall_timeout))
        return DiffResult(
            success=True,
            baseline_image="YmFzZWxpbmU=",
            candidate_image="Y2FuZGlkYXRl",
            diff_image="ZGlmZg==",
            changed_pixel_count=3,
            total_pixel_count=1152000,
            combined_log="\n--- baseline (main) ---\nok",
        )


class StubGitHub:
    def __init__(self, default_branch: Optional[str] = "trunk") -> None:
        self._default_branch = default_branch
        self.lookups: List[Tuple[str, str, Optional[str]]] = []

    def default_branch(self, owner: str, name: str, token: Optional[str] = None) -> str:
        self.lookups.append((owner, name, token))
        if self._default_branch is None:
            raise RepositoryLookupError("GitHub resource /repos/acme/web not found")
        return self._default_branch


class ApiHarness:
    def __init__(self, client: TestClient, store: SettingsStore) -> None:
        self.client = client
        self.store = store
        self.orchestrator = StubOrchestrator()
        self.github = StubGitHub()


@pytest.fixture
def harness(tmp_path: Path) -> Generator[ApiHarness, None, None]:
    """Provide a TestClient whose routes talk to stubs instead of real sandboxes."""
    store = SettingsStore(
        PipelineSettings(github_token="ghp_configured", workspace_root=tmp_path, overall_timeout_seconds=75)
    )
    originals = (
        api_routes.get_orchestrator,
        api_routes.get_github_client,
        api_routes.get_settings_store,
        config_routes.get_settings_store,
    )
    with TestClient(app) as client:
        state = ApiHarness(client, store)
        api_routes.get_orchestrator = lambda: state.orchestrator
        api_routes.get_github_client = lambda: state.github
        api_routes.get_settings_store = lambda: store
        config_routes.get_settings_store = lambda: store
        try:
            yield state
        finally:
            (
                api_routes.get_orchestrator,
                api_routes.get_github_client,
                api_routes.get_settings_store,
                config_routes.get_settings_store,
            ) = originals


@pytest.mark.unit
@pytest.mark.parametrize(
    "payload",
    [
        {},
        {"repositoryOwner": "acme", "repositoryName": "web"},
        {"repositoryOwner": "acme", "candidateRef": "feature/nav"},
        {"repositoryOwner": "  ", "repositoryName": "web", "candidateRef": "feature/nav"},
    ],
)
def test_missing_identifiers_are_rejected(harness: ApiHarness, payload: dict) -> None:
    resp = harness.client.post("/api/diff", json=payload)
    assert resp.status_code == 400
    assert "Missing required field" in resp.json()["detail"]
    assert harness.orchestrator.calls == []
    assert harness.github.lookups == []


@pytest.mark.unit
def test_diff_uses_default_branch_when_baseline_omitted(harness: ApiHarness) -> None:
    resp = harness.client.post(
        "/api/diff",
        json={"repositoryOwner": "acme", "repositoryName": "web", "candidateRef": "feature/nav"},
    )
    assert resp.status_code == 200

    repository, baseline_ref, candidate_ref, overall_timeout = harness.orchestrator.calls[0]
    assert baseline_ref == "trunk"
    assert candidate_ref == "feature/nav"
    assert overall_timeout == 75
    assert repository.full_name == "acme/web"
    assert repository.token == "ghp_configured"
    assert harness.github.lookups == [("acme", "web", "ghp_configured")]

    body = resp.json()
    assert set(body) == {
        "success",
        "baselineImage",
        "candidateImage",
        "diffImage",
        "changedPixelCount",
        "totalPixelCount",
        "errorMessage",
        "errorKind",
        "combinedLog",
    }
    assert body["success"] is True
    assert body["changedPixelCount"] == 3
    assert body["errorMessage"] is None


@pytest.mark.unit
def test_default_branch_lookup_failure_falls_back_to_main(harness: ApiHarness) -> None:
    harness.github = StubGitHub(default_branch=None)

    resp = harness.client.post(
        "/api/diff",
        json={"repositoryOwner": "acme", "repositoryName": "web", "candidateRef": "feature/nav"},
    )
    assert resp.status_code == 200
    assert harness.orchestrator.calls[0][1] == "main"


@pytest.mark.unit
def test_explicit_baseline_and_request_token_take_precedence(harness: ApiHarness) -> None:
    resp = harness.client.post(
        "/api/diff",
        json={
            "repositoryOwner": "acme",
            "repositoryName": "web",
            "candidateRef": "feature/nav",
            "baselineRef": "release/2.0",
            "authToken": "ghp_request",
        },
    )
    assert resp.status_code == 200
    repository, baseline_ref, _candidate, _timeout = harness.orchestrator.calls[0]
    assert baseline_ref == "release/2.0"
    assert repository.token == "ghp_request"
    assert harness.github.lookups == []


@pytest.mark.unit
def test_ping(harness: ApiHarness) -> None:
    resp = harness.client.get("/api/ping")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


@pytest.mark.unit
def test_config_read_hides_token(harness: ApiHarness) -> None:
    resp = harness.client.get("/api/config")
    assert resp.status_code == 200
    body = resp.json()
    assert body["github_token_configured"] is True
    assert "github_token" not in body
    assert "ghp_configured" not in resp.text
    assert body["overall_timeout_seconds"] == 75
    assert body["disk_ceiling_mb"] == 500


@pytest.mark.unit
def test_config_patch_applies_valid_changes(harness: ApiHarness) -> None:
    resp = harness.client.patch("/api/config", json={"disk_ceiling_mb": 250, "clamp_stage_timeouts": False})
    assert resp.status_code == 200
    body = resp.json()
    assert body["disk_ceiling_mb"] == 250
    assert body["clamp_stage_timeouts"] is False
    assert harness.store.get().disk_ceiling_mb == 250


@pytest.mark.unit
def test_config_patch_rejects_invalid_values(harness: ApiHarness) -> None:
    resp = harness.client.patch("/api/config", json={"disk_ceiling_mb": 0})
    assert resp.status_code == 400
    assert harness.store.get().disk_ceiling_mb == 500
