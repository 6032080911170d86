from __future__ import annotations

import logging
from typing import Optional

from branchdiff.schemas import DiffRequest, DiffResult
from branchdiff.services.errors import BadRequestError, RepositoryLookupError
from branchdiff.services.github import GitHubClient
from branchdiff.services.orchestrator import BuildOrchestrator
from branchdiff.services.sandbox import RepositorySpec
from branchdiff.services.settings import SettingsStore

LOGGER = logging.getLogger("branchdiff.pipeline")


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


class DiffPipeline:
    """Validates a diff request, resolves the baseline ref and hands off to the orchestrator."""

    def __init__(
        self,
        orchestrator: BuildOrchestrator,
        metadata: GitHubClient,
        settings_store: SettingsStore,
    ) -> None:
        self._orchestrator = orchestrator
        self._metadata = metadata
        self._settings_store = settings_store

    def handle(self, request: DiffRequest) -> DiffResult:
        owner = _clean(request.repository_owner)
        name = _clean(request.repository_name)
        candidate_ref = _clean(request.candidate_ref)
        missing = [
            field
            for field, value in (
                ("repositoryOwner", owner),
                ("repositoryName", name),
                ("candidateRef", candidate_ref),
            )
            if value is None
        ]
        if missing:
            raise BadRequestError(f"Missing required field(s): {', '.join(missing)}")

        settings = self._settings_store.get()
        token = _clean(request.auth_token) or settings.github_token
        baseline_ref = _clean(request.baseline_ref) or self.resolve_baseline(owner, name, token)
        repository = RepositorySpec(owner=owner, name=name, token=token)
        return self._orchestrator.run(
            repository,
            baseline_ref,
            candidate_ref,
            overall_timeout=settings.overall_timeout_seconds,
        )

    def resolve_baseline(self, owner: str, name: str, token: Optional[str]) -> str:
        try:
            return self._metadata.default_branch(owner, name, token)
        except RepositoryLookupError as exc:
            fallback = self._settings_store.get().default_baseline_ref
            LOGGER.warning(
                "Could not look up default branch for %s/%s (%s); using %s",
                owner,
                name,
                exc,
                fallback,
            )
            return fallback
