from __future__ import annotations

from typing import Dict

from fastapi import APIRouter, HTTPException
from fastapi.concurrency import run_in_threadpool

from branchdiff.schemas import DiffRequest, DiffResult
from branchdiff.services.errors import BadRequestError
from branchdiff.services.github import get_github_client
from branchdiff.services.orchestrator import get_orchestrator
from branchdiff.services.pipeline import DiffPipeline
from branchdiff.services.settings import get_settings_store

router = APIRouter(prefix="/api", tags=["api"])


@router.post("/diff", response_model=DiffResult, response_model_by_alias=True)
async def create_diff(payload: DiffRequest) -> DiffResult:
    pipeline = DiffPipeline(get_orchestrator(), get_github_client(), get_settings_store())
    try:
        return await run_in_threadpool(pipeline.handle, payload)
    except BadRequestError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.get("/ping")
async def ping() -> Dict[str, str]:
    return {"status": "ok"}
