from __future__ import annotations

from fastapi import APIRouter, HTTPException

from branchdiff.schemas import SettingsUpdate, SettingsView
from branchdiff.services.settings import get_settings_store

router = APIRouter(prefix="/api", tags=["config"])


@router.get("/config", response_model=SettingsView)
async def read_config() -> SettingsView:
    return SettingsView(**get_settings_store().view())


@router.patch("/config", response_model=SettingsView)
async def update_config(payload: SettingsUpdate) -> SettingsView:
    store = get_settings_store()
    try:
        store.update(payload.model_dump(exclude_unset=True))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return SettingsView(**store.view())
