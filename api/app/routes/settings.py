import asyncio
import os
from typing import Dict, Optional

from fastapi import APIRouter, Depends, HTTPException

from ..config import get_settings
from ..deps import require_admin
from ..schemas import SettingsRequest, SettingsResponse
from ..settings_store import write_settings

router = APIRouter()


def _settings_response() -> SettingsResponse:
    current = get_settings()
    return SettingsResponse(
        ai_provider=current.ai_provider,
        ai_model=current.ai_model,
        ai_base_url=current.ai_base_url,
        ai_temperature=current.ai_temperature,
        ai_max_tokens=current.ai_max_tokens,
        ai_timeout=current.ai_timeout,
        labels_path=current.labels_path,
        batch_concurrency=current.batch_concurrency,
        batch_max_retries=current.batch_max_retries,
        batch_retry_delay_ms=current.batch_retry_delay_ms,
        batch_request_delay_ms=current.batch_request_delay_ms,
        batch_item_timeout=current.batch_item_timeout,
        batch_dedup_before_enqueue=current.batch_dedup_before_enqueue,
        batch_run_keys=current.batch_run_keys,
        batch_cron=current.batch_cron,
        ai_api_key_set=bool(os.getenv("AI_API_KEY")),
    )


@router.get("/settings", response_model=SettingsResponse)
async def settings() -> SettingsResponse:
    return _settings_response()


@router.patch("/settings", response_model=SettingsResponse, dependencies=[Depends(require_admin)])
async def update_settings(payload: SettingsRequest) -> SettingsResponse:
    fields = payload.model_fields_set
    updates: Dict[str, Optional[object]] = {}

    for field in fields:
        updates[field.upper()] = getattr(payload, field)

    if not updates:
        raise HTTPException(status_code=400, detail="No fields provided")

    await asyncio.to_thread(write_settings, updates)
    return _settings_response()
