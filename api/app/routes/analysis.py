import logging

import httpx
from fastapi import APIRouter, Depends, HTTPException, Request

from ..ai_client import IssueClassifier
from ..config import get_settings
from ..db import count_issue_labels, save_issue_labels
from ..deps import require_admin
from ..labels import load_label_schema, validate_labels
from ..rate_limit import limiter, RATE_LIMIT_ADMIN, RATE_LIMIT_HEAVY
from ..schemas import (
    IssueAnalysisRequest,
    IssueAnalysisResponse,
    LabelDef,
    LabelSchemaResponse,
    SaveLabelsRequest,
    SaveLabelsResponse,
)

logger = logging.getLogger("issuelens.api")

router = APIRouter()


def _load_schema() -> dict:
    try:
        return load_label_schema(get_settings().labels_path)
    except (OSError, ValueError) as exc:
        raise HTTPException(status_code=500, detail=f"Label schema unavailable: {exc}") from exc


@router.get("/labels", response_model=LabelSchemaResponse)
async def label_schema() -> LabelSchemaResponse:
    schema = _load_schema()
    return LabelSchemaResponse(labels=[LabelDef(**label) for label in schema["labels"]])


@router.post("/issue-analysis", response_model=IssueAnalysisResponse)
@limiter.limit(RATE_LIMIT_HEAVY)
async def issue_analysis(request: Request, payload: IssueAnalysisRequest) -> IssueAnalysisResponse:
    classifier: IssueClassifier = request.app.state.classifier
    try:
        labels = await classifier.classify(payload.title, payload.body)
    except httpx.HTTPError as exc:
        logger.warning("Issue analysis failed: %s", exc)
        raise HTTPException(status_code=502, detail=f"Classification service error: {exc}") from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return IssueAnalysisResponse(
        issue_id=payload.issue_id,
        labels=labels,
        provider=classifier.provider,
        model=classifier.model,
    )


@router.post(
    "/issue-analysis/save",
    response_model=SaveLabelsResponse,
    dependencies=[Depends(require_admin)],
)
@limiter.limit(RATE_LIMIT_ADMIN)
async def save_issue_analysis(request: Request, payload: SaveLabelsRequest) -> SaveLabelsResponse:
    labels = validate_labels(payload.labels, _load_schema())
    existed = await count_issue_labels(payload.issue_id) > 0
    await save_issue_labels(payload.issue_id, payload.is_pull_request, labels)
    return SaveLabelsResponse(issue_id=payload.issue_id, created=not existed, labels=labels)
