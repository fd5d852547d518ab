from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator


class BatchActionRequest(BaseModel):
    run_key: Optional[str] = None
    repo: Optional[str] = None
    action: str = "status"

    @model_validator(mode="after")
    def _fill_run_key(self) -> "BatchActionRequest":
        if not (self.run_key or "").strip() and self.repo:
            self.run_key = self.repo
        if self.run_key is not None:
            self.run_key = self.run_key.strip()
        self.action = (self.action or "").strip().lower()
        return self


class IssueAnalysisRequest(BaseModel):
    title: str = Field(min_length=1)
    body: str = ""
    issue_id: Optional[int] = None


class IssueAnalysisResponse(BaseModel):
    issue_id: Optional[int] = None
    labels: Dict[str, Any]
    provider: str | None = None
    model: str | None = None


class SaveLabelsRequest(BaseModel):
    issue_id: int
    is_pull_request: bool = False
    labels: Dict[str, Any] = Field(alias="analysis")

    model_config = {"populate_by_name": True}


class SaveLabelsResponse(BaseModel):
    issue_id: int
    created: bool
    labels: Dict[str, Any]


class LabelDef(BaseModel):
    key: str
    name: str
    type: str
    choices: List[str] = Field(default_factory=list)
    description: str = ""


class LabelSchemaResponse(BaseModel):
    labels: List[LabelDef]


class SettingsResponse(BaseModel):
    ai_provider: str
    ai_model: str
    ai_base_url: str
    ai_temperature: float
    ai_max_tokens: int
    ai_timeout: int
    labels_path: str
    batch_concurrency: int
    batch_max_retries: int
    batch_retry_delay_ms: int
    batch_request_delay_ms: int
    batch_item_timeout: int
    batch_dedup_before_enqueue: bool
    batch_run_keys: str
    batch_cron: str
    ai_api_key_set: bool


class SettingsRequest(BaseModel):
    ai_provider: Optional[str] = None
    ai_model: Optional[str] = None
    ai_base_url: Optional[str] = None
    ai_temperature: Optional[float] = Field(default=None, ge=0, le=2)
    ai_max_tokens: Optional[int] = Field(default=None, ge=1, le=32000)
    ai_timeout: Optional[int] = Field(default=None, ge=1, le=600)
    labels_path: Optional[str] = None
    batch_concurrency: Optional[int] = Field(default=None, ge=1, le=200)
    batch_max_retries: Optional[int] = Field(default=None, ge=1, le=20)
    batch_retry_delay_ms: Optional[int] = Field(default=None, ge=0, le=60000)
    batch_request_delay_ms: Optional[int] = Field(default=None, ge=0, le=60000)
    batch_item_timeout: Optional[int] = Field(default=None, ge=1, le=600)
    batch_dedup_before_enqueue: Optional[bool] = None
    batch_run_keys: Optional[str] = None
    batch_cron: Optional[str] = None
