from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


DISPLAY_FIELDS = frozenset({"company_name", "contact_name", "contact_email", "stage_label"})
REFERENCE_FIELDS = frozenset({"stage_id", "contact_id", "company_id"})
REQUIRED_UPDATE_FIELDS = frozenset({"title", "value", "tags", "custom_fields"})


class DealView(BaseModel):
    """Denormalized deal record as held by the read-model cache."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    pipeline_id: str
    stage_id: str
    title: str
    value: float = 0
    contact_id: str | None = None
    company_id: str | None = None
    owner_id: str | None = None
    priority: str | None = None
    probability: int | None = None
    tags: list[str] = Field(default_factory=list)
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    is_won: bool = False
    is_lost: bool = False
    closed_at: datetime | None = None
    loss_reason: str | None = None
    last_stage_change_date: datetime | None = None
    origin_deal_id: str | None = None
    origin_pipeline_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    company_name: str = ""
    contact_name: str = ""
    contact_email: str = ""
    stage_label: str = ""

    @model_validator(mode="after")
    def validate_lifecycle_flags(self) -> DealView:
        if self.is_won and self.is_lost:
            raise ValueError("is_won and is_lost cannot both be true")
        if (self.is_won or self.is_lost) != (self.closed_at is not None):
            raise ValueError("closed_at must be set exactly when the deal is won or lost")
        return self


def normalize_deal_payload(payload: dict[str, Any]) -> dict[str, Any]:
    """Keep only stored deal columns from a remote payload."""
    normalized: dict[str, Any] = {}
    for key, value in payload.items():
        if key not in DealView.model_fields or key in DISPLAY_FIELDS:
            continue
        if isinstance(value, Decimal):
            value = float(value)
        normalized[key] = value
    if "id" in normalized and normalized["id"] is not None:
        normalized["id"] = str(normalized["id"])
    return normalized


def apply_changes(record: DealView, changes: dict[str, Any]) -> DealView:
    """Return a validated copy of ``record`` with ``changes`` merged in."""
    return DealView.model_validate({**record.model_dump(), **changes})


class DealCreate(BaseModel):
    title: str = Field(min_length=1)
    pipeline_id: str = Field(min_length=1)
    stage_id: str = Field(min_length=1)
    value: float = Field(default=0, ge=0)
    contact_id: str | None = None
    company_id: str | None = None
    owner_id: str | None = None
    priority: str | None = None
    probability: int | None = Field(default=None, ge=0, le=100)
    tags: list[str] = Field(default_factory=list)
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    origin_deal_id: str | None = None
    origin_pipeline_id: str | None = None


class DealUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1)
    value: float | None = Field(default=None, ge=0)
    contact_id: str | None = None
    company_id: str | None = None
    owner_id: str | None = None
    priority: str | None = None
    probability: int | None = Field(default=None, ge=0, le=100)
    tags: list[str] | None = None
    custom_fields: dict[str, Any] | None = None
    loss_reason: str | None = None

    @model_validator(mode="after")
    def validate_required_fields(self) -> DealUpdate:
        cleared = sorted(
            name for name in REQUIRED_UPDATE_FIELDS if name in self.model_fields_set and getattr(self, name) is None
        )
        if cleared:
            raise ValueError(f"fields cannot be null: {', '.join(cleared)}")
        return self


class DealMoveRequest(BaseModel):
    stage_id: str = Field(min_length=1)
    loss_reason: str | None = None
    explicit_win: bool = False
    explicit_lost: bool = False

    @model_validator(mode="after")
    def validate_override(self) -> DealMoveRequest:
        if self.explicit_win and self.explicit_lost:
            raise ValueError("explicit_win and explicit_lost are mutually exclusive")
        return self


class MoveResult(BaseModel):
    item_id: str
    stage_id: str
    transition: Literal["won", "lost", "reopened", "unchanged"]
    is_won: bool
    is_lost: bool
    closed_at: datetime | None = None


class StageDefinition(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    label: str
    position: int = 0
    linked_lifecycle_stage: str | None = None


class PipelineConfig(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    stages: list[StageDefinition] = Field(default_factory=list)
    won_stage_id: str | None = None
    lost_stage_id: str | None = None
    linked_lifecycle_stage: str | None = None
    next_pipeline_id: str | None = None

    def ordered_stages(self) -> list[StageDefinition]:
        return sorted(self.stages, key=lambda stage: stage.position)

    def first_stage(self) -> StageDefinition | None:
        ordered = self.ordered_stages()
        return ordered[0] if ordered else None

    def stage(self, stage_id: str) -> StageDefinition | None:
        return next((stage for stage in self.stages if stage.id == stage_id), None)


class ContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    email: str | None = None
    phone: str | None = None
    stage: str | None = None
    company_id: str | None = None


class CompanyRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str


class LifecycleStageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    position: int = 0


class ActivityCreate(BaseModel):
    deal_id: str
    deal_title: str
    type: str = "STATUS_CHANGE"
    title: str
    description: str | None = None
    date: datetime
    completed: bool = True
    user_name: str


ChangeOperation = Literal["insert", "update", "delete"]


class ChangeNotification(BaseModel):
    """One push notification from the remote change channel."""

    model_config = ConfigDict(frozen=True)

    operation: ChangeOperation
    dataset: str
    record: dict[str, Any] | None = None
    record_id: str | None = None

    @model_validator(mode="after")
    def validate_target(self) -> ChangeNotification:
        if self.operation in {"insert", "update"} and not self.record:
            raise ValueError(f"{self.operation} notifications require a record")
        if self.operation == "delete" and not self.target_id:
            raise ValueError("delete notifications require a record id")
        return self

    @property
    def target_id(self) -> str | None:
        if self.record_id:
            return self.record_id
        if self.record and self.record.get("id") is not None:
            return str(self.record["id"])
        return None


class MutationStatusRead(BaseModel):
    operation: str
    pending: int
    settled: int
    failed: int
    last_error: str | None = None
