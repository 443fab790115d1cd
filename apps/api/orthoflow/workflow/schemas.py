from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class EntityCreate(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)
    owner_id: str | None = None


class EntityUpdate(BaseModel):
    row_version: int = Field(ge=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    owner_id: str | None = None


class EntityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    entity_type: str
    status: str
    owner_id: str | None
    payload: dict[str, Any]
    row_version: int
    created_at: datetime
    updated_at: datetime


class TransitionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: str = Field(min_length=1)
    reason: str | None = None
    idempotency_key: str | None = Field(default=None, alias="idempotencyKey", max_length=255)
    field_updates: dict[str, Any] = Field(default_factory=dict, alias="fieldUpdates")


class TransitionRecordRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    entity_id: UUID
    entity_type: str
    sequence: int
    action: str
    from_status: str
    to_status: str
    actor_id: str
    reason: str | None
    side_effects: list[str]
    idempotency_key: str | None
    correlation_id: str | None
    occurred_at: datetime


class TransitionResult(BaseModel):
    entity: EntityRead
    transition: TransitionRecordRead
    replayed: bool = False


class AvailableActionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    action: str
    to_status: str
    required_fields: list[str]
    missing_fields: list[str]


class TransitionRuleRead(BaseModel):
    from_status: str
    action: str
    to_status: str
    allowed_roles: list[str]
    required_fields: list[str]
    side_effects: list[str]
    preconditions: list[str]
    allow_from_terminal: bool


class WorkflowDefinitionRead(BaseModel):
    entity_type: str
    label: str
    statuses: list[str]
    initial_status: str
    terminal_statuses: list[str]
    rules: list[TransitionRuleRead]
