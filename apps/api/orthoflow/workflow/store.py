from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy import Select, and_, select, update
from sqlalchemy.orm import Session

from orthoflow.workflow.errors import ConcurrentModificationError, NotFoundError
from orthoflow.workflow.models import WorkflowEntity, utcnow
from orthoflow.workflow.rules import RuleTable, WorkflowDefinition

_RESERVED_PAYLOAD_KEYS = {"id", "status", "type", "entityType", "rowVersion"}


@dataclass(slots=True)
class EntityStore:
    """Persistence for workflow entities keyed by (entity type, id).

    Status is set once at creation from the workflow's start status. After
    that only the transition commit writes it.
    """

    rule_table: RuleTable

    def definition_for(self, entity_type: str) -> WorkflowDefinition:
        definition = self.rule_table.definition(entity_type)
        if definition is None:
            raise NotFoundError(entity_type)
        return definition

    def get(self, session: Session, entity_type: str, entity_id: uuid.UUID) -> WorkflowEntity:
        self.definition_for(entity_type)
        entity = session.scalar(
            select(WorkflowEntity).where(
                and_(WorkflowEntity.id == entity_id, WorkflowEntity.entity_type == entity_type)
            )
            .execution_options(populate_existing=True)
        )
        if entity is None:
            raise NotFoundError(entity_type, entity_id)
        return entity

    def create(
        self,
        session: Session,
        entity_type: str,
        payload: dict[str, Any],
        *,
        owner_id: str | None = None,
    ) -> WorkflowEntity:
        definition = self.definition_for(entity_type)
        entity = WorkflowEntity(
            entity_type=entity_type,
            status=definition.initial_status,
            owner_id=owner_id,
            payload=_clean_payload(payload),
            row_version=1,
        )
        session.add(entity)
        session.commit()
        session.refresh(entity)
        return entity

    def update(
        self,
        session: Session,
        entity_type: str,
        entity_id: uuid.UUID,
        patch: dict[str, Any],
        *,
        expected_version: int,
        owner_id: str | None = None,
    ) -> WorkflowEntity:
        entity = self.get(session, entity_type, entity_id)
        merged = apply_patch(entity.payload, patch)
        values: dict[str, Any] = {
            "payload": merged,
            "updated_at": utcnow(),
            "row_version": WorkflowEntity.row_version + 1,
        }
        if owner_id is not None:
            values["owner_id"] = owner_id

        result = session.execute(
            update(WorkflowEntity)
            .where(
                and_(
                    WorkflowEntity.id == entity.id,
                    WorkflowEntity.row_version == expected_version,
                )
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            session.rollback()
            raise ConcurrentModificationError(entity_type, entity_id)
        session.commit()
        session.refresh(entity)
        return entity

    def list_by_type(
        self,
        session: Session,
        entity_type: str,
        *,
        status: str | None = None,
        owner_id: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[WorkflowEntity]:
        self.definition_for(entity_type)
        stmt: Select[tuple[WorkflowEntity]] = select(WorkflowEntity).where(WorkflowEntity.entity_type == entity_type)
        if status is not None:
            stmt = stmt.where(WorkflowEntity.status == status)
        if owner_id is not None:
            stmt = stmt.where(WorkflowEntity.owner_id == owner_id)
        stmt = stmt.order_by(WorkflowEntity.created_at, WorkflowEntity.id).limit(limit).offset(offset)
        return list(session.scalars(stmt).all())


def apply_patch(payload: dict[str, Any] | None, patch: dict[str, Any] | None) -> dict[str, Any]:
    """Shallow merge; a ``None`` value clears the field."""
    merged = dict(payload or {})
    for key, value in _clean_payload(patch or {}).items():
        if value is None:
            merged.pop(key, None)
        else:
            merged[key] = value
    return merged


def _clean_payload(payload: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in payload.items() if key not in _RESERVED_PAYLOAD_KEYS}
