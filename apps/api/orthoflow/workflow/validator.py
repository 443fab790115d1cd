from __future__ import annotations

import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session

from orthoflow.workflow.errors import (
    ForbiddenTransitionError,
    NoSuchTransitionError,
    PreconditionFailedError,
    TerminalStateError,
)
from orthoflow.workflow.models import WorkflowEntity
from orthoflow.workflow.rules import TransitionRule
from orthoflow.workflow.store import EntityStore, apply_patch


@dataclass(frozen=True, slots=True)
class TransitionPlan:
    rule: TransitionRule
    entity_id: uuid.UUID
    from_status: str
    to_status: str
    side_effects: tuple[str, ...]
    payload: dict[str, Any]
    expected_version: int

    @property
    def action(self) -> str:
        return self.rule.action


@dataclass(frozen=True, slots=True)
class AvailableAction:
    action: str
    to_status: str
    required_fields: tuple[str, ...]
    missing_fields: tuple[str, ...]


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


def _normalize_roles(roles: Iterable[str]) -> frozenset[str]:
    return frozenset(str(role).lower() for role in roles)


@dataclass(slots=True)
class TransitionValidator:
    """Decides whether an action may be applied to an entity.

    Only loading the entity touches the database; every other check runs on
    the loaded snapshot so a retry after a commit conflict can re-run the whole
    decision against fresh state.
    """

    store: EntityStore

    def check(
        self,
        session: Session,
        entity_type: str,
        entity_id: uuid.UUID,
        action: str,
        roles: Iterable[str],
        field_updates: Mapping[str, Any] | None = None,
    ) -> tuple[WorkflowEntity, TransitionPlan]:
        entity = self.store.get(session, entity_type, entity_id)
        return entity, self.evaluate(entity, action, roles, field_updates)

    def evaluate(
        self,
        entity: WorkflowEntity,
        action: str,
        roles: Iterable[str],
        field_updates: Mapping[str, Any] | None = None,
    ) -> TransitionPlan:
        definition = self.store.definition_for(entity.entity_type)
        status = entity.status

        rule = self.store.rule_table.lookup(entity.entity_type, status, action)
        if rule is None:
            if definition.is_terminal(status):
                raise TerminalStateError(entity.entity_type, status, action)
            raise NoSuchTransitionError(entity.entity_type, status, action)
        # Terminal statuses are locked before role or field checks; only whitelisted rules get past.
        if definition.is_terminal(status) and not rule.allow_from_terminal:
            raise TerminalStateError(entity.entity_type, status, action)

        if not (_normalize_roles(roles) & rule.allowed_roles):
            raise ForbiddenTransitionError(entity.entity_type, action, list(rule.allowed_roles))

        merged = apply_patch(entity.payload, dict(field_updates or {}))
        missing = [name for name in rule.required_fields if is_empty(merged.get(name))]
        if missing:
            raise PreconditionFailedError(action, missing)
        failed = [precondition.name for precondition in rule.preconditions if not precondition.holds(merged)]
        if failed:
            raise PreconditionFailedError(action, [], failed)

        for counter in rule.increments:
            merged[counter] = int(merged.get(counter) or 0) + 1

        return TransitionPlan(
            rule=rule,
            entity_id=entity.id,
            from_status=status,
            to_status=rule.to_status,
            side_effects=rule.side_effects,
            payload=merged,
            expected_version=entity.row_version,
        )

    def available_actions(self, entity: WorkflowEntity, roles: Iterable[str]) -> list[AvailableAction]:
        definition = self.store.definition_for(entity.entity_type)
        terminal = definition.is_terminal(entity.status)
        normalized = _normalize_roles(roles)
        payload = entity.payload or {}

        actions: list[AvailableAction] = []
        for rule in self.store.rule_table.rules_from(entity.entity_type, entity.status):
            if terminal and not rule.allow_from_terminal:
                continue
            if not (normalized & rule.allowed_roles):
                continue
            actions.append(
                AvailableAction(
                    action=rule.action,
                    to_status=rule.to_status,
                    required_fields=rule.required_fields,
                    missing_fields=tuple(name for name in rule.required_fields if is_empty(payload.get(name))),
                )
            )
        return actions
