from __future__ import annotations

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session

from orthoflow.core.config import Settings, get_settings
from orthoflow.metrics import observe_commit_retry, observe_notification_failure, observe_transition
from orthoflow.platform.security.context import AuthContext
from orthoflow.workflow.audit_log import TransitionLog
from orthoflow.workflow.committer import TransitionCommitter
from orthoflow.workflow.definitions import default_rule_table
from orthoflow.workflow.errors import (
    ConcurrentModificationError,
    IdempotencyConflictError,
    NotFoundError,
    WorkflowError,
)
from orthoflow.workflow.models import TransitionRecord, WorkflowEntity
from orthoflow.workflow.notifier import Notifier, build_notifier
from orthoflow.workflow.rules import RuleTable, WorkflowDefinition
from orthoflow.workflow.schemas import (
    AvailableActionRead,
    EntityCreate,
    EntityRead,
    EntityUpdate,
    TransitionRecordRead,
    TransitionRequest,
    TransitionResult,
    TransitionRuleRead,
    WorkflowDefinitionRead,
)
from orthoflow.workflow.store import EntityStore
from orthoflow.workflow.validator import TransitionValidator

logger = logging.getLogger("orthoflow.workflow")


@dataclass(slots=True)
class WorkflowService:
    store: EntityStore
    validator: TransitionValidator
    committer: TransitionCommitter
    log: TransitionLog
    notifier: Notifier
    max_attempts: int = 3

    @property
    def rule_table(self) -> RuleTable:
        return self.store.rule_table

    def create_entity(self, session: Session, ctx: AuthContext, entity_type: str, payload: EntityCreate) -> EntityRead:
        entity = self.store.create(session, entity_type, payload.payload, owner_id=payload.owner_id)
        logger.info(
            "workflow.entity.created",
            extra={
                "entity_type": entity_type,
                "entity_id": str(entity.id),
                "to_status": entity.status,
                "actor_id": ctx.user_id,
            },
        )
        return EntityRead.model_validate(entity)

    def get_entity(self, session: Session, entity_type: str, entity_id: uuid.UUID) -> EntityRead:
        return EntityRead.model_validate(self.store.get(session, entity_type, entity_id))

    def update_entity(
        self,
        session: Session,
        ctx: AuthContext,
        entity_type: str,
        entity_id: uuid.UUID,
        payload: EntityUpdate,
    ) -> EntityRead:
        entity = self.store.update(
            session,
            entity_type,
            entity_id,
            payload.payload,
            expected_version=payload.row_version,
            owner_id=payload.owner_id,
        )
        logger.info(
            "workflow.entity.updated",
            extra={"entity_type": entity_type, "entity_id": str(entity_id), "actor_id": ctx.user_id},
        )
        return EntityRead.model_validate(entity)

    def list_entities(
        self,
        session: Session,
        entity_type: str,
        *,
        status: str | None = None,
        owner_id: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[EntityRead]:
        rows = self.store.list_by_type(
            session, entity_type, status=status, owner_id=owner_id, limit=limit, offset=offset
        )
        return [EntityRead.model_validate(row) for row in rows]

    def request_transition(
        self,
        session: Session,
        ctx: AuthContext,
        entity_type: str,
        entity_id: uuid.UUID,
        request: TransitionRequest,
        *,
        idempotency_key: str | None = None,
    ) -> TransitionResult:
        action = request.action
        key = request.idempotency_key or idempotency_key
        request_hash = self._request_hash(
            {"action": action, "reason": request.reason, "field_updates": request.field_updates}
        )

        entity = self.store.get(session, entity_type, entity_id)
        replay = self._replay(session, entity, action, key, request_hash)
        if replay is not None:
            return replay

        conflict: ConcurrentModificationError | None = None
        attempt = 0
        while True:
            attempt += 1
            try:
                plan = self.validator.evaluate(entity, action, ctx.normalized_roles, request.field_updates)
            except WorkflowError as exc:
                if conflict is not None:
                    # Lost the race; the fresh state no longer allows the action.
                    observe_transition(entity_type, action, "conflict")
                    self._log_rejected(ctx, entity, action, conflict, attempt)
                    raise ConcurrentModificationError(entity_type, entity_id, cause=exc) from exc
                observe_transition(entity_type, action, exc.code.lower())
                self._log_rejected(ctx, entity, action, exc, attempt)
                raise

            try:
                entity, record = self.committer.commit(
                    session,
                    plan,
                    actor_id=ctx.user_id,
                    reason=request.reason,
                    idempotency_key=key,
                    request_hash=request_hash,
                    correlation_id=ctx.correlation_id,
                )
                break
            except ConcurrentModificationError as exc:
                conflict = exc
                observe_commit_retry(entity_type)
                logger.warning(
                    "workflow.transition.conflict",
                    extra={
                        "entity_type": entity_type,
                        "entity_id": str(entity_id),
                        "action": action,
                        "attempt": attempt,
                        "actor_id": ctx.user_id,
                    },
                )
                if attempt >= self.max_attempts:
                    observe_transition(entity_type, action, "conflict")
                    raise

            entity = self.store.get(session, entity_type, entity_id)
            replay = self._replay(session, entity, action, key, request_hash)
            if replay is not None:
                return replay

        observe_transition(entity_type, action, "committed")
        logger.info(
            "workflow.transition.committed",
            extra={
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "action": action,
                "from_status": record.from_status,
                "to_status": record.to_status,
                "actor_id": ctx.user_id,
                "attempt": attempt,
                "transition_record_id": str(record.id),
            },
        )
        result = TransitionResult(
            entity=EntityRead.model_validate(entity),
            transition=TransitionRecordRead.model_validate(record),
            replayed=False,
        )
        self._notify(session, record)
        return result

    def list_transitions(self, session: Session, entity_type: str, entity_id: uuid.UUID) -> list[TransitionRecordRead]:
        entity = self.store.get(session, entity_type, entity_id)
        return [TransitionRecordRead.model_validate(row) for row in self.log.history(session, entity.id)]

    def available_actions(
        self,
        session: Session,
        ctx: AuthContext,
        entity_type: str,
        entity_id: uuid.UUID,
    ) -> list[AvailableActionRead]:
        entity = self.store.get(session, entity_type, entity_id)
        return [
            AvailableActionRead.model_validate(item)
            for item in self.validator.available_actions(entity, ctx.normalized_roles)
        ]

    def list_definitions(self) -> list[WorkflowDefinitionRead]:
        return [self._definition_read(definition) for definition in self.rule_table.definitions()]

    def get_definition(self, entity_type: str) -> WorkflowDefinitionRead:
        definition = self.rule_table.definition(entity_type)
        if definition is None:
            raise NotFoundError(entity_type)
        return self._definition_read(definition)

    def _replay(
        self,
        session: Session,
        entity: WorkflowEntity,
        action: str,
        key: str | None,
        request_hash: str,
    ) -> TransitionResult | None:
        if not key:
            return None
        record = self.log.find_by_idempotency_key(session, entity.id, action, key)
        if record is None:
            return None
        if record.request_hash != request_hash:
            raise IdempotencyConflictError(key)

        observe_transition(entity.entity_type, action, "replayed")
        logger.info(
            "workflow.transition.replayed",
            extra={
                "entity_type": entity.entity_type,
                "entity_id": str(entity.id),
                "action": action,
                "transition_record_id": str(record.id),
            },
        )
        return TransitionResult(
            entity=EntityRead.model_validate(entity),
            transition=TransitionRecordRead.model_validate(record),
            replayed=True,
        )

    def _notify(self, session: Session, record: TransitionRecord) -> None:
        entity_id = record.entity_id
        record_id = record.id
        tags = list(record.side_effects or [])
        try:
            self.notifier.notify(session, entity_id, record_id, tags)
        except Exception:
            session.rollback()
            observe_notification_failure(self.notifier.backend)
            logger.exception(
                "workflow.notification.failed",
                extra={
                    "entity_id": str(entity_id),
                    "transition_record_id": str(record_id),
                    "tags": tags,
                },
            )

    def _log_rejected(
        self,
        ctx: AuthContext,
        entity: WorkflowEntity,
        action: str,
        exc: WorkflowError,
        attempt: int,
    ) -> None:
        logger.info(
            "workflow.transition.rejected",
            extra={
                "entity_type": entity.entity_type,
                "entity_id": str(entity.id),
                "action": action,
                "from_status": entity.status,
                "actor_id": ctx.user_id,
                "attempt": attempt,
                "error_code": exc.code,
            },
        )

    def _request_hash(self, payload: dict[str, Any]) -> str:
        return hashlib.sha256(json.dumps(payload, sort_keys=True, default=str).encode("utf-8")).hexdigest()

    def _definition_read(self, definition: WorkflowDefinition) -> WorkflowDefinitionRead:
        return WorkflowDefinitionRead(
            entity_type=definition.entity_type,
            label=definition.label,
            statuses=list(definition.statuses),
            initial_status=definition.initial_status,
            terminal_statuses=sorted(definition.terminal_statuses),
            rules=[
                TransitionRuleRead(
                    from_status=rule.from_status,
                    action=rule.action,
                    to_status=rule.to_status,
                    allowed_roles=sorted(rule.allowed_roles),
                    required_fields=list(rule.required_fields),
                    side_effects=list(rule.side_effects),
                    preconditions=[precondition.name for precondition in rule.preconditions],
                    allow_from_terminal=rule.allow_from_terminal,
                )
                for rule in definition.rules
            ],
        )


def build_workflow_service(
    settings: Settings | None = None,
    *,
    rule_table: RuleTable | None = None,
    notifier: Notifier | None = None,
) -> WorkflowService:
    settings = settings or get_settings()
    store = EntityStore(rule_table or default_rule_table())
    log = TransitionLog()
    return WorkflowService(
        store=store,
        validator=TransitionValidator(store),
        committer=TransitionCommitter(log),
        log=log,
        notifier=notifier or build_notifier(settings),
        max_attempts=max(1, settings.workflow_commit_max_attempts),
    )


workflow_service = build_workflow_service()
