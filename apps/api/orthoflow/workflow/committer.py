from __future__ import annotations

from dataclasses import dataclass, field

from opentelemetry import trace
from sqlalchemy import and_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from orthoflow.workflow.audit_log import TransitionLog
from orthoflow.workflow.errors import ConcurrentModificationError, NotFoundError
from orthoflow.workflow.models import TransitionRecord, WorkflowEntity, utcnow
from orthoflow.workflow.validator import TransitionPlan

tracer = trace.get_tracer("orthoflow.workflow.committer")


@dataclass(slots=True)
class TransitionCommitter:
    """Writes the new status and its audit record in one transaction."""

    log: TransitionLog = field(default_factory=TransitionLog)

    def commit(
        self,
        session: Session,
        plan: TransitionPlan,
        *,
        actor_id: str,
        reason: str | None = None,
        idempotency_key: str | None = None,
        request_hash: str | None = None,
        correlation_id: str | None = None,
    ) -> tuple[WorkflowEntity, TransitionRecord]:
        entity_type = plan.rule.entity_type
        with tracer.start_as_current_span("workflow.transition.commit") as span:
            span.set_attribute("entity_type", entity_type)
            span.set_attribute("entity_id", str(plan.entity_id))
            span.set_attribute("action", plan.action)
            span.set_attribute("from_status", plan.from_status)
            span.set_attribute("to_status", plan.to_status)
            if correlation_id:
                span.set_attribute("correlation_id", correlation_id)

            try:
                result = session.execute(
                    update(WorkflowEntity)
                    .where(
                        and_(
                            WorkflowEntity.id == plan.entity_id,
                            WorkflowEntity.row_version == plan.expected_version,
                            WorkflowEntity.status == plan.from_status,
                        )
                    )
                    .values(
                        status=plan.to_status,
                        payload=plan.payload,
                        updated_at=utcnow(),
                        row_version=WorkflowEntity.row_version + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    session.rollback()
                    span.set_attribute("conflict", True)
                    raise ConcurrentModificationError(entity_type, plan.entity_id)

                record = self.log.append(
                    session,
                    TransitionRecord(
                        entity_id=plan.entity_id,
                        entity_type=entity_type,
                        action=plan.action,
                        from_status=plan.from_status,
                        to_status=plan.to_status,
                        actor_id=actor_id,
                        reason=reason,
                        side_effects=list(plan.side_effects),
                        idempotency_key=idempotency_key,
                        request_hash=request_hash,
                        correlation_id=correlation_id,
                    ),
                )
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                span.set_attribute("conflict", True)
                raise ConcurrentModificationError(entity_type, plan.entity_id) from exc

            session.refresh(record)
            entity = session.get(WorkflowEntity, plan.entity_id, populate_existing=True)
            if entity is None:
                raise NotFoundError(entity_type, plan.entity_id)
            span.set_attribute("transition_record_id", str(record.id))
            span.set_attribute("sequence", record.sequence)
            return entity, record
