"""create workflow entity, transition record and notification intent tables

Revision ID: 202610180001
Revises:
Create Date: 2026-10-18 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610180001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "workflow_entity",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=64), nullable=False),
        sa.Column("owner_id", sa.String(length=128), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_workflow_entity_type_status", "workflow_entity", ["entity_type", "status"], unique=False)
    op.create_index("ix_workflow_entity_owner", "workflow_entity", ["owner_id"], unique=False)

    op.create_table(
        "workflow_transition_record",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("entity_id", sa.Uuid(), nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("from_status", sa.String(length=64), nullable=False),
        sa.Column("to_status", sa.String(length=64), nullable=False),
        sa.Column("actor_id", sa.String(length=128), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("side_effects", sa.JSON(), nullable=False),
        sa.Column("idempotency_key", sa.String(length=255), nullable=True),
        sa.Column("request_hash", sa.String(length=128), nullable=True),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["entity_id"], ["workflow_entity.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("entity_id", "sequence", name="uq_workflow_transition_entity_sequence"),
        sa.UniqueConstraint("entity_id", "action", "idempotency_key", name="uq_workflow_transition_idempotency"),
    )
    op.create_index("ix_workflow_transition_entity", "workflow_transition_record", ["entity_id"], unique=False)

    op.create_table(
        "workflow_notification_intent",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("entity_id", sa.Uuid(), nullable=False),
        sa.Column("transition_record_id", sa.Uuid(), nullable=False),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="Queued"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_workflow_notification_intent_status",
        "workflow_notification_intent",
        ["status"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_workflow_notification_intent_status", table_name="workflow_notification_intent")
    op.drop_table("workflow_notification_intent")
    op.drop_index("ix_workflow_transition_entity", table_name="workflow_transition_record")
    op.drop_table("workflow_transition_record")
    op.drop_index("ix_workflow_entity_owner", table_name="workflow_entity")
    op.drop_index("ix_workflow_entity_type_status", table_name="workflow_entity")
    op.drop_table("workflow_entity")
