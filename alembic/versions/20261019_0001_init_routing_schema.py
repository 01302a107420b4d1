"""init routing schema

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from __future__ import annotations

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "20261019_0001"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

AGENT_ONLINE_STATUS = ("online", "busy", "offline")
CONVERSATION_STATUS = ("open", "assigned", "resolved", "archived")
FLOW_STATE = (
    "greeting",
    "awaiting_routing_confirmation",
    "department_selected",
    "assigned",
    "timeout_redirect",
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    sa.Enum(*AGENT_ONLINE_STATUS, name="agent_online_status").create(bind, checkfirst=True)
    sa.Enum(*CONVERSATION_STATUS, name="conversation_status").create(bind, checkfirst=True)
    sa.Enum(*FLOW_STATE, name="flow_state").create(bind, checkfirst=True)

    op.create_table(
        "companies",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(length=160), nullable=False),
        sa.Column("greeting_message", sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "departments",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("company_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("slug", sa.String(length=80), nullable=False),
        sa.Column(
            "response_timeout_minutes", sa.Integer(), nullable=False, server_default=sa.text("3")
        ),
        sa.Column("is_root", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("company_id", "slug", name="uq_department_company_slug"),
    )
    op.create_index("ix_departments_company_id", "departments", ["company_id"], unique=False)
    # One active root department per company.
    op.create_index(
        "uq_department_root_per_company",
        "departments",
        ["company_id"],
        unique=True,
        postgresql_where=sa.text("is_root AND is_active"),
    )

    op.create_table(
        "agents",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("company_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("department_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("display_name", sa.String(length=120), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "online_status",
            sa.Enum(*AGENT_ONLINE_STATUS, name="agent_online_status", create_type=False),
            nullable=False,
            server_default=sa.text("'offline'"),
        ),
        sa.Column("last_heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["department_id"], ["departments.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_agents_company_id", "agents", ["company_id"], unique=False)
    op.create_index("ix_agents_department_id", "agents", ["department_id"], unique=False)

    op.create_table(
        "conversations",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("company_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("customer_phone", sa.String(length=64), nullable=False),
        sa.Column("customer_name", sa.String(length=120), nullable=True),
        sa.Column(
            "status",
            sa.Enum(*CONVERSATION_STATUS, name="conversation_status", create_type=False),
            nullable=False,
            server_default=sa.text("'open'"),
        ),
        sa.Column(
            "flow_state",
            sa.Enum(*FLOW_STATE, name="flow_state", create_type=False),
            nullable=False,
            server_default=sa.text("'greeting'"),
        ),
        sa.Column("department_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("assigned_agent_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("routed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("timeout_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("greeting_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("suggestion_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_department_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("last_attendant_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("last_attended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["department_id"], ["departments.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["assigned_agent_id"], ["agents.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "company_id", "customer_phone", name="uq_conversation_company_customer"
        ),
    )
    op.create_index("ix_conversations_company_id", "conversations", ["company_id"], unique=False)
    op.create_index(
        "ix_conversations_department_id", "conversations", ["department_id"], unique=False
    )
    op.create_index(
        "ix_conversations_assigned_agent_id",
        "conversations",
        ["assigned_agent_id"],
        unique=False,
    )
    op.create_index(
        "ix_conversations_flow_timeout",
        "conversations",
        ["flow_state", "timeout_at"],
        unique=False,
    )

    op.create_table(
        "assignments",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("conversation_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("agent_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("unassigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["conversation_id"], ["conversations.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["agent_id"], ["agents.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_assignments_conversation_id", "assignments", ["conversation_id"], unique=False
    )
    op.create_index("ix_assignments_agent_id", "assignments", ["agent_id"], unique=False)
    op.create_index(
        "uq_assignment_active_per_conversation",
        "assignments",
        ["conversation_id"],
        unique=True,
        postgresql_where=sa.text("unassigned_at IS NULL"),
    )


def downgrade() -> None:
    op.drop_index("uq_assignment_active_per_conversation", table_name="assignments")
    op.drop_index("ix_assignments_agent_id", table_name="assignments")
    op.drop_index("ix_assignments_conversation_id", table_name="assignments")
    op.drop_table("assignments")

    op.drop_index("ix_conversations_flow_timeout", table_name="conversations")
    op.drop_index("ix_conversations_assigned_agent_id", table_name="conversations")
    op.drop_index("ix_conversations_department_id", table_name="conversations")
    op.drop_index("ix_conversations_company_id", table_name="conversations")
    op.drop_table("conversations")

    op.drop_index("ix_agents_department_id", table_name="agents")
    op.drop_index("ix_agents_company_id", table_name="agents")
    op.drop_table("agents")

    op.drop_index("uq_department_root_per_company", table_name="departments")
    op.drop_index("ix_departments_company_id", table_name="departments")
    op.drop_table("departments")

    op.drop_table("companies")

    bind = op.get_bind()
    sa.Enum(name="flow_state").drop(bind, checkfirst=True)
    sa.Enum(name="conversation_status").drop(bind, checkfirst=True)
    sa.Enum(name="agent_online_status").drop(bind, checkfirst=True)
