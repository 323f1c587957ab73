"""Approval workflow engine – catalog, instances, delegations, audit.

Revision ID: 7c1e4a9b2d10
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa

revision = "7c1e4a9b2d10"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ── Workflow templates ──
    op.create_table(
        "workflow_templates",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("request_type", sa.String(50), nullable=False, index=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("supersedes_id", sa.Integer,
                  sa.ForeignKey("workflow_templates.id"), nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_by", sa.String(150), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
    )
    op.create_index("ix_workflow_templates_type_active", "workflow_templates",
                    ["request_type", "is_active"])

    # ── Workflow stages ──
    op.create_table(
        "workflow_stages",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("template_id", sa.Integer,
                  sa.ForeignKey("workflow_templates.id", ondelete="CASCADE"),
                  nullable=False, index=True),
        sa.Column("stage_order", sa.Integer, nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("approver_roles", sa.JSON, nullable=False),
        sa.UniqueConstraint("template_id", "stage_order", name="uq_workflow_stage_order"),
    )

    # ── Workflow instances ──
    op.create_table(
        "workflow_instances",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("template_id", sa.Integer,
                  sa.ForeignKey("workflow_templates.id"), nullable=False),
        sa.Column("template_name", sa.String(200), nullable=False),
        sa.Column("template_version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("stages_snapshot", sa.JSON, nullable=False),
        sa.Column("request_type", sa.String(50), nullable=False),
        sa.Column("request_id", sa.String(64), nullable=False),
        sa.Column("current_stage", sa.Integer, nullable=False, server_default="1"),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("created_by", sa.String(150), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version_id", sa.Integer, nullable=False),
        sa.UniqueConstraint("request_type", "request_id", name="uq_workflow_instance_request"),
    )
    op.create_index("ix_workflow_instances_status", "workflow_instances", ["status"])

    # ── Stage actions (append-only) ──
    op.create_table(
        "workflow_stage_actions",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("instance_id", sa.Integer,
                  sa.ForeignKey("workflow_instances.id"), nullable=False, index=True),
        sa.Column("stage_order", sa.Integer, nullable=False),
        sa.Column("stage_name", sa.String(200), nullable=True),
        sa.Column("action", sa.String(20), nullable=False),
        sa.Column("actor", sa.String(150), nullable=False),
        sa.Column("acted_for", sa.String(150), nullable=False),
        sa.Column("comments", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
        sa.UniqueConstraint("instance_id", "stage_order", name="uq_stage_action_instance_stage"),
    )

    # ── Delegations ──
    op.create_table(
        "approval_delegations",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("delegator", sa.String(150), nullable=False),
        sa.Column("delegate", sa.String(150), nullable=False),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reason", sa.Text, nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_by", sa.String(150), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("start_at <= end_at", name="ck_delegation_window"),
    )
    op.create_index("ix_delegation_delegate_window", "approval_delegations",
                    ["delegate", "is_active", "start_at", "end_at"])
    op.create_index("ix_delegation_delegator", "approval_delegations", ["delegator"])

    # ── Audit events (append-only) ──
    op.create_table(
        "workflow_audit_events",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("instance_id", sa.Integer,
                  sa.ForeignKey("workflow_instances.id"), nullable=False),
        sa.Column("event_type", sa.String(40), nullable=False),
        sa.Column("stage_order", sa.Integer, nullable=True),
        sa.Column("actor", sa.String(150), nullable=False, server_default="system"),
        sa.Column("acted_for", sa.String(150), nullable=True),
        sa.Column("comments", sa.Text, nullable=True),
        sa.Column("payload_json", sa.Text, server_default="{}"),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
    )
    op.create_index("idx_wf_audit_instance_ts", "workflow_audit_events",
                    ["instance_id", "timestamp"])
    op.create_index("idx_wf_audit_actor", "workflow_audit_events", ["actor"])

    # ── Role assignments (default role directory) ──
    op.create_table(
        "user_role_assignments",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("user_id", sa.String(150), nullable=False, index=True),
        sa.Column("role", sa.String(100), nullable=False, index=True),
        sa.Column("assigned_at", sa.DateTime, nullable=True),
        sa.UniqueConstraint("user_id", "role", name="uq_user_role_assignment"),
    )


def downgrade():
    op.drop_table("user_role_assignments")
    op.drop_index("idx_wf_audit_actor", table_name="workflow_audit_events")
    op.drop_index("idx_wf_audit_instance_ts", table_name="workflow_audit_events")
    op.drop_table("workflow_audit_events")
    op.drop_index("ix_delegation_delegator", table_name="approval_delegations")
    op.drop_index("ix_delegation_delegate_window", table_name="approval_delegations")
    op.drop_table("approval_delegations")
    op.drop_table("workflow_stage_actions")
    op.drop_index("ix_workflow_instances_status", table_name="workflow_instances")
    op.drop_table("workflow_instances")
    op.drop_table("workflow_stages")
    op.drop_index("ix_workflow_templates_type_active", table_name="workflow_templates")
    op.drop_table("workflow_templates")
