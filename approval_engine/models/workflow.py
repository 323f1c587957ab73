"""
Approval Workflow Engine
Workflow domain models.

Models:
    - WorkflowTemplate: versioned approval recipe for one request type.
    - WorkflowStage: one ordered step of a template, gated by a role set.
    - WorkflowInstance: live approval state of one business request.
    - StageAction: immutable approve/reject decision, one per (instance, stage).

Instances carry a value copy of their template's stages (``stages_snapshot``)
so template revisions never change in-flight approval semantics.
"""

from datetime import datetime, timezone

from approval_engine.models import db
from approval_engine.models.immutable import protect_append_only, protect_from_delete

# ── Constants ────────────────────────────────────────────────────────────────

STATUS_PENDING = "PENDING"
STATUS_APPROVED = "APPROVED"
STATUS_REJECTED = "REJECTED"
STATUS_CANCELLED = "CANCELLED"

INSTANCE_STATUSES = frozenset({
    STATUS_PENDING, STATUS_APPROVED, STATUS_REJECTED, STATUS_CANCELLED,
})
TERMINAL_STATUSES = frozenset({STATUS_APPROVED, STATUS_REJECTED, STATUS_CANCELLED})

# PENDING → PENDING covers "approve, more stages remain".
INSTANCE_TRANSITIONS = {
    STATUS_PENDING:   [STATUS_PENDING, STATUS_APPROVED, STATUS_REJECTED, STATUS_CANCELLED],
    STATUS_APPROVED:  [],
    STATUS_REJECTED:  [],
    STATUS_CANCELLED: [],
}

ACTION_APPROVED = "APPROVED"
ACTION_REJECTED = "REJECTED"
STAGE_ACTIONS = frozenset({ACTION_APPROVED, ACTION_REJECTED})

# Request types the baseline catalog knows about; callers may use others.
KNOWN_REQUEST_TYPES = frozenset({
    "INVOICE",
    "PURCHASE_REQUEST",
    "IT_REQUEST",
    "PAYMENT_REQUEST",
})


def validate_instance_transition(old_status, new_status):
    """Return True if a WorkflowInstance status transition is valid."""
    return new_status in INSTANCE_TRANSITIONS.get(old_status, [])


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


# ═════════════════════════════════════════════════════════════════════════════
# TEMPLATES
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowTemplate(db.Model):
    """
    Named, versioned approval recipe for one request type.

    Rows are never edited apart from ``is_active``: a stage change is a new
    row with ``version + 1`` pointing back through ``supersedes_id``.
    """

    __tablename__ = "workflow_templates"
    __table_args__ = (
        db.Index("ix_workflow_templates_type_active", "request_type", "is_active"),
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    request_type = db.Column(
        db.String(50), nullable=False, index=True,
        comment="INVOICE | PURCHASE_REQUEST | IT_REQUEST | PAYMENT_REQUEST | …",
    )
    version = db.Column(db.Integer, nullable=False, default=1)
    supersedes_id = db.Column(
        db.Integer,
        db.ForeignKey("workflow_templates.id"),
        nullable=True,
        comment="Previous revision of this template, if any",
    )
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_by = db.Column(db.String(150), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow,
    )

    stages = db.relationship(
        "WorkflowStage",
        back_populates="template",
        order_by="WorkflowStage.stage_order",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def stage_snapshot(self) -> list[dict]:
        """Value copy of the ordered stage list, as embedded in instances."""
        return [s.to_dict() for s in self.stages]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "request_type": self.request_type,
            "version": self.version,
            "supersedes_id": self.supersedes_id,
            "is_active": self.is_active,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "stages": self.stage_snapshot(),
        }

    def __repr__(self):
        return f"<WorkflowTemplate {self.id}: {self.request_type} v{self.version}>"


class WorkflowStage(db.Model):
    """One ordered step of a template; ``approver_roles`` is never empty."""

    __tablename__ = "workflow_stages"
    __table_args__ = (
        db.UniqueConstraint("template_id", "stage_order", name="uq_workflow_stage_order"),
    )

    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(
        db.Integer,
        db.ForeignKey("workflow_templates.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    stage_order = db.Column(db.Integer, nullable=False)
    name = db.Column(db.String(200), nullable=False)
    approver_roles = db.Column(
        db.JSON, nullable=False, default=list,
        comment="List of role names whose members may decide this stage",
    )

    template = db.relationship("WorkflowTemplate", back_populates="stages")

    def to_dict(self) -> dict:
        return {
            "stage_order": self.stage_order,
            "name": self.name,
            "approver_roles": sorted(self.approver_roles or []),
        }

    def __repr__(self):
        return f"<WorkflowStage {self.template_id}#{self.stage_order} {self.name}>"


# ═════════════════════════════════════════════════════════════════════════════
# INSTANCES
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowInstance(db.Model):
    """
    Live approval state for one (request_type, request_id).

    Only the workflow engine writes these rows. ``version_id`` is an
    optimistic-lock counter: a flush against a row another transaction
    already advanced fails instead of double-advancing ``current_stage``.
    """

    __tablename__ = "workflow_instances"
    __table_args__ = (
        db.UniqueConstraint("request_type", "request_id", name="uq_workflow_instance_request"),
        db.Index("ix_workflow_instances_status", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(
        db.Integer,
        db.ForeignKey("workflow_templates.id"),
        nullable=False,
        comment="Informational only; semantics come from stages_snapshot",
    )
    template_name = db.Column(db.String(200), nullable=False)
    template_version = db.Column(db.Integer, nullable=False, default=1)
    stages_snapshot = db.Column(
        db.JSON, nullable=False,
        comment="[{stage_order, name, approver_roles}] copied at creation",
    )

    request_type = db.Column(db.String(50), nullable=False)
    request_id = db.Column(
        db.String(64), nullable=False,
        comment="PK of the owning business request (UUID or int-as-string)",
    )

    current_stage = db.Column(db.Integer, nullable=False, default=1)
    status = db.Column(db.String(20), nullable=False, default=STATUS_PENDING)

    created_by = db.Column(db.String(150), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    actions = db.relationship(
        "StageAction",
        back_populates="instance",
        order_by="StageAction.stage_order",
        lazy="selectin",
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def stage_count(self) -> int:
        return len(self.stages_snapshot or [])

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def stage(self, order: int) -> dict | None:
        """Return the snapshotted stage with ``stage_order == order``."""
        for s in self.stages_snapshot or []:
            if s["stage_order"] == order:
                return s
        return None

    @property
    def current_stage_detail(self) -> dict | None:
        if self.status != STATUS_PENDING:
            return None
        return self.stage(self.current_stage)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "template_id": self.template_id,
            "template_name": self.template_name,
            "template_version": self.template_version,
            "request_type": self.request_type,
            "request_id": self.request_id,
            "current_stage": self.current_stage,
            "stage_count": self.stage_count,
            "status": self.status,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "completed_at": _iso(self.completed_at),
        }

    def __repr__(self):
        return (
            f"<WorkflowInstance {self.id}: {self.request_type}/{self.request_id} "
            f"{self.status}@{self.current_stage}>"
        )


class StageAction(db.Model):
    """
    Immutable decision record.

    The (instance_id, stage_order) unique constraint is the concurrency
    guard: the first committed decision at a stage wins and every later
    insert for the same stage fails at the database.
    """

    __tablename__ = "workflow_stage_actions"
    __table_args__ = (
        db.UniqueConstraint("instance_id", "stage_order", name="uq_stage_action_instance_stage"),
    )

    id = db.Column(db.Integer, primary_key=True)
    instance_id = db.Column(
        db.Integer,
        db.ForeignKey("workflow_instances.id"),
        nullable=False,
        index=True,
    )
    stage_order = db.Column(db.Integer, nullable=False)
    stage_name = db.Column(db.String(200), nullable=True)
    action = db.Column(db.String(20), nullable=False, comment="APPROVED | REJECTED")
    actor = db.Column(db.String(150), nullable=False)
    acted_for = db.Column(
        db.String(150), nullable=False,
        comment="Equals actor unless the authority came from a delegation",
    )
    comments = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    instance = db.relationship("WorkflowInstance", back_populates="actions")

    @property
    def via_delegation(self) -> bool:
        return self.acted_for != self.actor

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "instance_id": self.instance_id,
            "stage_order": self.stage_order,
            "stage_name": self.stage_name,
            "action": self.action,
            "actor": self.actor,
            "acted_for": self.acted_for,
            "via_delegation": self.via_delegation,
            "comments": self.comments,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<StageAction {self.instance_id}#{self.stage_order} {self.action} by {self.actor}>"


protect_from_delete(WorkflowInstance)
protect_append_only(StageAction)
