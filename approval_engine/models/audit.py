"""
Approval Workflow Engine
Audit domain model.

Models:
    - WorkflowAuditEvent: immutable, append-only trail of instance-level
      events and stage decisions.
"""

import json
from datetime import UTC, datetime

from approval_engine.models import db
from approval_engine.models.immutable import protect_append_only

# ── Constants ────────────────────────────────────────────────────────────────

EVENT_INSTANCE_CREATED = "instance.created"
EVENT_STAGE_APPROVED = "stage.approved"
EVENT_STAGE_REJECTED = "stage.rejected"
EVENT_INSTANCE_APPROVED = "instance.approved"
EVENT_INSTANCE_REJECTED = "instance.rejected"
EVENT_INSTANCE_CANCELLED = "instance.cancelled"

AUDIT_EVENT_TYPES = frozenset({
    EVENT_INSTANCE_CREATED,
    EVENT_STAGE_APPROVED,
    EVENT_STAGE_REJECTED,
    EVENT_INSTANCE_APPROVED,
    EVENT_INSTANCE_REJECTED,
    EVENT_INSTANCE_CANCELLED,
})


class WorkflowAuditEvent(db.Model):
    """
    Immutable audit row.  ``id`` doubles as the insertion sequence used to
    break timestamp ties when listing.
    """

    __tablename__ = "workflow_audit_events"
    __table_args__ = (
        db.Index("idx_wf_audit_instance_ts", "instance_id", "timestamp"),
        db.Index("idx_wf_audit_actor", "actor"),
    )

    id = db.Column(db.Integer, primary_key=True)
    instance_id = db.Column(
        db.Integer,
        db.ForeignKey("workflow_instances.id"),
        nullable=False,
    )
    event_type = db.Column(
        db.String(40), nullable=False,
        comment="instance.created | stage.approved | instance.cancelled | …",
    )
    stage_order = db.Column(db.Integer, nullable=True)
    actor = db.Column(db.String(150), nullable=False, default="system")
    acted_for = db.Column(db.String(150), nullable=True)
    comments = db.Column(db.Text, nullable=True)
    payload_json = db.Column(db.Text, default="{}")
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    @property
    def payload(self) -> dict:
        try:
            return json.loads(self.payload_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "instance_id": self.instance_id,
            "event_type": self.event_type,
            "stage_order": self.stage_order,
            "actor": self.actor,
            "acted_for": self.acted_for,
            "comments": self.comments,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<WorkflowAuditEvent {self.id}: {self.event_type} on instance {self.instance_id}>"


protect_append_only(WorkflowAuditEvent)
