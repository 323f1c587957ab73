"""
Workflow Audit Trail.

Append-only history of everything that happens to a workflow instance:
creation, every stage decision, terminal transitions and cancellations.

Rules:
  - ``append`` is for the workflow engine only.  It flushes, never commits,
    so the audit row lands in the same transaction as the state change it
    describes.
  - No update or delete function exists; the model refuses ORM
    updates/deletes as well.  Corrections are new events.
"""

from __future__ import annotations

import json
import logging

from sqlalchemy import select

from approval_engine.core.exceptions import ValidationError
from approval_engine.models import db
from approval_engine.models.audit import AUDIT_EVENT_TYPES, WorkflowAuditEvent
from approval_engine.utils.helpers import utcnow

logger = logging.getLogger(__name__)


def append(
    *,
    instance_id: int,
    event_type: str,
    actor: str = "system",
    acted_for: str | None = None,
    stage_order: int | None = None,
    comments: str | None = None,
    payload: dict | None = None,
    timestamp=None,
) -> WorkflowAuditEvent:
    """Add one audit row and flush.  Returns the flushed event."""
    if event_type not in AUDIT_EVENT_TYPES:
        raise ValidationError(
            f"Unknown audit event_type '{event_type}'",
            details={"event_type": sorted(AUDIT_EVENT_TYPES)},
        )

    event = WorkflowAuditEvent(
        instance_id=instance_id,
        event_type=event_type,
        stage_order=stage_order,
        actor=actor or "system",
        acted_for=acted_for,
        comments=comments,
        payload_json=json.dumps(payload or {}, default=str),
        timestamp=timestamp or utcnow(),
    )
    db.session.add(event)
    db.session.flush()
    logger.debug(
        "Audit %s instance=%s stage=%s actor=%s",
        event_type, instance_id, stage_order, actor,
    )
    return event


def list_for_instance(instance_id: int) -> list[dict]:
    """All audit events for *instance_id*, oldest first (insertion order breaks ties)."""
    rows = db.session.execute(
        select(WorkflowAuditEvent)
        .where(WorkflowAuditEvent.instance_id == instance_id)
        .order_by(WorkflowAuditEvent.timestamp, WorkflowAuditEvent.id)
    ).scalars()
    return [r.to_dict() for r in rows]
