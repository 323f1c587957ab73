"""
Workflow Instance Engine.

The approval state machine:

    PENDING(stage=k) --approve, k < N--> PENDING(stage=k+1)
    PENDING(stage=N) --approve---------> APPROVED
    PENDING(any)     --reject----------> REJECTED
    PENDING(any)     --cancel----------> CANCELLED

APPROVED / REJECTED / CANCELLED are terminal.

Design decisions:
    - Instances embed a value copy of the template's stages at creation;
      later template revisions never reach in-flight approvals.
    - Exactly-once stage advancement rests on the database: StageAction has
      a unique (instance_id, stage_order) constraint and WorkflowInstance an
      optimistic-lock counter.  The StageAction insert, the instance update
      and the audit rows share one transaction, so a losing racer rolls
      back completely and gets AlreadyDecidedError naming the winner.
    - Authority = own roles ∪ roles of every user currently delegating to
      the actor.  The instant is captured once per call.
    - Roles come from the Role Directory on every call; nothing is cached.
    - Notifier / completion handlers run only after commit.
    - db.session.commit() for instance state happens only in this file.
"""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from approval_engine.core.exceptions import (
    AlreadyDecidedError,
    ConflictError,
    NotFoundError,
    TemplateInactiveError,
    TemplateNotFoundError,
    UnauthorizedActionError,
    ValidationError,
    WorkflowTerminalError,
)
from approval_engine.integrations import get_completion_handlers, get_notifier, get_role_directory
from approval_engine.integrations.notifier import (
    StageAdvanced,
    WorkflowApproved,
    WorkflowCancelled,
    WorkflowRejected,
    dispatch,
)
from approval_engine.models import db
from approval_engine.models.audit import (
    EVENT_INSTANCE_APPROVED,
    EVENT_INSTANCE_CANCELLED,
    EVENT_INSTANCE_CREATED,
    EVENT_INSTANCE_REJECTED,
    EVENT_STAGE_APPROVED,
    EVENT_STAGE_REJECTED,
)
from approval_engine.models.workflow import (
    ACTION_APPROVED,
    ACTION_REJECTED,
    STATUS_APPROVED,
    STATUS_CANCELLED,
    STATUS_PENDING,
    STATUS_REJECTED,
    StageAction,
    WorkflowInstance,
    WorkflowTemplate,
    validate_instance_transition,
)
from approval_engine.services import audit_trail
from approval_engine.services.delegation_service import (
    resolve_delegates_for,
    resolve_delegators_for,
)
from approval_engine.services.workflow_catalog import normalise_request_type
from approval_engine.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)

_ACTION_ALIASES = {
    "APPROVE": ACTION_APPROVED,
    "APPROVED": ACTION_APPROVED,
    "REJECT": ACTION_REJECTED,
    "REJECTED": ACTION_REJECTED,
}


# ── Private helpers ────────────────────────────────────────────────────────────


def _normalise_action(action) -> str:
    key = action.strip().upper() if isinstance(action, str) else ""
    if key not in _ACTION_ALIASES:
        raise ValidationError(
            f"Invalid action {action!r}; expected APPROVE or REJECT",
            details={"action": ["APPROVE", "REJECT"]},
        )
    return _ACTION_ALIASES[key]


def _require_identity(value, field: str) -> str:
    ident = str(value).strip() if value is not None else ""
    if not ident:
        raise ValidationError(f"{field} is required", details={field: "required"})
    return ident


def _load_instance(instance_id: int) -> WorkflowInstance:
    instance = db.session.get(WorkflowInstance, instance_id)
    if instance is None:
        raise NotFoundError(resource="WorkflowInstance", resource_id=instance_id)
    return instance


def _find_instance(request_type: str, request_id: str) -> WorkflowInstance | None:
    return db.session.execute(
        select(WorkflowInstance).where(
            WorkflowInstance.request_type == request_type,
            WorkflowInstance.request_id == request_id,
        )
    ).scalar_one_or_none()


def _stage_action(instance_id: int, stage_order: int) -> StageAction | None:
    return db.session.execute(
        select(StageAction).where(
            StageAction.instance_id == instance_id,
            StageAction.stage_order == stage_order,
        )
    ).scalar_one_or_none()


def _effective_authority(actor: str, at) -> tuple[set[str], dict[str, set[str]]]:
    """Return (own roles, {delegator: delegator roles}) for *actor* at *at*."""
    directory = get_role_directory()
    own = directory.roles_of(actor)
    delegated = {d: directory.roles_of(d) for d in resolve_delegators_for(actor, at)}
    return own, delegated


def _authorize(instance: WorkflowInstance, actor: str, at) -> str:
    """Return the identity the actor decides for, or raise UnauthorizedActionError.

    The actor's own roles take precedence; otherwise the first delegator
    (by identity) whose roles qualify is recorded as ``acted_for``.
    """
    stage = instance.stage(instance.current_stage) or {}
    required = set(stage.get("approver_roles") or [])
    own, delegated = _effective_authority(actor, at)

    if own & required:
        return actor
    for delegator in sorted(delegated):
        if delegated[delegator] & required:
            return delegator

    raise UnauthorizedActionError(
        instance_id=instance.id,
        actor=actor,
        current_stage=instance.current_stage,
        stage_name=stage.get("name"),
        required_roles=required,
        status=instance.status,
    )


def _view(instance: WorkflowInstance) -> dict:
    """Read-only projection: instance, decorated stage list, decisions."""
    actions = db.session.execute(
        select(StageAction)
        .where(StageAction.instance_id == instance.id)
        .order_by(StageAction.stage_order)
    ).scalars().all()
    by_stage = {a.stage_order: a for a in actions}

    stages = []
    for s in instance.stages_snapshot or []:
        decided = by_stage.get(s["stage_order"])
        if decided is not None:
            state = decided.action.lower()
        elif instance.status == STATUS_PENDING and s["stage_order"] == instance.current_stage:
            state = "current"
        elif instance.status == STATUS_PENDING:
            state = "upcoming"
        else:
            state = "not_reached"
        stages.append({**s, "state": state})

    return {
        "instance": instance.to_dict(),
        "stages": stages,
        "actions": [a.to_dict() for a in actions],
        "current_stage_detail": instance.current_stage_detail,
    }


def _set_status(instance: WorkflowInstance, new_status: str, at) -> None:
    if not validate_instance_transition(instance.status, new_status):
        raise WorkflowTerminalError(instance.id, instance.status, instance.current_stage)
    instance.status = new_status
    if new_status != STATUS_PENDING:
        instance.completed_at = at


# ── Creation ───────────────────────────────────────────────────────────────────


def create_instance(template_id: int, request_type: str, request_id, created_by: str | None = None) -> int:
    """Attach an approval instance to a business request.

    Idempotent per (request_type, request_id): an existing instance id is
    returned untouched, including when a concurrent creator won the unique
    constraint race.

    Raises:
        TemplateNotFoundError: unknown template.
        TemplateInactiveError: template has been deactivated.
        ValidationError:       blank request id, or the template belongs to
                               another request type.
    """
    request_type = normalise_request_type(request_type)
    request_id = _require_identity(request_id, "request_id")

    existing = _find_instance(request_type, request_id)
    if existing is not None:
        logger.debug(
            "Workflow instance already exists id=%s for %s/%s",
            existing.id, request_type, request_id,
        )
        return existing.id

    template = db.session.get(WorkflowTemplate, template_id)
    if template is None:
        raise TemplateNotFoundError(template_id)
    if not template.is_active:
        raise TemplateInactiveError(template.id, template.request_type)
    if template.request_type != request_type:
        raise ValidationError(
            f"WorkflowTemplate id={template.id} is for {template.request_type}, not {request_type}",
            details={"request_type": template.request_type},
        )

    instance = WorkflowInstance(
        template_id=template.id,
        template_name=template.name,
        template_version=template.version,
        stages_snapshot=template.stage_snapshot(),
        request_type=request_type,
        request_id=request_id,
        current_stage=1,
        status=STATUS_PENDING,
        created_by=created_by,
    )
    db.session.add(instance)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        existing = _find_instance(request_type, request_id)
        if existing is None:
            raise
        return existing.id

    audit_trail.append(
        instance_id=instance.id,
        event_type=EVENT_INSTANCE_CREATED,
        actor=created_by or "system",
        payload={
            "template_id": template.id,
            "template_version": template.version,
            "stage_count": instance.stage_count,
        },
    )
    db.session.commit()

    logger.info(
        "Workflow instance created id=%s %s/%s template=%s v%s",
        instance.id, request_type, request_id, template.id, template.version,
        extra={"instance_id": instance.id, "request_type": request_type},
    )
    return instance.id


# ── Decisions ──────────────────────────────────────────────────────────────────


def decide(instance_id: int, actor: str, action: str, comments: str | None = None, *, now=None) -> dict:
    """Record an approve/reject decision at the instance's current stage.

    Args:
        instance_id: Target instance.
        actor:       Deciding user.
        action:      APPROVE / REJECT (APPROVED / REJECTED accepted too).
        comments:    Optional free text kept with the decision.
        now:         Instant used for delegation windows; defaults to the
                     wall clock and is read once.

    Returns:
        The updated instance view (see ``get_instance_view``).

    Raises:
        NotFoundError:           unknown instance.
        WorkflowTerminalError:   instance is not PENDING, or a concurrent
                                 cancel closed it first.
        UnauthorizedActionError: no own or delegated role matches the stage.
        AlreadyDecidedError:     another decision at this stage won.
        ConflictError:           the instance changed concurrently without a
                                 decision at this stage.
        ValidationError:         unknown action or blank actor.
    """
    at = as_utc(now) if now is not None else utcnow()
    action = _normalise_action(action)
    actor = _require_identity(actor, "actor")
    comments = (comments or "").strip() or None

    instance = _load_instance(instance_id)
    if instance.status != STATUS_PENDING:
        raise WorkflowTerminalError(instance.id, instance.status, instance.current_stage)

    acted_for = _authorize(instance, actor, at)

    stage_order = instance.current_stage
    stage = instance.stage(stage_order)
    recorded_at = utcnow()
    events = []
    terminal_event_type = None

    try:
        record = StageAction(
            instance=instance,
            stage_order=stage_order,
            stage_name=stage["name"],
            action=action,
            actor=actor,
            acted_for=acted_for,
            comments=comments,
            created_at=recorded_at,
        )
        db.session.add(record)

        if action == ACTION_REJECTED:
            _set_status(instance, STATUS_REJECTED, recorded_at)
            terminal_event_type = EVENT_INSTANCE_REJECTED
            events.append(WorkflowRejected(
                instance_id=instance.id,
                request_type=instance.request_type,
                request_id=instance.request_id,
                rejected_at_stage=stage_order,
                comments=comments,
                acted_for=acted_for,
            ))
        elif stage_order >= instance.stage_count:
            _set_status(instance, STATUS_APPROVED, recorded_at)
            terminal_event_type = EVENT_INSTANCE_APPROVED
            events.append(WorkflowApproved(
                instance_id=instance.id,
                request_type=instance.request_type,
                request_id=instance.request_id,
                approved_by=acted_for,
            ))
        else:
            instance.current_stage = stage_order + 1
            next_stage = instance.stage(instance.current_stage)
            events.append(StageAdvanced(
                instance_id=instance.id,
                request_type=instance.request_type,
                request_id=instance.request_id,
                next_stage_order=next_stage["stage_order"],
                next_stage_name=next_stage["name"],
                next_approver_roles=list(next_stage["approver_roles"]),
            ))

        # Unique (instance_id, stage_order) and the instance version check fire here.
        db.session.flush()

        audit_trail.append(
            instance_id=instance.id,
            event_type=EVENT_STAGE_APPROVED if action == ACTION_APPROVED else EVENT_STAGE_REJECTED,
            actor=actor,
            acted_for=acted_for,
            stage_order=stage_order,
            comments=comments,
            payload={"stage_name": stage["name"], "via_delegation": acted_for != actor},
            timestamp=recorded_at,
        )
        if terminal_event_type:
            audit_trail.append(
                instance_id=instance.id,
                event_type=terminal_event_type,
                actor=actor,
                acted_for=acted_for,
                stage_order=stage_order,
                timestamp=recorded_at,
            )
        db.session.commit()
    except (IntegrityError, StaleDataError):
        db.session.rollback()
        winner = _stage_action(instance_id, stage_order)
        if winner is None:
            instance = _load_instance(instance_id)
            logger.info(
                "Decision lost to concurrent change instance=%s stage=%s actor=%s now %s@%s",
                instance_id, stage_order, actor, instance.status, instance.current_stage,
                extra={"instance_id": instance_id, "stage_order": stage_order},
            )
            if instance.status != STATUS_PENDING:
                raise WorkflowTerminalError(
                    instance.id, instance.status, instance.current_stage,
                ) from None
            raise ConflictError("WorkflowInstance", "version_id", str(instance.version_id)) from None

        error = AlreadyDecidedError(instance_id, stage_order, winner.to_dict())
        logger.info(
            "Stage already decided instance=%s stage=%s loser=%s winner=%s",
            instance_id, stage_order, actor, error.decided_by,
            extra={"instance_id": instance_id, "stage_order": stage_order},
        )
        raise error from None

    logger.info(
        "Stage %s %s instance=%s by %s (for %s) → %s@%s",
        stage_order, action, instance.id, actor, acted_for, instance.status, instance.current_stage,
        extra={"instance_id": instance.id, "stage_order": stage_order},
    )
    dispatch(get_notifier(), events, get_completion_handlers())
    return _view(instance)


def _close_cancelled(instance: WorkflowInstance, actor: str, reason: str | None) -> int:
    """Flush CANCELLED + its audit row and commit; returns the stage it closed at."""
    if instance.status != STATUS_PENDING:
        raise WorkflowTerminalError(instance.id, instance.status, instance.current_stage)

    stage_order = instance.current_stage
    recorded_at = utcnow()
    _set_status(instance, STATUS_CANCELLED, recorded_at)
    db.session.flush()
    audit_trail.append(
        instance_id=instance.id,
        event_type=EVENT_INSTANCE_CANCELLED,
        actor=actor,
        stage_order=stage_order,
        comments=reason,
        timestamp=recorded_at,
    )
    db.session.commit()
    return stage_order


def cancel(instance_id: int, actor: str, reason: str | None = None) -> dict:
    """Administratively close a PENDING instance.

    Whether *actor* may cancel is the owning module's call; the engine only
    records who did it.  No StageAction is written; the audit trail gets an
    ``instance.cancelled`` event.

    A concurrent stage approval that commits first only moves
    ``current_stage``; the instance is re-read once and, if still PENDING,
    cancelled at its new stage.

    Raises:
        NotFoundError:         unknown instance.
        WorkflowTerminalError: instance is already closed, or was closed by a
                               concurrent decision.
        ConflictError:         the instance kept changing underneath this call.
    """
    actor = _require_identity(actor, "actor")
    reason = (reason or "").strip() or None

    instance = _load_instance(instance_id)
    try:
        stage_order = _close_cancelled(instance, actor, reason)
    except StaleDataError:
        db.session.rollback()
        instance = _load_instance(instance_id)
        logger.info(
            "Cancel re-reading instance=%s after concurrent change, now %s@%s",
            instance_id, instance.status, instance.current_stage,
            extra={"instance_id": instance_id, "stage_order": instance.current_stage},
        )
        try:
            stage_order = _close_cancelled(instance, actor, reason)
        except StaleDataError:
            db.session.rollback()
            raise ConflictError("WorkflowInstance", "version_id", str(instance.version_id)) from None

    logger.info(
        "Workflow instance cancelled id=%s by %s at stage %s",
        instance.id, actor, stage_order,
        extra={"instance_id": instance.id, "stage_order": stage_order},
    )
    dispatch(get_notifier(), [WorkflowCancelled(
        instance_id=instance.id,
        request_type=instance.request_type,
        request_id=instance.request_id,
        reason=reason,
        cancelled_by=actor,
    )], get_completion_handlers())
    return _view(instance)


# ── Queries ────────────────────────────────────────────────────────────────────


def get_instance_view(request_type: str, request_id) -> dict:
    """Instance + stage snapshot + decisions for one business request.

    Raises:
        NotFoundError: no instance for (request_type, request_id).
    """
    request_type = normalise_request_type(request_type)
    request_id = _require_identity(request_id, "request_id")
    instance = _find_instance(request_type, request_id)
    if instance is None:
        raise NotFoundError(resource="WorkflowInstance", resource_id=f"{request_type}/{request_id}")
    return _view(instance)


def get_instance(instance_id: int) -> dict:
    """Same projection as ``get_instance_view``, looked up by instance id."""
    return _view(_load_instance(instance_id))


def get_instance_audit(instance_id: int) -> list[dict]:
    """Audit trail of one instance, oldest first."""
    _load_instance(instance_id)
    return audit_trail.list_for_instance(instance_id)


def can_user_decide(instance_id: int, user_id: str, now=None) -> bool:
    """True if *user_id* could decide the instance's current stage at *now*."""
    instance = _load_instance(instance_id)
    if instance.status != STATUS_PENDING:
        return False
    try:
        _authorize(instance, user_id, as_utc(now) if now is not None else utcnow())
    except UnauthorizedActionError:
        return False
    return True


def list_pending_for_user(user_id: str, now=None) -> list[dict]:
    """PENDING instances whose current stage *user_id* may decide.

    Each item is the instance dict plus ``current_stage_detail`` and
    ``acting_for`` (the identity the decision would be recorded for).
    """
    at = as_utc(now) if now is not None else utcnow()
    own, delegated = _effective_authority(user_id, at)

    pending = db.session.execute(
        select(WorkflowInstance)
        .where(WorkflowInstance.status == STATUS_PENDING)
        .order_by(WorkflowInstance.created_at, WorkflowInstance.id)
    ).scalars()

    out = []
    for instance in pending:
        required = set((instance.current_stage_detail or {}).get("approver_roles") or [])
        acting_for = None
        if own & required:
            acting_for = user_id
        else:
            acting_for = next(
                (d for d in sorted(delegated) if delegated[d] & required), None,
            )
        if acting_for is None:
            continue
        out.append({
            **instance.to_dict(),
            "current_stage_detail": instance.current_stage_detail,
            "acting_for": acting_for,
        })
    return out


def current_stage_approvers(instance_id: int, now=None) -> list[str]:
    """Users who may decide the current stage: role members and their active delegates."""
    instance = _load_instance(instance_id)
    if instance.status != STATUS_PENDING:
        return []
    at = as_utc(now) if now is not None else utcnow()
    directory = get_role_directory()

    members: set[str] = set()
    for role in (instance.current_stage_detail or {}).get("approver_roles") or []:
        members |= directory.members_of(role)

    approvers = set(members)
    for member in members:
        approvers |= resolve_delegates_for(member, at)
    return sorted(approvers)
