"""
Delegation Registry service.

Time-bounded grants of approval authority from a delegator to a delegate,
plus the resolution the workflow engine runs on every decision:

    resolve_delegators_for(delegate, at_time) -> {delegator, ...}

Design decisions:
    - Resolution is computed fresh per call from the table; there is no
      "acting as" session to invalidate, so expiry is always exact.
    - The window is inclusive on both ends: start_at <= t <= end_at.
    - Overlapping delegations from the same delegator are allowed; one
      person may hand authority to several deputies at once.
    - Cancellation only flips is_active.  Decisions already made under the
      delegation stay valid.
    - Acting on someone else's delegation requires one of the roles in
      DELEGATION_MANAGER_ROLES (resolved through the Role Directory).
"""

from __future__ import annotations

import logging

from flask import current_app
from sqlalchemy import or_, select

from approval_engine.core.exceptions import (
    ForbiddenError,
    InvalidRangeError,
    NotFoundError,
    SelfDelegationError,
    ValidationError,
)
from approval_engine.integrations import get_role_directory
from approval_engine.models import db
from approval_engine.models.delegation import Delegation
from approval_engine.utils.helpers import as_utc, parse_datetime, utcnow

logger = logging.getLogger(__name__)

_DEFAULT_MANAGER_ROLES = ("SUPER_ADMIN", "CEO", "CFO")


# ── Private helpers ────────────────────────────────────────────────────────────


def _manager_roles() -> set[str]:
    return set(current_app.config.get("DELEGATION_MANAGER_ROLES") or _DEFAULT_MANAGER_ROLES)


def _ensure_can_manage(delegator: str, acting_user: str | None) -> None:
    """Allow the delegator themself, or any holder of a manager role."""
    if acting_user is None or acting_user == delegator:
        return
    roles = get_role_directory().roles_of(acting_user)
    if roles & _manager_roles():
        return
    raise ForbiddenError(
        f"{acting_user} may not manage delegations of {delegator}",
        details={"acting_user": acting_user, "delegator": delegator},
    )


def _coerce_instant(value, field: str, *, end_of_day=False):
    try:
        return parse_datetime(value, end_of_day=end_of_day)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid {field}: {value!r}", details={field: str(exc)}) from exc


def _load(delegation_id: int) -> Delegation:
    delegation = db.session.get(Delegation, delegation_id)
    if delegation is None:
        raise NotFoundError(resource="Delegation", resource_id=delegation_id)
    return delegation


# ── Public API ─────────────────────────────────────────────────────────────────


def create_delegation(
    delegator: str,
    delegate: str,
    start,
    end,
    reason: str | None = None,
    *,
    acting_user: str | None = None,
) -> dict:
    """Grant *delegate* the approval authority of *delegator* for ``[start, end]``.

    Args:
        delegator:   User whose authority is lent.
        delegate:    User receiving it.
        start, end:  datetimes or ISO strings; a bare date for ``end`` covers
                     that whole day.
        reason:      Optional note (holiday, sick leave, ...).
        acting_user: Caller; must be the delegator or hold a manager role.

    Raises:
        ValidationError:     missing user ids or unparseable instants.
        InvalidRangeError:   start > end.
        SelfDelegationError: delegator == delegate.
        ForbiddenError:      acting_user may not manage this delegator.
    """
    delegator = (delegator or "").strip()
    delegate = (delegate or "").strip()
    missing = {k: "required" for k, v in (("delegator", delegator), ("delegate", delegate)) if not v}
    if missing:
        raise ValidationError("delegator and delegate are required", details=missing)

    start_at = _coerce_instant(start, "start")
    end_at = _coerce_instant(end, "end", end_of_day=True)

    if start_at > end_at:
        raise InvalidRangeError(
            "start must not be after end",
            details={"start": start_at.isoformat(), "end": end_at.isoformat()},
        )
    if delegator == delegate:
        raise SelfDelegationError(
            "A user cannot delegate approval authority to themself",
            details={"delegate": delegate},
        )

    _ensure_can_manage(delegator, acting_user)

    delegation = Delegation(
        delegator=delegator,
        delegate=delegate,
        start_at=start_at,
        end_at=end_at,
        reason=(reason or "").strip() or None,
        is_active=True,
        created_by=acting_user or delegator,
    )
    db.session.add(delegation)
    db.session.commit()

    logger.info(
        "Delegation created id=%s %s → %s window=[%s, %s]",
        delegation.id, delegator, delegate, start_at.isoformat(), end_at.isoformat(),
    )
    return delegation.to_dict()


def cancel_delegation(delegation_id: int, *, acting_user: str | None = None) -> dict:
    """Deactivate a delegation.  Cancelling twice is a no-op.

    Raises:
        NotFoundError:  unknown id.
        ForbiddenError: acting_user may not manage this delegator.
    """
    delegation = _load(delegation_id)
    _ensure_can_manage(delegation.delegator, acting_user)

    if delegation.is_active:
        delegation.is_active = False
        delegation.cancelled_at = utcnow()
        db.session.commit()
        logger.info("Delegation cancelled id=%s by %s", delegation.id, acting_user or "system")
    return delegation.to_dict()


def get_delegation(delegation_id: int) -> dict:
    return _load(delegation_id).to_dict()


def resolve_delegators_for(delegate: str, at_time) -> set[str]:
    """Delegators for whom *delegate* holds authority at *at_time*.

    Only records with ``is_active`` and ``start_at <= at_time <= end_at``
    count.
    """
    at = as_utc(at_time)
    rows = db.session.execute(
        select(Delegation.delegator).where(
            Delegation.delegate == delegate,
            Delegation.is_active.is_(True),
            Delegation.start_at <= at,
            Delegation.end_at >= at,
        )
    ).scalars()
    return set(rows)


def resolve_delegates_for(delegator: str, at_time) -> set[str]:
    """Inverse lookup: users currently holding *delegator*'s authority."""
    at = as_utc(at_time)
    rows = db.session.execute(
        select(Delegation.delegate).where(
            Delegation.delegator == delegator,
            Delegation.is_active.is_(True),
            Delegation.start_at <= at,
            Delegation.end_at >= at,
        )
    ).scalars()
    return set(rows)


def list_for_user(user_id: str) -> list[dict]:
    """Delegations where *user_id* is delegator or delegate, newest first."""
    rows = db.session.execute(
        select(Delegation)
        .where(or_(Delegation.delegator == user_id, Delegation.delegate == user_id))
        .order_by(Delegation.created_at.desc(), Delegation.id.desc())
    ).scalars()
    return [d.to_dict() for d in rows]


def list_all(*, acting_user: str | None = None) -> list[dict]:
    """Every delegation, newest first.  Manager roles only when acting_user is given."""
    if acting_user is not None and not (get_role_directory().roles_of(acting_user) & _manager_roles()):
        raise ForbiddenError(
            f"{acting_user} may not list all delegations",
            details={"acting_user": acting_user},
        )
    rows = db.session.execute(
        select(Delegation).order_by(Delegation.created_at.desc(), Delegation.id.desc())
    ).scalars()
    return [d.to_dict() for d in rows]
