"""
Workflow Catalog service.

Stores and retrieves approval templates.  A template is immutable once
created except for its ``is_active`` flag; changing the stages means
``revise_template`` — a new row with ``version + 1`` — so instances that
already snapshotted the old stage list are unaffected.

Rules:
  - Stage orders must be exactly 1..N (no gaps, no duplicates).
  - Every stage needs at least one approver role.
  - db.session.commit() happens only in this file for catalog writes.
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from approval_engine.core.exceptions import InvalidTemplateError, TemplateNotFoundError
from approval_engine.models import db
from approval_engine.models.workflow import WorkflowStage, WorkflowTemplate

logger = logging.getLogger(__name__)

_MAX_REQUEST_TYPE_LEN = 50


# ── Validation ────────────────────────────────────────────────────────────────


def normalise_request_type(value) -> str:
    """Upper-case, trimmed request type; raises InvalidTemplateError when blank."""
    request_type = (value or "").strip().upper() if isinstance(value, str) else ""
    if not request_type:
        raise InvalidTemplateError("request_type is required", details={"request_type": "required"})
    if len(request_type) > _MAX_REQUEST_TYPE_LEN:
        raise InvalidTemplateError(
            f"request_type must be ≤ {_MAX_REQUEST_TYPE_LEN} characters",
            details={"request_type": "too long"},
        )
    return request_type


def _normalise_roles(raw) -> list[str]:
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, (list, tuple, set, frozenset)):
        return []
    roles = {r.strip() for r in raw if isinstance(r, str) and r.strip()}
    return sorted(roles)


def validate_stages(stages) -> list[dict]:
    """Validate and normalise a stage list.

    Each item is ``{stage_order?, name?, approver_roles}``.  A missing
    ``stage_order`` takes the 1-based list position; a missing name becomes
    ``"Stage <n>"``.

    Returns:
        Stages as dicts sorted by ``stage_order``.

    Raises:
        InvalidTemplateError: empty list, non-integer or non-contiguous
            orders, duplicate orders, or an empty role set.
    """
    if not isinstance(stages, (list, tuple)) or not stages:
        raise InvalidTemplateError(
            "stages must be a non-empty list", details={"stages": "required"},
        )

    normalised = []
    errors: dict[str, str] = {}
    for position, raw in enumerate(stages, 1):
        if not isinstance(raw, dict):
            errors[f"stages[{position}]"] = "must be an object"
            continue

        order = raw.get("stage_order", position)
        if isinstance(order, bool) or not isinstance(order, int):
            errors[f"stages[{position}].stage_order"] = "must be an integer"
            continue

        roles = _normalise_roles(raw.get("approver_roles"))
        if not roles:
            errors[f"stages[{position}].approver_roles"] = "must contain at least one role"

        name = (raw.get("name") or "").strip() or f"Stage {order}"
        normalised.append({"stage_order": order, "name": name, "approver_roles": roles})

    if errors:
        raise InvalidTemplateError("Invalid stage definition", details=errors)

    orders = sorted(s["stage_order"] for s in normalised)
    if len(set(orders)) != len(orders):
        dupes = sorted({o for o in orders if orders.count(o) > 1})
        raise InvalidTemplateError(
            f"Duplicate stage orders: {dupes}", details={"stage_order": f"duplicates {dupes}"},
        )
    if orders != list(range(1, len(orders) + 1)):
        raise InvalidTemplateError(
            f"Stage orders must run 1..{len(orders)} without gaps, got {orders}",
            details={"stage_order": "not contiguous from 1"},
        )

    return sorted(normalised, key=lambda s: s["stage_order"])


def _validate_definition(definition: dict) -> dict:
    if not isinstance(definition, dict):
        raise InvalidTemplateError("Template definition must be an object")
    for field in ("name", "description"):
        value = definition.get(field)
        if value is not None and not isinstance(value, str):
            raise InvalidTemplateError(f"{field} must be a string", details={field: "not a string"})
    name = (definition.get("name") or "").strip()
    if not name:
        raise InvalidTemplateError("name is required", details={"name": "required"})
    return {
        "name": name,
        "description": (definition.get("description") or "").strip() or None,
        "request_type": normalise_request_type(definition.get("request_type")),
        "is_active": bool(definition.get("is_active", True)),
        "stages": validate_stages(definition.get("stages")),
    }


def _build_template(clean: dict, *, version=1, supersedes_id=None, created_by=None) -> WorkflowTemplate:
    template = WorkflowTemplate(
        name=clean["name"],
        description=clean["description"],
        request_type=clean["request_type"],
        is_active=clean["is_active"],
        version=version,
        supersedes_id=supersedes_id,
        created_by=created_by,
    )
    for s in clean["stages"]:
        template.stages.append(WorkflowStage(
            stage_order=s["stage_order"],
            name=s["name"],
            approver_roles=s["approver_roles"],
        ))
    return template


def _load(template_id: int) -> WorkflowTemplate:
    template = db.session.get(WorkflowTemplate, template_id)
    if template is None:
        raise TemplateNotFoundError(template_id)
    return template


# ── Public API ────────────────────────────────────────────────────────────────


def create_template(definition: dict, created_by: str | None = None) -> dict:
    """Validate and store a new template.

    Args:
        definition: ``{name, description?, request_type, is_active?, stages}``.
        created_by: Administrator creating the template (audit only).

    Returns:
        The stored template dict, including its new ``id``.

    Raises:
        InvalidTemplateError: malformed name, request type or stage list.
    """
    clean = _validate_definition(definition)
    template = _build_template(clean, created_by=created_by)
    db.session.add(template)
    db.session.commit()
    logger.info(
        "Workflow template created id=%s type=%s stages=%d",
        template.id, template.request_type, len(template.stages),
    )
    return template.to_dict()


def get_template(template_id: int) -> dict:
    """Return a template dict or raise TemplateNotFoundError."""
    return _load(template_id).to_dict()


def list_templates_for_type(request_type: str) -> list[dict]:
    """All templates for *request_type*, most recent first."""
    rows = db.session.execute(
        select(WorkflowTemplate)
        .where(WorkflowTemplate.request_type == normalise_request_type(request_type))
        .order_by(WorkflowTemplate.created_at.desc(), WorkflowTemplate.id.desc())
    ).scalars()
    return [t.to_dict() for t in rows]


def list_templates(request_type: str | None = None, active_only: bool = False) -> list[dict]:
    """Catalog listing, most recent first, optionally filtered."""
    q = select(WorkflowTemplate)
    if request_type:
        q = q.where(WorkflowTemplate.request_type == normalise_request_type(request_type))
    if active_only:
        q = q.where(WorkflowTemplate.is_active.is_(True))
    q = q.order_by(WorkflowTemplate.created_at.desc(), WorkflowTemplate.id.desc())
    return [t.to_dict() for t in db.session.execute(q).scalars()]


def get_active_template_for_type(request_type: str) -> dict | None:
    """Newest active template for *request_type*, or None."""
    template = db.session.execute(
        select(WorkflowTemplate)
        .where(
            WorkflowTemplate.request_type == normalise_request_type(request_type),
            WorkflowTemplate.is_active.is_(True),
        )
        .order_by(WorkflowTemplate.created_at.desc(), WorkflowTemplate.id.desc())
        .limit(1)
    ).scalar_one_or_none()
    return template.to_dict() if template else None


def deactivate(template_id: int) -> dict:
    """Mark a template inactive.  Idempotent; running instances are unaffected."""
    template = _load(template_id)
    if template.is_active:
        template.is_active = False
        db.session.commit()
        logger.info("Workflow template deactivated id=%s type=%s", template.id, template.request_type)
    return template.to_dict()


def revise_template(template_id: int, definition: dict, created_by: str | None = None) -> dict:
    """Create the next version of a template and deactivate the current one.

    Missing fields in *definition* fall back to the current template's
    values; the request type is always inherited.

    Raises:
        TemplateNotFoundError: unknown *template_id*.
        InvalidTemplateError: malformed stage list or non-object definition.
    """
    if not isinstance(definition, dict):
        raise InvalidTemplateError("Template definition must be an object")
    current = _load(template_id)
    merged = {
        "name": definition.get("name") or current.name,
        "description": definition.get("description", current.description),
        "request_type": current.request_type,
        "is_active": True,
        "stages": definition.get("stages") or current.stage_snapshot(),
    }
    clean = _validate_definition(merged)

    revision = _build_template(
        clean,
        version=current.version + 1,
        supersedes_id=current.id,
        created_by=created_by,
    )
    current.is_active = False
    db.session.add(revision)
    db.session.commit()
    logger.info(
        "Workflow template revised id=%s → id=%s (v%d) type=%s",
        current.id, revision.id, revision.version, revision.request_type,
    )
    return revision.to_dict()


# ── Seeding ──────────────────────────────────────────────────────────────────


def seed_default_templates() -> int:
    """Install the baseline template for every known request type that has none.

    Safe to run multiple times — a request type that already has any
    template (active or not) is left alone.

    Returns:
        Number of templates created.
    """
    created = 0
    for definition in _get_default_templates():
        exists = db.session.execute(
            select(WorkflowTemplate.id)
            .where(WorkflowTemplate.request_type == definition["request_type"])
            .limit(1)
        ).first()
        if exists:
            continue
        clean = _validate_definition(definition)
        db.session.add(_build_template(clean, created_by="system"))
        created += 1

    if created > 0:
        db.session.commit()
        logger.info("Seeded %d default workflow templates", created)
    return created


def _get_default_templates() -> list[dict]:
    """Baseline approval chains for the platform's request types."""
    return [
        {
            "name": "Standard Invoice Approval",
            "description": "Two-level approval: CFO → CEO",
            "request_type": "INVOICE",
            "stages": [
                {"stage_order": 1, "name": "CFO Review", "approver_roles": ["CFO", "ACCOUNTANT"]},
                {"stage_order": 2, "name": "CEO Final Approval", "approver_roles": ["CEO"]},
            ],
        },
        {
            "name": "Purchase Request Approval",
            "description": "Three-level approval: Dept Head → Procurement → CFO",
            "request_type": "PURCHASE_REQUEST",
            "stages": [
                {"stage_order": 1, "name": "Department Head Review", "approver_roles": ["DEPARTMENT_HEAD"]},
                {"stage_order": 2, "name": "Procurement Review", "approver_roles": ["PROCUREMENT_OFFICER"]},
                {"stage_order": 3, "name": "CFO Final Approval", "approver_roles": ["CFO", "CEO"]},
            ],
        },
        {
            "name": "IT Request Approval",
            "description": "Two-level approval: IT Manager → CFO",
            "request_type": "IT_REQUEST",
            "stages": [
                {"stage_order": 1, "name": "IT Manager Review", "approver_roles": ["IT_MANAGER"]},
                {"stage_order": 2, "name": "CFO Budget Approval", "approver_roles": ["CFO", "CEO"]},
            ],
        },
        {
            "name": "Payment Request Approval",
            "description": "Two-level approval: Accountant → CFO",
            "request_type": "PAYMENT_REQUEST",
            "stages": [
                {"stage_order": 1, "name": "Accountant Verification", "approver_roles": ["ACCOUNTANT"]},
                {"stage_order": 2, "name": "CFO Authorization", "approver_roles": ["CFO", "CEO"]},
            ],
        },
    ]
