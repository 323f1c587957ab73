"""
Approval Delegation Blueprint.

Endpoints:
    GET    /api/v1/delegations
           Query params: user (optional; defaults to X-User), all=true (managers)
           Returns: 200 with delegations where the user is delegator or delegate.

    POST   /api/v1/delegations
           Body: { "delegator"?: "...", "delegate": "...", "start": ISO,
                   "end": ISO, "reason"?: "..." }
           delegator defaults to the X-User; managing someone else's
           delegations needs a manager role.  Returns: 201.

    GET    /api/v1/delegations/<id>
    POST   /api/v1/delegations/<id>/cancel   – idempotent

Layer contract:
    - Blueprint: parse input, derive the acting user, call the service.
    - NO db.session calls here — all writes owned by delegation_service.
"""

import logging

from flask import Blueprint, jsonify, request

from approval_engine.services import delegation_service
from approval_engine.utils.errors import E, api_error, register_error_handlers

logger = logging.getLogger(__name__)

delegation_bp = Blueprint("delegation_bp", __name__, url_prefix="/api/v1")
register_error_handlers(delegation_bp)


def _current_user():
    return (
        request.headers.get("X-User", "")
        or request.headers.get("X-Forwarded-User", "")
    ).strip() or None


@delegation_bp.route("/delegations", methods=["GET"])
def list_delegations():
    acting_user = _current_user()
    if request.args.get("all") == "true":
        return jsonify(delegation_service.list_all(acting_user=acting_user))

    user = request.args.get("user") or acting_user
    if not user:
        return api_error(E.VALIDATION_REQUIRED, "user query parameter or X-User header is required")
    return jsonify(delegation_service.list_for_user(user))


@delegation_bp.route("/delegations", methods=["POST"])
def create_delegation():
    acting_user = _current_user()
    data = request.get_json(silent=True) or {}

    delegator = data.get("delegator") or acting_user
    missing = [f for f, v in (("delegator", delegator), ("delegate", data.get("delegate")),
                              ("start", data.get("start")), ("end", data.get("end"))) if not v]
    if missing:
        return api_error(
            E.VALIDATION_REQUIRED,
            f"Missing required field(s): {', '.join(missing)}",
            details={f: "required" for f in missing},
        )

    delegation = delegation_service.create_delegation(
        delegator,
        data["delegate"],
        data["start"],
        data["end"],
        data.get("reason"),
        acting_user=acting_user,
    )
    return jsonify(delegation), 201


@delegation_bp.route("/delegations/<int:did>", methods=["GET"])
def get_delegation(did):
    return jsonify(delegation_service.get_delegation(did))


@delegation_bp.route("/delegations/<int:did>/cancel", methods=["POST"])
def cancel_delegation(did):
    return jsonify(delegation_service.cancel_delegation(did, acting_user=_current_user()))
