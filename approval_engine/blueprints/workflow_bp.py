"""
Approval Workflow Blueprint.

Routes:
  GET    /workflow-templates                          – list templates (?request_type, ?active)
  POST   /workflow-templates                          – create template
  GET    /workflow-templates/<tid>                    – template detail
  POST   /workflow-templates/<tid>/deactivate         – deactivate template
  POST   /workflow-templates/<tid>/revise             – new version with edited stages
  POST   /workflow-instances                          – attach instance to a request
  GET    /workflow-instances/<iid>                    – instance view
  POST   /workflow-instances/<iid>/decide             – approve / reject current stage
  POST   /workflow-instances/<iid>/cancel             – cancel pending instance
  GET    /workflow-instances/<iid>/audit              – audit trail
  GET    /workflow-instances/<iid>/approvers          – who may decide the current stage
  GET    /requests/<request_type>/<request_id>/workflow – instance view by request
  GET    /approvals/pending                           – instances the caller may decide

Layer contract:
    - Blueprint: parse input, read the acting user, call the service,
      return JSON.  Service exceptions are mapped by register_error_handlers.
    - NO db.session calls here — all writes owned by the services.
"""

import logging

from flask import Blueprint, jsonify, request

from approval_engine.core.exceptions import NotFoundError
from approval_engine.services import workflow_catalog, workflow_engine
from approval_engine.utils.errors import E, api_error, register_error_handlers

logger = logging.getLogger(__name__)

workflow_bp = Blueprint("workflow_bp", __name__, url_prefix="/api/v1")
register_error_handlers(workflow_bp)


# ── helpers ──────────────────────────────────────────────────────────────


def _current_user():
    """Acting user from the gateway-supplied header (auth happens upstream)."""
    return (
        request.headers.get("X-User", "")
        or request.headers.get("X-Forwarded-User", "")
    ).strip() or None


def _require_user():
    user = _current_user()
    if not user:
        return None, api_error(E.VALIDATION_REQUIRED, "X-User header is required")
    return user, None


# ═════════════════════════════════════════════════════════════════════════════
# TEMPLATES
# ═════════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/workflow-templates", methods=["GET"])
def list_templates():
    """List templates, newest first; optional ?request_type= and ?active=true."""
    request_type = request.args.get("request_type")
    active_only = request.args.get("active") == "true"
    return jsonify(workflow_catalog.list_templates(request_type, active_only=active_only))


@workflow_bp.route("/workflow-templates", methods=["POST"])
def create_template():
    """Create a template.

    Body: { name, description?, request_type, is_active?,
            stages: [{stage_order, name, approver_roles: [..]}] }
    """
    data = request.get_json(silent=True) or {}
    template = workflow_catalog.create_template(data, created_by=_current_user())
    return jsonify(template), 201


@workflow_bp.route("/workflow-templates/<int:tid>", methods=["GET"])
def get_template(tid):
    return jsonify(workflow_catalog.get_template(tid))


@workflow_bp.route("/workflow-templates/<int:tid>/deactivate", methods=["POST"])
def deactivate_template(tid):
    return jsonify(workflow_catalog.deactivate(tid))


@workflow_bp.route("/workflow-templates/<int:tid>/revise", methods=["POST"])
def revise_template(tid):
    """Body: { name?, description?, stages? } — returns the new version (201)."""
    data = request.get_json(silent=True) or {}
    revision = workflow_catalog.revise_template(tid, data, created_by=_current_user())
    return jsonify(revision), 201


# ═════════════════════════════════════════════════════════════════════════════
# INSTANCES
# ═════════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/workflow-instances", methods=["POST"])
def create_instance():
    """Attach an approval instance to a business request.

    Body: { template_id?, request_type, request_id }

    Without template_id the newest active template for the request type is
    used.  Returns 201 on creation, 200 when the request already had one.
    """
    data = request.get_json(silent=True) or {}
    request_type = data.get("request_type")
    request_id = data.get("request_id")
    if not request_type or request_id in (None, ""):
        return api_error(E.VALIDATION_REQUIRED, "request_type and request_id are required")

    template_id = data.get("template_id")
    if not template_id:
        template = workflow_catalog.get_active_template_for_type(request_type)
        if template is None:
            return api_error(
                E.NOT_FOUND, f"No active workflow template for request type {request_type}",
            )
        template_id = template["id"]

    existed = True
    try:
        workflow_engine.get_instance_view(request_type, request_id)
    except NotFoundError:
        existed = False

    instance_id = workflow_engine.create_instance(
        template_id, request_type, request_id, created_by=_current_user(),
    )
    return jsonify(workflow_engine.get_instance(instance_id)), 200 if existed else 201


@workflow_bp.route("/workflow-instances/<int:iid>", methods=["GET"])
def get_instance(iid):
    return jsonify(workflow_engine.get_instance(iid))


@workflow_bp.route("/workflow-instances/<int:iid>/decide", methods=["POST"])
def decide(iid):
    """Body: { action: "APPROVE" | "REJECT", comments? } — acting user from X-User."""
    user, err = _require_user()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    if not data.get("action"):
        return api_error(E.VALIDATION_REQUIRED, "action is required")
    view = workflow_engine.decide(iid, user, data["action"], data.get("comments"))
    return jsonify(view)


@workflow_bp.route("/workflow-instances/<int:iid>/cancel", methods=["POST"])
def cancel(iid):
    """Body: { reason? } — the owning module has already checked who may cancel."""
    user, err = _require_user()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    return jsonify(workflow_engine.cancel(iid, user, data.get("reason")))


@workflow_bp.route("/workflow-instances/<int:iid>/audit", methods=["GET"])
def instance_audit(iid):
    return jsonify(workflow_engine.get_instance_audit(iid))


@workflow_bp.route("/workflow-instances/<int:iid>/approvers", methods=["GET"])
def instance_approvers(iid):
    return jsonify({"approvers": workflow_engine.current_stage_approvers(iid)})


@workflow_bp.route("/requests/<request_type>/<request_id>/workflow", methods=["GET"])
def request_workflow(request_type, request_id):
    """Approval progress of one business request."""
    return jsonify(workflow_engine.get_instance_view(request_type, request_id))


@workflow_bp.route("/approvals/pending", methods=["GET"])
def my_pending():
    """Pending instances whose current stage the X-User may decide."""
    user, err = _require_user()
    if err:
        return err
    return jsonify(workflow_engine.list_pending_for_user(user))
