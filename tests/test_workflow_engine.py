"""
Workflow Instance Engine — creation, decisions, cancellation, events.

Tests cover:
  - Two-stage happy path (ACCOUNTANT → CEO → APPROVED)
  - Rejection closes the instance; later decisions fail WorkflowTerminal
  - Idempotent instance creation per (request_type, request_id)
  - Exactly one decision per stage (race loser gets AlreadyDecided)
  - Interleaved sessions: version-check losers, decide vs cancel races
  - Authorization context on failures
  - Stage snapshot is decoupled from later template revisions
  - Cancellation, notifier events and completion handlers
  - Append-only StageAction / never-deleted WorkflowInstance
"""
from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select

from approval_engine.core.exceptions import (
    AlreadyDecidedError,
    ImmutableRecordError,
    NotFoundError,
    TemplateInactiveError,
    TemplateNotFoundError,
    UnauthorizedActionError,
    ValidationError,
    WorkflowTerminalError,
)
from approval_engine.integrations import (
    get_completion_handlers,
    init_integrations,
    register_completion_handler,
)
from approval_engine.integrations.notifier import (
    StageAdvanced,
    WorkflowApproved,
    WorkflowCancelled,
    WorkflowRejected,
)
from approval_engine.models import db
from approval_engine.models.workflow import StageAction, WorkflowInstance
from approval_engine.services import workflow_catalog, workflow_engine


def _create(template, request_id="INV-1"):
    return workflow_engine.create_instance(template["id"], "INVOICE", request_id, created_by="requester")


def _action_count(instance_id, stage_order=None):
    q = select(func.count(StageAction.id)).where(StageAction.instance_id == instance_id)
    if stage_order is not None:
        q = q.where(StageAction.stage_order == stage_order)
    return db.session.execute(q).scalar()


def _interleave(monkeypatch, app, step, competitor):
    """Run *competitor* in its own app context (own DB session) the first
    time ``workflow_engine.<step>`` is reached, then let the step proceed.

    The calling session has already loaded the instance, so it holds a stale
    version when the competitor's transaction commits.
    """
    real = getattr(workflow_engine, step)
    queued = [competitor]

    def _step(*args, **kwargs):
        if queued:
            run = queued.pop()
            with app.app_context():
                run()
        return real(*args, **kwargs)

    monkeypatch.setattr(workflow_engine, step, _step)


# ═════════════════════════════════════════════════════════════════════════
# CREATION
# ═════════════════════════════════════════════════════════════════════════


class TestCreateInstance:
    def test_new_instance_starts_pending_at_stage_one(self, invoice_template):
        iid = _create(invoice_template)
        view = workflow_engine.get_instance(iid)
        assert view["instance"]["status"] == "PENDING"
        assert view["instance"]["current_stage"] == 1
        assert view["instance"]["stage_count"] == 2
        assert view["current_stage_detail"]["name"] == "Finance Review"
        assert [s["state"] for s in view["stages"]] == ["current", "upcoming"]
        assert view["actions"] == []

    def test_create_is_idempotent(self, invoice_template):
        first = _create(invoice_template)
        second = _create(invoice_template)
        assert first == second
        assert db.session.execute(select(func.count(WorkflowInstance.id))).scalar() == 1

    def test_idempotent_even_after_template_deactivated(self, invoice_template):
        first = _create(invoice_template)
        workflow_catalog.deactivate(invoice_template["id"])
        assert _create(invoice_template) == first

    def test_request_type_is_case_insensitive(self, invoice_template):
        first = workflow_engine.create_instance(invoice_template["id"], "invoice", "INV-9")
        assert workflow_engine.create_instance(invoice_template["id"], "INVOICE", "INV-9") == first

    def test_integer_request_id_is_stored_as_string(self, invoice_template):
        iid = workflow_engine.create_instance(invoice_template["id"], "INVOICE", 42)
        assert workflow_engine.get_instance_view("INVOICE", "42")["instance"]["id"] == iid

    def test_unknown_template(self):
        with pytest.raises(TemplateNotFoundError):
            workflow_engine.create_instance(999, "INVOICE", "INV-1")

    def test_inactive_template(self, invoice_template):
        workflow_catalog.deactivate(invoice_template["id"])
        with pytest.raises(TemplateInactiveError):
            _create(invoice_template)

    def test_template_for_other_request_type(self, invoice_template):
        with pytest.raises(ValidationError):
            workflow_engine.create_instance(invoice_template["id"], "IT_REQUEST", "IT-1")

    def test_blank_request_id(self, invoice_template):
        with pytest.raises(ValidationError):
            workflow_engine.create_instance(invoice_template["id"], "INVOICE", "  ")

    def test_creation_is_audited(self, invoice_template):
        iid = _create(invoice_template)
        trail = workflow_engine.get_instance_audit(iid)
        assert [e["event_type"] for e in trail] == ["instance.created"]
        assert trail[0]["actor"] == "requester"
        assert trail[0]["payload"]["stage_count"] == 2


# ═════════════════════════════════════════════════════════════════════════
# DECISIONS
# ═════════════════════════════════════════════════════════════════════════


class TestDecide:
    def test_two_stage_approval(self, invoice_template, staff):
        iid = _create(invoice_template)

        view = workflow_engine.decide(iid, "alice", "APPROVE")
        assert view["instance"]["current_stage"] == 2
        assert view["instance"]["status"] == "PENDING"
        assert [s["state"] for s in view["stages"]] == ["approved", "current"]

        view = workflow_engine.decide(iid, "carol", "APPROVE", "Looks fine")
        assert view["instance"]["status"] == "APPROVED"
        assert view["instance"]["current_stage"] == 2
        assert view["instance"]["completed_at"] is not None
        assert view["current_stage_detail"] is None
        assert [(a["stage_order"], a["actor"], a["action"]) for a in view["actions"]] == [
            (1, "alice", "APPROVED"),
            (2, "carol", "APPROVED"),
        ]
        assert view["actions"][1]["comments"] == "Looks fine"

    def test_reject_closes_instance(self, invoice_template, staff):
        iid = _create(invoice_template)
        view = workflow_engine.decide(iid, "alice", "reject", "Wrong amount")
        assert view["instance"]["status"] == "REJECTED"
        assert view["instance"]["current_stage"] == 1
        assert [s["state"] for s in view["stages"]] == ["rejected", "not_reached"]

        with pytest.raises(WorkflowTerminalError) as exc:
            workflow_engine.decide(iid, "carol", "APPROVE")
        assert exc.value.status == "REJECTED"
        assert _action_count(iid, stage_order=2) == 0

    def test_invariant_holds_through_n_approvals(self, staff):
        roles_per_stage = ["ACCOUNTANT", "CFO", "CEO", "BOARD"]
        template = workflow_catalog.create_template({
            "name": "Long chain",
            "request_type": "PAYMENT_REQUEST",
            "stages": [{"stage_order": i, "approver_roles": [r]} for i, r in enumerate(roles_per_stage, 1)],
        })
        for role in roles_per_stage:
            staff.assign(f"user_{role.lower()}", role)

        iid = workflow_engine.create_instance(template["id"], "PAYMENT_REQUEST", "PAY-1")
        for i, role in enumerate(roles_per_stage, 1):
            view = workflow_engine.decide(iid, f"user_{role.lower()}", "APPROVE")
            instance = view["instance"]
            assert 1 <= instance["current_stage"] <= len(roles_per_stage)
            if i < len(roles_per_stage):
                assert instance["status"] == "PENDING"
                assert instance["current_stage"] == i + 1

        assert instance["status"] == "APPROVED"
        assert instance["current_stage"] == len(roles_per_stage)
        assert _action_count(iid) == len(roles_per_stage)

    def test_unauthorized_actor(self, invoice_template, staff):
        iid = _create(invoice_template)
        with pytest.raises(UnauthorizedActionError) as exc:
            workflow_engine.decide(iid, "carol", "APPROVE")
        details = exc.value.to_details()
        assert details["current_stage"] == 1
        assert details["required_roles"] == ["ACCOUNTANT"]
        assert details["status"] == "PENDING"
        assert workflow_engine.get_instance(iid)["instance"]["current_stage"] == 1
        assert _action_count(iid) == 0

    def test_role_changes_apply_on_next_call(self, invoice_template, staff):
        iid = _create(invoice_template)
        staff.revoke("alice", "ACCOUNTANT")
        with pytest.raises(UnauthorizedActionError):
            workflow_engine.decide(iid, "alice", "APPROVE")
        staff.assign("ursula", "ACCOUNTANT")
        workflow_engine.decide(iid, "ursula", "APPROVE")

    def test_invalid_action(self, invoice_template, staff):
        iid = _create(invoice_template)
        with pytest.raises(ValidationError):
            workflow_engine.decide(iid, "alice", "MAYBE")

    def test_unknown_instance(self, staff):
        with pytest.raises(NotFoundError):
            workflow_engine.decide(12345, "alice", "APPROVE")

    def test_decision_comments_blank_stored_as_none(self, invoice_template, staff):
        iid = _create(invoice_template)
        view = workflow_engine.decide(iid, "alice", "APPROVE", "   ")
        assert view["actions"][0]["comments"] is None


class TestAtMostOneDecisionPerStage:
    def test_race_loser_gets_already_decided(self, invoice_template, staff):
        """A competing decision committed after this caller read the instance wins."""
        iid = _create(invoice_template)
        # The winning transaction: its StageAction is committed while the
        # loser still sees the instance at stage 1.
        db.session.add(StageAction(
            instance_id=iid,
            stage_order=1,
            stage_name="Finance Review",
            action="APPROVED",
            actor="alice",
            acted_for="alice",
            created_at=datetime.now(timezone.utc),
        ))
        db.session.commit()

        with pytest.raises(AlreadyDecidedError) as exc:
            workflow_engine.decide(iid, "bob", "APPROVE")

        assert exc.value.decided_by == "alice"
        assert exc.value.stage_order == 1
        assert exc.value.to_details()["decision"]["actor"] == "alice"
        assert _action_count(iid, stage_order=1) == 1
        view = workflow_engine.get_instance(iid)
        assert view["instance"]["current_stage"] == 1
        assert view["instance"]["status"] == "PENDING"

    def test_loser_leaves_no_audit_rows(self, invoice_template, staff):
        iid = _create(invoice_template)
        db.session.add(StageAction(
            instance_id=iid, stage_order=1, stage_name="Finance Review",
            action="APPROVED", actor="alice", acted_for="alice",
        ))
        db.session.commit()

        with pytest.raises(AlreadyDecidedError):
            workflow_engine.decide(iid, "bob", "REJECT")
        events = [e["event_type"] for e in workflow_engine.get_instance_audit(iid)]
        assert events == ["instance.created"]

    def test_sequential_second_approver_cannot_decide_advanced_stage(self, invoice_template, staff):
        iid = _create(invoice_template)
        workflow_engine.decide(iid, "alice", "APPROVE")
        with pytest.raises(UnauthorizedActionError) as exc:
            workflow_engine.decide(iid, "bob", "APPROVE")
        assert exc.value.current_stage == 2
        assert _action_count(iid, stage_order=1) == 1

    def test_concurrent_approvals_one_wins(self, app, invoice_template, staff, notifier, monkeypatch):
        """Both callers loaded stage 1; alice commits first, bob's version check fails."""
        iid = _create(invoice_template)
        winner = {}
        _interleave(
            monkeypatch, app, "_authorize",
            lambda: winner.update(workflow_engine.decide(iid, "alice", "APPROVE")),
        )

        with pytest.raises(AlreadyDecidedError) as exc:
            workflow_engine.decide(iid, "bob", "APPROVE")

        assert winner["instance"]["current_stage"] == 2
        assert exc.value.decided_by == "alice"
        assert exc.value.stage_order == 1
        assert _action_count(iid, stage_order=1) == 1
        assert _action_count(iid) == 1
        view = workflow_engine.get_instance(iid)
        assert view["instance"]["current_stage"] == 2
        assert view["instance"]["status"] == "PENDING"
        assert [type(e) for e in notifier.events] == [StageAdvanced]

    def test_concurrent_reject_beats_approve(self, app, invoice_template, staff, monkeypatch):
        iid = _create(invoice_template)
        _interleave(
            monkeypatch, app, "_authorize",
            lambda: workflow_engine.decide(iid, "alice", "REJECT", "Duplicate"),
        )

        with pytest.raises(AlreadyDecidedError) as exc:
            workflow_engine.decide(iid, "bob", "APPROVE")

        assert exc.value.to_details()["decision"]["action"] == "REJECTED"
        assert workflow_engine.get_instance(iid)["instance"]["status"] == "REJECTED"
        assert _action_count(iid) == 1

    def test_decision_loses_to_concurrent_cancel(self, app, invoice_template, staff, monkeypatch):
        iid = _create(invoice_template)
        _interleave(
            monkeypatch, app, "_authorize",
            lambda: workflow_engine.cancel(iid, "requester", "Withdrawn"),
        )

        with pytest.raises(WorkflowTerminalError) as exc:
            workflow_engine.decide(iid, "alice", "APPROVE")

        assert exc.value.status == "CANCELLED"
        assert exc.value.current_stage == 1
        assert _action_count(iid) == 0
        events = [e["event_type"] for e in workflow_engine.get_instance_audit(iid)]
        assert events == ["instance.created", "instance.cancelled"]


# ═════════════════════════════════════════════════════════════════════════
# TERMINAL STATES / CANCELLATION
# ═════════════════════════════════════════════════════════════════════════


class TestTerminalImmutability:
    @pytest.fixture()
    def approved(self, invoice_template, staff):
        iid = _create(invoice_template)
        workflow_engine.decide(iid, "alice", "APPROVE")
        workflow_engine.decide(iid, "carol", "APPROVE")
        return iid

    def test_decide_after_approval(self, approved):
        before = workflow_engine.get_instance(approved)
        with pytest.raises(WorkflowTerminalError):
            workflow_engine.decide(approved, "carol", "REJECT")
        assert workflow_engine.get_instance(approved) == before

    def test_cancel_after_approval(self, approved):
        before = workflow_engine.get_instance(approved)
        with pytest.raises(WorkflowTerminalError) as exc:
            workflow_engine.cancel(approved, "requester")
        assert exc.value.to_details()["status"] == "APPROVED"
        assert workflow_engine.get_instance(approved) == before


class TestCancel:
    def test_cancel_pending(self, invoice_template, staff, notifier):
        iid = _create(invoice_template)
        view = workflow_engine.cancel(iid, "requester", "Withdrawn")
        assert view["instance"]["status"] == "CANCELLED"
        assert view["actions"] == []
        assert _action_count(iid) == 0

        trail = workflow_engine.get_instance_audit(iid)
        assert trail[-1]["event_type"] == "instance.cancelled"
        assert trail[-1]["comments"] == "Withdrawn"

        [event] = notifier.of_type(WorkflowCancelled)
        assert event.reason == "Withdrawn"
        assert event.cancelled_by == "requester"

    def test_cancel_twice(self, invoice_template):
        iid = _create(invoice_template)
        workflow_engine.cancel(iid, "requester")
        with pytest.raises(WorkflowTerminalError):
            workflow_engine.cancel(iid, "requester")

    def test_decide_after_cancel(self, invoice_template, staff):
        iid = _create(invoice_template)
        workflow_engine.cancel(iid, "requester")
        with pytest.raises(WorkflowTerminalError):
            workflow_engine.decide(iid, "alice", "APPROVE")

    def test_cancel_after_concurrent_stage_advance(self, app, invoice_template, staff, monkeypatch):
        """A stage approval committed first only moves the stage; cancel still applies."""
        iid = _create(invoice_template)
        _interleave(
            monkeypatch, app, "_close_cancelled",
            lambda: workflow_engine.decide(iid, "alice", "APPROVE"),
        )

        view = workflow_engine.cancel(iid, "requester", "Withdrawn")

        assert view["instance"]["status"] == "CANCELLED"
        assert view["instance"]["current_stage"] == 2
        assert _action_count(iid) == 1
        cancelled = workflow_engine.get_instance_audit(iid)[-1]
        assert cancelled["event_type"] == "instance.cancelled"
        assert cancelled["stage_order"] == 2

    def test_cancel_after_concurrent_rejection(self, app, invoice_template, staff, notifier, monkeypatch):
        iid = _create(invoice_template)
        _interleave(
            monkeypatch, app, "_close_cancelled",
            lambda: workflow_engine.decide(iid, "alice", "REJECT"),
        )

        with pytest.raises(WorkflowTerminalError) as exc:
            workflow_engine.cancel(iid, "requester")

        assert exc.value.status == "REJECTED"
        assert [type(e) for e in notifier.events] == [WorkflowRejected]


# ═════════════════════════════════════════════════════════════════════════
# SNAPSHOT DECOUPLING
# ═════════════════════════════════════════════════════════════════════════


class TestSnapshot:
    def test_revision_does_not_change_running_instance(self, invoice_template, staff):
        iid = _create(invoice_template)
        workflow_catalog.revise_template(invoice_template["id"], {
            "stages": [{"stage_order": 1, "approver_roles": ["CEO"]}],
        })

        view = workflow_engine.get_instance(iid)
        assert view["instance"]["stage_count"] == 2
        assert view["current_stage_detail"]["approver_roles"] == ["ACCOUNTANT"]

        workflow_engine.decide(iid, "alice", "APPROVE")
        view = workflow_engine.decide(iid, "carol", "APPROVE")
        assert view["instance"]["status"] == "APPROVED"

    def test_deactivation_does_not_stop_running_instance(self, invoice_template, staff):
        iid = _create(invoice_template)
        workflow_catalog.deactivate(invoice_template["id"])
        view = workflow_engine.decide(iid, "alice", "APPROVE")
        assert view["instance"]["current_stage"] == 2


# ═════════════════════════════════════════════════════════════════════════
# EVENTS
# ═════════════════════════════════════════════════════════════════════════


class TestEvents:
    def test_stage_advanced_then_approved(self, invoice_template, staff, notifier):
        iid = _create(invoice_template)
        workflow_engine.decide(iid, "alice", "APPROVE")

        [advanced] = notifier.of_type(StageAdvanced)
        assert advanced.instance_id == iid
        assert advanced.next_stage_order == 2
        assert advanced.next_approver_roles == ["CEO"]

        workflow_engine.decide(iid, "carol", "APPROVE")
        [approved] = notifier.of_type(WorkflowApproved)
        assert approved.approved_by == "carol"
        assert [e.name for e in notifier.events] == ["StageAdvanced", "WorkflowApproved"]

    def test_rejected_event(self, invoice_template, staff, notifier):
        iid = _create(invoice_template)
        workflow_engine.decide(iid, "alice", "REJECT", "Duplicate invoice")
        [rejected] = notifier.events
        assert isinstance(rejected, WorkflowRejected)
        assert rejected.rejected_at_stage == 1
        assert rejected.comments == "Duplicate invoice"

    def test_no_event_on_failed_decision(self, invoice_template, staff, notifier):
        iid = _create(invoice_template)
        with pytest.raises(UnauthorizedActionError):
            workflow_engine.decide(iid, "carol", "APPROVE")
        assert notifier.events == []

    def test_completion_handler_called_on_terminal_only(self, invoice_template, staff):
        seen = []
        register_completion_handler("INVOICE", seen.append)
        iid = _create(invoice_template)

        workflow_engine.decide(iid, "alice", "APPROVE")
        assert seen == []
        workflow_engine.decide(iid, "carol", "APPROVE")
        assert [e.name for e in seen] == ["WorkflowApproved"]
        assert seen[0].request_id == "INV-1"

    def test_failing_handler_does_not_undo_transition(self, invoice_template, staff):
        def _boom(event):
            raise RuntimeError("downstream offline")

        register_completion_handler("INVOICE", _boom)
        iid = _create(invoice_template)
        view = workflow_engine.decide(iid, "alice", "REJECT")
        assert view["instance"]["status"] == "REJECTED"
        assert workflow_engine.get_instance(iid)["instance"]["status"] == "REJECTED"

    def test_completion_handlers_are_per_app(self, app):
        from flask import Flask

        other = Flask("other")
        init_integrations(other)
        register_completion_handler("invoice", print, app=app)

        assert get_completion_handlers(app).for_type("INVOICE") == [print]
        assert get_completion_handlers(other).for_type("INVOICE") == []


# ═════════════════════════════════════════════════════════════════════════
# AUDIT + IMMUTABILITY
# ═════════════════════════════════════════════════════════════════════════


class TestAuditAndImmutability:
    def test_full_audit_sequence(self, invoice_template, staff):
        iid = _create(invoice_template)
        workflow_engine.decide(iid, "alice", "APPROVE")
        workflow_engine.decide(iid, "carol", "APPROVE")
        events = [e["event_type"] for e in workflow_engine.get_instance_audit(iid)]
        assert events == ["instance.created", "stage.approved", "stage.approved", "instance.approved"]

    def test_stage_action_cannot_be_updated(self, invoice_template, staff):
        iid = _create(invoice_template)
        workflow_engine.decide(iid, "alice", "APPROVE")
        action = db.session.execute(select(StageAction).where(StageAction.instance_id == iid)).scalar_one()
        action.comments = "rewritten"
        with pytest.raises(ImmutableRecordError):
            db.session.flush()
        db.session.rollback()

    def test_stage_action_cannot_be_deleted(self, invoice_template, staff):
        iid = _create(invoice_template)
        workflow_engine.decide(iid, "alice", "APPROVE")
        action = db.session.execute(select(StageAction).where(StageAction.instance_id == iid)).scalar_one()
        db.session.delete(action)
        with pytest.raises(ImmutableRecordError):
            db.session.flush()
        db.session.rollback()

    def test_instance_cannot_be_deleted(self, invoice_template):
        iid = _create(invoice_template)
        db.session.delete(db.session.get(WorkflowInstance, iid))
        with pytest.raises(ImmutableRecordError):
            db.session.flush()
        db.session.rollback()


# ═════════════════════════════════════════════════════════════════════════
# QUERIES
# ═════════════════════════════════════════════════════════════════════════


class TestQueries:
    def test_view_by_request(self, invoice_template):
        iid = _create(invoice_template, request_id="INV-77")
        view = workflow_engine.get_instance_view("invoice", "INV-77")
        assert view["instance"]["id"] == iid

    def test_view_not_found(self):
        with pytest.raises(NotFoundError):
            workflow_engine.get_instance_view("INVOICE", "missing")

    def test_pending_for_user(self, invoice_template, staff):
        first = _create(invoice_template, "INV-1")
        second = _create(invoice_template, "INV-2")
        workflow_engine.decide(first, "alice", "APPROVE")

        assert [i["id"] for i in workflow_engine.list_pending_for_user("bob")] == [second]
        pending_ceo = workflow_engine.list_pending_for_user("carol")
        assert [i["id"] for i in pending_ceo] == [first]
        assert pending_ceo[0]["acting_for"] == "carol"
        assert workflow_engine.list_pending_for_user("ursula") == []

    def test_can_user_decide(self, invoice_template, staff):
        iid = _create(invoice_template)
        assert workflow_engine.can_user_decide(iid, "alice") is True
        assert workflow_engine.can_user_decide(iid, "carol") is False
        workflow_engine.cancel(iid, "requester")
        assert workflow_engine.can_user_decide(iid, "alice") is False

    def test_current_stage_approvers(self, invoice_template, staff):
        iid = _create(invoice_template)
        assert workflow_engine.current_stage_approvers(iid) == ["alice", "bob"]
        workflow_engine.decide(iid, "alice", "APPROVE")
        assert workflow_engine.current_stage_approvers(iid) == ["carol"]
