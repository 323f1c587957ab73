"""
Delegation Registry — time-bounded authority grants and their use in decisions.

Tests cover:
  - Input validation (range, self-delegation, missing users)
  - Inclusive window resolution; one second past the end no longer counts
  - Cancellation (idempotent) and its effect on resolution
  - Decisions through a delegation record actor + acted_for
  - Manager-role checks for acting on someone else's delegations
"""
from datetime import datetime, timedelta, timezone

import pytest

from approval_engine.core.exceptions import (
    ForbiddenError,
    InvalidRangeError,
    NotFoundError,
    SelfDelegationError,
    UnauthorizedActionError,
    ValidationError,
)
from approval_engine.services import delegation_service, workflow_engine

JAN_1 = datetime(2024, 1, 1, tzinfo=timezone.utc)
JAN_15 = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)
FEB_1 = datetime(2024, 2, 1, tzinfo=timezone.utc)


@pytest.fixture()
def january(staff):
    """ursula (EMPLOYEE) holds alice's (ACCOUNTANT) authority for January 2024."""
    return delegation_service.create_delegation(
        "alice", "ursula", "2024-01-01", "2024-01-31", reason="Annual leave",
    )


# ═════════════════════════════════════════════════════════════════════════
# VALIDATION
# ═════════════════════════════════════════════════════════════════════════


class TestCreateDelegation:
    def test_create(self, january):
        assert january["delegator"] == "alice"
        assert january["delegate"] == "ursula"
        assert january["is_active"] is True
        assert january["reason"] == "Annual leave"
        assert january["created_by"] == "alice"

    def test_date_only_end_covers_whole_day(self, january):
        end = datetime.fromisoformat(january["end_at"])
        assert (end.hour, end.minute, end.second) == (23, 59, 59)

    def test_start_after_end(self):
        with pytest.raises(InvalidRangeError):
            delegation_service.create_delegation("alice", "ursula", "2024-02-01", "2024-01-01")

    def test_zero_length_window_allowed(self):
        at = "2024-03-01T09:00:00Z"
        delegation = delegation_service.create_delegation("alice", "ursula", at, at)
        assert delegation["start_at"] == delegation["end_at"]

    def test_self_delegation(self):
        with pytest.raises(SelfDelegationError):
            delegation_service.create_delegation("alice", "alice", JAN_1, FEB_1)

    def test_missing_delegate(self):
        with pytest.raises(ValidationError):
            delegation_service.create_delegation("alice", "", JAN_1, FEB_1)

    def test_unparseable_instant(self):
        with pytest.raises(ValidationError) as exc:
            delegation_service.create_delegation("alice", "ursula", "next tuesday", FEB_1)
        assert "start" in exc.value.details

    def test_overlapping_delegations_allowed(self, january):
        second = delegation_service.create_delegation("alice", "bob", "2024-01-10", "2024-01-20")
        assert second["is_active"] is True
        assert delegation_service.resolve_delegates_for("alice", JAN_15) == {"ursula", "bob"}


# ═════════════════════════════════════════════════════════════════════════
# RESOLUTION
# ═════════════════════════════════════════════════════════════════════════


class TestResolution:
    def test_inside_window(self, january):
        assert delegation_service.resolve_delegators_for("ursula", JAN_15) == {"alice"}

    def test_window_is_inclusive(self):
        end = datetime(2024, 1, 31, 17, 0, tzinfo=timezone.utc)
        delegation_service.create_delegation("alice", "ursula", JAN_1, end)
        assert delegation_service.resolve_delegators_for("ursula", JAN_1) == {"alice"}
        assert delegation_service.resolve_delegators_for("ursula", end) == {"alice"}
        assert delegation_service.resolve_delegators_for("ursula", end + timedelta(seconds=1)) == set()
        assert delegation_service.resolve_delegators_for("ursula", JAN_1 - timedelta(seconds=1)) == set()

    def test_naive_instant_treated_as_utc(self, january):
        assert delegation_service.resolve_delegators_for("ursula", datetime(2024, 1, 15)) == {"alice"}

    def test_cancelled_delegation_not_resolved(self, january):
        delegation_service.cancel_delegation(january["id"])
        assert delegation_service.resolve_delegators_for("ursula", JAN_15) == set()

    def test_cancel_is_idempotent(self, january):
        first = delegation_service.cancel_delegation(january["id"])
        second = delegation_service.cancel_delegation(january["id"])
        assert first["is_active"] is False
        assert second["cancelled_at"] == first["cancelled_at"]

    def test_cancel_unknown(self):
        with pytest.raises(NotFoundError):
            delegation_service.cancel_delegation(404)

    def test_list_for_user(self, january):
        delegation_service.create_delegation("carol", "bob", JAN_1, FEB_1)
        assert [d["id"] for d in delegation_service.list_for_user("ursula")] == [january["id"]]
        assert [d["id"] for d in delegation_service.list_for_user("alice")] == [january["id"]]
        assert len(delegation_service.list_all()) == 2


# ═════════════════════════════════════════════════════════════════════════
# DECISIONS THROUGH DELEGATION
# ═════════════════════════════════════════════════════════════════════════


class TestDelegatedDecisions:
    def test_delegate_decides_inside_window(self, invoice_template, january):
        iid = workflow_engine.create_instance(invoice_template["id"], "INVOICE", "INV-1")
        view = workflow_engine.decide(iid, "ursula", "APPROVE", now=JAN_15)

        [action] = view["actions"]
        assert action["actor"] == "ursula"
        assert action["acted_for"] == "alice"
        assert action["via_delegation"] is True
        assert view["instance"]["current_stage"] == 2

        audit = workflow_engine.get_instance_audit(iid)
        assert audit[1]["acted_for"] == "alice"
        assert audit[1]["payload"]["via_delegation"] is True

    def test_delegate_refused_after_window(self, invoice_template, january):
        iid = workflow_engine.create_instance(invoice_template["id"], "INVOICE", "INV-1")
        with pytest.raises(UnauthorizedActionError):
            workflow_engine.decide(iid, "ursula", "APPROVE", now=FEB_1)

    def test_one_second_after_end(self, invoice_template, staff):
        end = datetime(2024, 1, 31, 18, 30, tzinfo=timezone.utc)
        delegation_service.create_delegation("alice", "ursula", JAN_1, end)
        iid = workflow_engine.create_instance(invoice_template["id"], "INVOICE", "INV-1")

        assert workflow_engine.can_user_decide(iid, "ursula", now=end) is True
        with pytest.raises(UnauthorizedActionError):
            workflow_engine.decide(iid, "ursula", "APPROVE", now=end + timedelta(seconds=1))

    def test_own_role_wins_over_delegation(self, invoice_template, staff):
        delegation_service.create_delegation("carol", "bob", JAN_1, FEB_1)
        iid = workflow_engine.create_instance(invoice_template["id"], "INVOICE", "INV-1")
        view = workflow_engine.decide(iid, "bob", "APPROVE", now=JAN_15)
        assert view["actions"][0]["acted_for"] == "bob"

        view = workflow_engine.decide(iid, "bob", "APPROVE", now=JAN_15)
        assert view["instance"]["status"] == "APPROVED"
        assert view["actions"][1]["acted_for"] == "carol"

    def test_delegated_authority_is_not_transitive(self, invoice_template, january):
        delegation_service.create_delegation("ursula", "dave", JAN_1, FEB_1)
        iid = workflow_engine.create_instance(invoice_template["id"], "INVOICE", "INV-1")
        with pytest.raises(UnauthorizedActionError):
            workflow_engine.decide(iid, "dave", "APPROVE", now=JAN_15)

    def test_cancelling_does_not_revoke_past_decisions(self, invoice_template, january):
        iid = workflow_engine.create_instance(invoice_template["id"], "INVOICE", "INV-1")
        workflow_engine.decide(iid, "ursula", "APPROVE", now=JAN_15)
        delegation_service.cancel_delegation(january["id"])

        view = workflow_engine.get_instance(iid)
        assert view["actions"][0]["acted_for"] == "alice"
        assert view["instance"]["current_stage"] == 2

    def test_pending_list_includes_delegated_items(self, invoice_template, january):
        iid = workflow_engine.create_instance(invoice_template["id"], "INVOICE", "INV-1")
        [item] = workflow_engine.list_pending_for_user("ursula", now=JAN_15)
        assert item["id"] == iid
        assert item["acting_for"] == "alice"
        assert workflow_engine.list_pending_for_user("ursula", now=FEB_1) == []

    def test_current_stage_approvers_include_delegates(self, invoice_template, january):
        iid = workflow_engine.create_instance(invoice_template["id"], "INVOICE", "INV-1")
        assert workflow_engine.current_stage_approvers(iid, now=JAN_15) == ["alice", "bob", "ursula"]
        assert workflow_engine.current_stage_approvers(iid, now=FEB_1) == ["alice", "bob"]


# ═════════════════════════════════════════════════════════════════════════
# PERMISSIONS
# ═════════════════════════════════════════════════════════════════════════


class TestManagerPermissions:
    def test_user_creates_own_delegation(self, staff):
        d = delegation_service.create_delegation("bob", "ursula", JAN_1, FEB_1, acting_user="bob")
        assert d["created_by"] == "bob"

    def test_manager_creates_for_someone_else(self, staff):
        d = delegation_service.create_delegation("bob", "ursula", JAN_1, FEB_1, acting_user="carol")
        assert d["created_by"] == "carol"

    def test_non_manager_forbidden(self, staff):
        with pytest.raises(ForbiddenError):
            delegation_service.create_delegation("bob", "ursula", JAN_1, FEB_1, acting_user="alice")

    def test_non_manager_cannot_cancel_others(self, january):
        with pytest.raises(ForbiddenError):
            delegation_service.cancel_delegation(january["id"], acting_user="bob")
        assert delegation_service.get_delegation(january["id"])["is_active"] is True

    def test_list_all_requires_manager(self, january):
        with pytest.raises(ForbiddenError):
            delegation_service.list_all(acting_user="ursula")
        assert len(delegation_service.list_all(acting_user="carol")) == 1

    def test_manager_roles_configurable(self, app, staff):
        app.config["DELEGATION_MANAGER_ROLES"] = ["ACCOUNTANT"]
        try:
            d = delegation_service.create_delegation("carol", "ursula", JAN_1, FEB_1, acting_user="alice")
            assert d["delegator"] == "carol"
        finally:
            app.config["DELEGATION_MANAGER_ROLES"] = ["SUPER_ADMIN", "CEO", "CFO"]
