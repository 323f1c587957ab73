"""
Approval Workflow Engine
Delegation model — time-bounded grant of approval authority.

A delegation is active at instant ``t`` when
``is_active AND start_at <= t <= end_at``. Expiry needs no explicit
cancellation; cancelling only flips ``is_active``.
"""

from datetime import datetime, timezone

from approval_engine.models import db


def _utcnow():
    return datetime.now(timezone.utc)


class Delegation(db.Model):
    __tablename__ = "approval_delegations"
    __table_args__ = (
        db.Index("ix_delegation_delegate_window", "delegate", "is_active", "start_at", "end_at"),
        db.Index("ix_delegation_delegator", "delegator"),
        db.CheckConstraint("start_at <= end_at", name="ck_delegation_window"),
    )

    id = db.Column(db.Integer, primary_key=True)
    delegator = db.Column(db.String(150), nullable=False, comment="User granting authority")
    delegate = db.Column(db.String(150), nullable=False, comment="User receiving authority")
    start_at = db.Column(db.DateTime(timezone=True), nullable=False)
    end_at = db.Column(db.DateTime(timezone=True), nullable=False, comment="Inclusive")
    reason = db.Column(db.Text, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_by = db.Column(db.String(150), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "delegator": self.delegator,
            "delegate": self.delegate,
            "start_at": self.start_at.isoformat() if self.start_at else None,
            "end_at": self.end_at.isoformat() if self.end_at else None,
            "reason": self.reason,
            "is_active": self.is_active,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
        }

    def __repr__(self):
        return f"<Delegation {self.id}: {self.delegator} → {self.delegate}>"
