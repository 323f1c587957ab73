"""
Approval Workflow Engine
Role assignments backing the default database Role Directory.

Identity management itself lives outside this service; this table only
mirrors "user X holds role Y" so the engine has something to query when no
other directory is plugged in.
"""

from datetime import datetime, timezone

from approval_engine.models import db


class RoleAssignment(db.Model):
    __tablename__ = "user_role_assignments"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(150), nullable=False, index=True)
    role = db.Column(db.String(100), nullable=False, index=True)
    assigned_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.UniqueConstraint("user_id", "role", name="uq_user_role_assignment"),
    )

    def to_dict(self):
        return {"user_id": self.user_id, "role": self.role}
