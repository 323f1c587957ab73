"""
Role Directory adapters.

The engine never decides who holds which role; it asks a Role Directory.
Every call goes to the directory (no caching between calls), so role
changes take effect on the very next decision.

Implementations:
    StaticRoleDirectory    — in-memory mapping, for tests and embedding.
    DatabaseRoleDirectory  — reads ``user_role_assignments`` (default).

Usage:
    from approval_engine.integrations.role_directory import StaticRoleDirectory
    directory = StaticRoleDirectory({"alice": {"ACCOUNTANT"}, "bob": {"CEO"}})
    directory.roles_of("alice")   # {"ACCOUNTANT"}
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from approval_engine.models import db
from approval_engine.models.directory import RoleAssignment

logger = logging.getLogger(__name__)


class RoleDirectory:
    """Interface consumed by the workflow engine."""

    def roles_of(self, user_id: str) -> set[str]:
        raise NotImplementedError

    def members_of(self, role: str) -> set[str]:
        raise NotImplementedError


class StaticRoleDirectory(RoleDirectory):
    """Role directory backed by a plain ``{user_id: roles}`` mapping."""

    def __init__(self, assignments: dict[str, set[str] | list[str]] | None = None) -> None:
        self._assignments: dict[str, set[str]] = {
            user: set(roles) for user, roles in (assignments or {}).items()
        }

    def assign(self, user_id: str, *roles: str) -> None:
        self._assignments.setdefault(user_id, set()).update(roles)

    def revoke(self, user_id: str, role: str) -> None:
        self._assignments.get(user_id, set()).discard(role)

    def roles_of(self, user_id: str) -> set[str]:
        return set(self._assignments.get(user_id, set()))

    def members_of(self, role: str) -> set[str]:
        return {user for user, roles in self._assignments.items() if role in roles}


class DatabaseRoleDirectory(RoleDirectory):
    """Role directory backed by the ``user_role_assignments`` table."""

    def roles_of(self, user_id: str) -> set[str]:
        rows = db.session.execute(
            select(RoleAssignment.role).where(RoleAssignment.user_id == user_id)
        ).scalars()
        return set(rows)

    def members_of(self, role: str) -> set[str]:
        rows = db.session.execute(
            select(RoleAssignment.user_id).where(RoleAssignment.role == role)
        ).scalars()
        return set(rows)

    def assign(self, user_id: str, *roles: str) -> None:
        """Add role rows for *user_id*; existing assignments are kept. Flushes only."""
        existing = self.roles_of(user_id)
        for role in roles:
            if role not in existing:
                db.session.add(RoleAssignment(user_id=user_id, role=role))
        db.session.flush()
        logger.debug("Assigned roles %s to %s", sorted(set(roles) - existing), user_id)
