"""
auth/roles.py -- Role Assignment Ledger.

Roles are never edited in place. Changing a role revokes the current ledger
row and appends a new one, so the table is a complete history of who held
which role, who granted it, and why.

Invariant: at most one row per identity is is_current and not revoked.

Two layers keep it:
  1. A per-identity threading.Lock serialises assign() calls inside this
     process, so the revoke+insert pair for one identity never interleaves
     with another.
  2. IdentityStore.replace_current_role() runs both statements in a single
     transaction, and a partial unique index rejects a second current row if
     another process slips in.

Locks are created lazily and kept for the life of the ledger. The map only
grows by one small Lock per distinct identity whose role was changed.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import datetime

from auth.models import Role, RoleAssignment
from auth.store import IdentityStore
from core.db import to_iso, utcnow


class RoleLedger:
    def __init__(self, store: IdentityStore, clock: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._clock = clock
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, identity_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(identity_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[identity_id] = lock
            return lock

    def new_assignment(
        self,
        identity_id: str,
        role: Role,
        actor: str | None = None,
        reason: str | None = None,
    ) -> RoleAssignment:
        """Build a current, non-revoked row without writing it.

        Signup uses this for the very first role so the row can be inserted in
        the same transaction as the identity itself.
        """
        return RoleAssignment(
            identity_id=identity_id,
            role=Role(role).value,
            assigned_by=actor,
            assigned_at=to_iso(self._clock()),
            assigned_reason=reason,
            is_current=True,
            revoked=False,
        )

    def assign(
        self,
        identity_id: str,
        role: Role,
        actor: str | None = None,
        reason: str | None = None,
    ) -> RoleAssignment:
        """Make role the identity's current role, revoking whatever was current.

        Raises ValueError for a role outside the Role enum. Store errors
        propagate; nothing is written in that case.
        """
        role = Role(role)
        assignment = self.new_assignment(identity_id, role, actor, reason)
        with self._lock_for(identity_id):
            return self._store.replace_current_role(
                assignment,
                revoked_by=actor,
                revoked_at=assignment.assigned_at,
                revoked_reason=f"Role changed to {role.value}",
            )

    def current_role(self, identity_id: str) -> Role:
        """The identity's current role, or Role.guest when none is assigned."""
        assignment = self._store.get_current_role_assignment(identity_id)
        if assignment is None:
            return Role.guest
        try:
            return Role(assignment.role)
        except ValueError:
            return Role.guest

    def history(self, identity_id: str) -> list[RoleAssignment]:
        return self._store.list_role_assignments(identity_id)
