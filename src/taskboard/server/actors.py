"""Request actor: who is moving a task, and with what privilege.

Authentication lives outside this service; callers identify themselves with
the ``X-Actor``, ``X-Actor-Role`` and ``X-Session-Id`` headers.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from fastapi import Header


class ActorRole(str, Enum):
    ADMIN = "admin"           # may bypass locks, workflow direction and the priority gate
    MEMBER = "member"         # regular board member
    VIEWER = "viewer"         # read-only


# Permissions per role
ROLE_PERMISSIONS: dict[str, set[str]] = {
    ActorRole.ADMIN.value: {"view", "move", "edit", "manage_boards"},
    ActorRole.MEMBER.value: {"view", "move", "edit"},
    ActorRole.VIEWER.value: {"view"},
}


@dataclass(frozen=True)
class Actor:
    name: Optional[str] = None
    role: str = ActorRole.MEMBER.value
    session_id: Optional[str] = None

    def has_permission(self, perm: str) -> bool:
        # Roles outside the table (custom elevated roles) act as members.
        return perm in ROLE_PERMISSIONS.get(self.role, ROLE_PERMISSIONS[ActorRole.MEMBER.value])

    def is_elevated(self, elevated_roles: frozenset[str]) -> bool:
        return self.role in elevated_roles


def actor_from_headers(
    x_actor: Optional[str] = Header(None),
    x_actor_role: Optional[str] = Header(None),
    x_session_id: Optional[str] = Header(None),
) -> Actor:
    """FastAPI dependency building the :class:`Actor` for the current request."""
    role = (x_actor_role or ActorRole.MEMBER.value).strip().lower() or ActorRole.MEMBER.value
    return Actor(
        name=(x_actor or "").strip() or None,
        role=role,
        session_id=(x_session_id or "").strip() or None,
    )
