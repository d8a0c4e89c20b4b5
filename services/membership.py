from __future__ import annotations
import logging
from enum import IntEnum
from typing import Optional, Sequence

from .errors import AuthorizationDenied
from .persistence import PersistenceService

logger = logging.getLogger(__name__)


class Role(IntEnum):
    MEMBER = 1
    ADMIN = 2
    OWNER = 3

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["Role"]:
        if not value:
            return None
        try:
            return cls[value.upper()]
        except KeyError:
            return None


class MembershipGate:
    """Workspace role check, re-run for every sensitive action.

    Nothing is cached: roles can change between two actions of the same
    connection.
    """

    def __init__(self, persistence: PersistenceService) -> None:
        self._persistence = persistence

    async def check_access(
        self,
        user_id: str,
        workspace_id: str,
        minimum: Role = Role.MEMBER,
        message: str = "Not a workspace member",
    ) -> Role:
        if not workspace_id:
            raise AuthorizationDenied(message)
        role = Role.parse(await self._persistence.get_membership_role(workspace_id, user_id))
        if role is None or role < minimum:
            logger.debug("Denied %s on workspace %s (role=%s, need=%s)", user_id, workspace_id, role, minimum.name)
            raise AuthorizationDenied(message)
        return role

    async def allowed_workspaces(self, user_id: str, workspace_ids: Sequence[str]) -> list[str]:
        """Subset of ``workspace_ids`` the user belongs to, any role."""
        unique = list(dict.fromkeys(w for w in workspace_ids if w))
        return await self._persistence.list_member_workspaces(user_id, unique)
