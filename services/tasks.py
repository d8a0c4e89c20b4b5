from __future__ import annotations
import logging
from typing import Any, Dict, Tuple

from realtime import RoomRouter, board_channel
from .errors import NotFound, RealtimeError
from .membership import MembershipGate
from .persistence import PersistenceService
from .sessions import SessionRegistry

logger = logging.getLogger(__name__)

# event -> (fields forwarded verbatim, actor key)
TASK_EVENTS: Dict[str, Tuple[Tuple[str, ...], str]] = {
    "task_created": (("listId", "task"), "createdBy"),
    "task_updated": (("taskId", "updates"), "updatedBy"),
    "task_moved": (
        ("taskId", "sourceListId", "destinationListId", "sourceIndex", "destinationIndex"),
        "movedBy",
    ),
    "task_deleted": (("taskId", "listId"), "deletedBy"),
    "list_created": (("list",), "createdBy"),
}


class TaskEventRelay:
    """Board mutation hints for connected clients.

    The REST API owns the actual mutation; these events only tell other
    viewers to refresh. Payload contents are not validated, only the actor's
    right to post on the board. Unauthorized events are dropped without an
    error reply.
    """

    def __init__(
        self,
        router: RoomRouter,
        sessions: SessionRegistry,
        gate: MembershipGate,
        persistence: PersistenceService,
    ) -> None:
        self._router = router
        self._sessions = sessions
        self._gate = gate
        self._persistence = persistence

    async def _authorize(self, user_id: str, board_id: str) -> str:
        """board -> workspace -> membership; returns the workspace id."""
        workspace_id = await self._persistence.get_board_workspace(board_id) if board_id else None
        if workspace_id is None:
            raise NotFound("Task board not found")
        await self._gate.check_access(user_id, workspace_id, message="Access denied to task board")
        return workspace_id

    async def join_board(self, connection_id: str, board_id: str) -> None:
        conn = self._sessions.connection(connection_id)
        await self._authorize(conn.user_id, board_id)
        self._sessions.connection(connection_id)
        self._router.join(connection_id, board_channel(board_id))
        await self._router.send(connection_id, "task_board_joined", {"boardId": board_id})

    async def leave_board(self, connection_id: str, board_id: str) -> None:
        self._sessions.connection(connection_id)
        self._router.leave(connection_id, board_channel(board_id))
        await self._router.send(connection_id, "task_board_left", {"boardId": board_id})

    async def relay(self, connection_id: str, event: str, data: Any) -> bool:
        """Re-broadcast a board event tagged with the actor. Returns whether it went out."""
        entry = TASK_EVENTS.get(event)
        conn = self._sessions.find_connection(connection_id)
        if entry is None or conn is None or not isinstance(data, dict):
            return False
        board_id = data.get("boardId")
        try:
            await self._authorize(conn.user_id, board_id)
        except RealtimeError as exc:
            logger.debug("Dropped %s from %s on board %s: %s", event, conn.user_id, board_id, exc)
            return False

        fields, actor_key = entry
        payload = {"boardId": board_id}
        for name in fields:
            payload[name] = data.get(name)
        payload[actor_key] = conn.user.to_payload()
        await self._router.broadcast(board_channel(board_id), event, payload, exclude=connection_id)
        return True
