from __future__ import annotations
import logging
from typing import Any, Optional

from realtime import RoomRouter, room_channel
from .errors import AuthorizationDenied, ProtocolMisuse
from .persistence import PersistenceService
from .sessions import SessionRegistry
from .types import MessageRecord, MessageType

logger = logging.getLogger(__name__)


class ChatRelay:
    """Persist-then-broadcast chat.

    Ids and timestamps come from the store, never from the client. Display
    order is whatever order the store assigned; equal timestamps fall back to
    arrival order on the client.
    """

    def __init__(self, router: RoomRouter, sessions: SessionRegistry, persistence: PersistenceService) -> None:
        self._router = router
        self._sessions = sessions
        self._persistence = persistence

    async def _require_member(self, user_id: str, room_id: str) -> None:
        if not room_id or not await self._persistence.is_room_member(room_id, user_id):
            raise AuthorizationDenied("Not a member of this chat room")

    async def join_room(self, connection_id: str, room_id: str) -> None:
        conn = self._sessions.connection(connection_id)
        await self._require_member(conn.user_id, room_id)
        # The socket may have closed during the lookup
        self._sessions.connection(connection_id)
        self._router.join(connection_id, room_channel(room_id))
        await self._router.send(connection_id, "chat_room_joined", {"roomId": room_id})

    async def leave_room(self, connection_id: str, room_id: str) -> None:
        self._sessions.connection(connection_id)
        self._router.leave(connection_id, room_channel(room_id))
        await self._router.send(connection_id, "chat_room_left", {"roomId": room_id})

    async def send_message(
        self,
        connection_id: str,
        room_id: str,
        content: str,
        message_type: str = MessageType.TEXT.value,
        metadata: Optional[dict[str, Any]] = None,
    ) -> MessageRecord:
        """Persist a message, then fan it out to ``room:<id>``.

        Nothing is broadcast unless the membership check and the insert both
        succeeded. The sender's other connections get the echo too.
        """
        conn = self._sessions.connection(connection_id)
        if not isinstance(content, str) or not content.strip():
            raise ProtocolMisuse("Message content is required")
        try:
            message_type = MessageType(message_type).value
        except ValueError as exc:
            raise ProtocolMisuse(f"Unknown message type: {message_type!r}") from exc

        await self._require_member(conn.user_id, room_id)
        # PersistenceFailure propagates to the dispatcher as a scoped error
        message = await self._persistence.create_message(room_id, conn.user_id, content, message_type, metadata)
        await self._router.broadcast(room_channel(room_id), "new_message", message.to_payload())
        return message

    async def typing(self, connection_id: str, room_id: str, is_typing: bool) -> None:
        conn = self._sessions.connection(connection_id)
        # Only subscribers may signal typing; anything else is dropped quietly
        if not self._router.is_subscribed(connection_id, room_channel(room_id)):
            return
        await self._router.broadcast(
            room_channel(room_id),
            "user_typing",
            {"userId": conn.user_id, "user": conn.user.to_payload(), "roomId": room_id, "isTyping": bool(is_typing)},
            exclude=connection_id,
        )
