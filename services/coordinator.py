"""Single owner of the realtime state and the client event dispatcher.

The transport (Socket.IO) only authenticates, then hands connections and raw
events to a ``Coordinator``. Every in-memory structure hangs off one instance,
so tests can build as many isolated coordinators as they like.
"""
from __future__ import annotations
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from realtime import Emitter, RoomRouter, user_channel
from schemas.realtime import (
    BoardRef,
    CallRef,
    DocumentRef,
    DocumentUpdate,
    JoinWorkspaces,
    PresenceUpdate,
    RoomRef,
    SendMessage,
    StartCall,
    WorkspaceRef,
)
from .background import BestEffortWriter
from .calls import SIGNAL_EVENTS, CallSessionManager
from .chat import ChatRelay
from .documents import DocumentBridge
from .errors import ProtocolMisuse, RealtimeError
from .membership import MembershipGate
from .persistence import PersistenceService
from .sessions import SessionRegistry
from .tasks import TASK_EVENTS, TaskEventRelay
from .types import UserRecord
from .whiteboard import WHITEBOARD_EVENTS, WhiteboardRelay

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


M = TypeVar("M", bound=BaseModel)
Handler = Callable[[str, Any], Awaitable[None]]

CALL_EVENTS = frozenset(
    {
        "start_video_call",
        "accept_call",
        "reject_call",
        "end_call",
        "join_group_call",
        "leave_group_call",
        "join_user_room",
        *SIGNAL_EVENTS,
    }
)


def _parse(model: Type[M], data: Any, bare_field: Optional[str] = None) -> M:
    """Validate an event payload; a bare string is accepted for single-id events."""
    if bare_field is not None and isinstance(data, str):
        data = {bare_field: data}
    if not isinstance(data, dict):
        raise ProtocolMisuse("Event payload must be an object")
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise ProtocolMisuse(f"Invalid payload: {exc.error_count()} error(s)") from exc


class Coordinator:
    def __init__(
        self,
        persistence: PersistenceService,
        emitter: Emitter,
        snapshot_every: int = 10,
        snapshot_interval: float = 30.0,
        max_update_bytes: int = 1024 * 1024,
        clock: Callable[[], datetime] = _utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.persistence = persistence
        self.router = RoomRouter(emitter)
        self.writer = BestEffortWriter()
        self.gate = MembershipGate(persistence)
        self.sessions = SessionRegistry(self.router, persistence, self.writer, clock=clock)
        self.chat = ChatRelay(self.router, self.sessions, persistence)
        self.tasks = TaskEventRelay(self.router, self.sessions, self.gate, persistence)
        self.whiteboard = WhiteboardRelay(self.router)
        self.calls = CallSessionManager(self.router, self.sessions, self.gate, clock=clock)
        self.documents = DocumentBridge(
            self.router,
            self.sessions,
            persistence,
            self.writer,
            snapshot_every=snapshot_every,
            snapshot_interval=snapshot_interval,
            max_update_bytes=max_update_bytes,
            clock=monotonic,
        )
        self._handlers: Dict[str, Handler] = {
            "join_workspaces": self._join_workspaces,
            "leave_workspace": self._leave_workspace,
            "update_presence": self._update_presence,
            "join_chat_room": self._join_chat_room,
            "leave_chat_room": self._leave_chat_room,
            "send_message": self._send_message,
            "typing_start": self._typing_start,
            "typing_stop": self._typing_stop,
            "join_task_board": self._join_task_board,
            "leave_task_board": self._leave_task_board,
            "start_video_call": self._start_video_call,
            "accept_call": self._accept_call,
            "reject_call": self._reject_call,
            "end_call": self._end_call,
            "join_group_call": self._join_group_call,
            "leave_group_call": self._leave_group_call,
            "join_user_room": self._join_user_room,
            "document_join": self._document_join,
            "document_leave": self._document_leave,
            "document_update": self._document_update,
        }
        for event in TASK_EVENTS:
            self._handlers[event] = self._task_event(event)
        for event in WHITEBOARD_EVENTS:
            self._handlers[event] = self._whiteboard_event(event)
        for event in SIGNAL_EVENTS:
            self._handlers[event] = self._signal(event)

    # -- connection lifecycle ------------------------------------------------

    async def connect(self, user: UserRecord, connection_id: Optional[str] = None) -> str:
        return self.sessions.register_connection(user.id, user, connection_id)

    async def disconnect(self, connection_id: str) -> None:
        """Unwind documents, then calls (while the connection is still
        registered), then the registry entry and presence.

        Every membership is released before the first await, so a handler of
        the same connection resuming meanwhile finds it gone."""
        conn = self.sessions.find_connection(connection_id)
        if conn is None:
            return
        documents = self.documents.release_connection(connection_id)
        calls = self.calls.release_connection(conn)
        _, gone_offline = self.sessions.release_connection(connection_id)

        await self.documents.announce_departure(conn, documents)
        await self.calls.announce_departure(conn, calls)
        await self.sessions.announce_offline(conn, gone_offline)

    async def shutdown(self) -> None:
        await self.writer.drain()

    @property
    def events(self) -> frozenset:
        return frozenset(self._handlers)

    # -- dispatch --------------------------------------------------------------

    async def dispatch(self, connection_id: str, event: str, data: Any = None) -> bool:
        """Run one client event. Failures turn into an error event for the
        requesting connection only; returns whether the handler succeeded."""
        error_event = "call_error" if event in CALL_EVENTS else "error"
        handler = self._handlers.get(event)
        try:
            if handler is None:
                raise ProtocolMisuse(f"Unknown event: {event}")
            await handler(connection_id, data)
        except RealtimeError as exc:
            logger.info("%s from %s failed: %s (%s)", event, connection_id, exc.message, exc.code)
            await self.router.send(connection_id, error_event, exc.to_payload())
            return False
        except Exception:
            logger.exception("Unhandled error in %s from %s", event, connection_id)
            await self.router.send(connection_id, error_event, RealtimeError().to_payload())
            return False
        return True

    # -- workspaces & presence -------------------------------------------------

    async def _join_workspaces(self, connection_id: str, data: Any) -> None:
        conn = self.sessions.connection(connection_id)
        if isinstance(data, list):
            data = {"workspaceIds": data}
        payload = _parse(JoinWorkspaces, data)
        allowed = await self.gate.allowed_workspaces(conn.user_id, payload.workspace_ids)
        for workspace_id in allowed:
            await self.sessions.join_workspace(connection_id, workspace_id)
        await self.router.send(connection_id, "workspaces_joined", {"workspaceIds": allowed})

    async def _leave_workspace(self, connection_id: str, data: Any) -> None:
        payload = _parse(WorkspaceRef, data, "workspaceId")
        await self.sessions.leave_workspace(connection_id, payload.workspace_id)

    async def _update_presence(self, connection_id: str, data: Any) -> None:
        conn = self.sessions.connection(connection_id)
        payload = _parse(PresenceUpdate, data)
        await self.gate.check_access(conn.user_id, payload.workspace_id)
        await self.sessions.update_presence(connection_id, payload.workspace_id, payload.status)

    # -- chat ------------------------------------------------------------------

    async def _join_chat_room(self, connection_id: str, data: Any) -> None:
        await self.chat.join_room(connection_id, _parse(RoomRef, data, "roomId").room_id)

    async def _leave_chat_room(self, connection_id: str, data: Any) -> None:
        await self.chat.leave_room(connection_id, _parse(RoomRef, data, "roomId").room_id)

    async def _send_message(self, connection_id: str, data: Any) -> None:
        payload = _parse(SendMessage, data)
        await self.chat.send_message(
            connection_id, payload.room_id, payload.content, payload.message_type, payload.metadata
        )

    async def _typing_start(self, connection_id: str, data: Any) -> None:
        await self.chat.typing(connection_id, _parse(RoomRef, data, "roomId").room_id, True)

    async def _typing_stop(self, connection_id: str, data: Any) -> None:
        await self.chat.typing(connection_id, _parse(RoomRef, data, "roomId").room_id, False)

    # -- task boards & whiteboard ----------------------------------------------

    async def _join_task_board(self, connection_id: str, data: Any) -> None:
        await self.tasks.join_board(connection_id, _parse(BoardRef, data, "boardId").board_id)

    async def _leave_task_board(self, connection_id: str, data: Any) -> None:
        await self.tasks.leave_board(connection_id, _parse(BoardRef, data, "boardId").board_id)

    def _task_event(self, event: str) -> Handler:
        async def handler(connection_id: str, data: Any) -> None:
            await self.tasks.relay(connection_id, event, data)
        return handler

    def _whiteboard_event(self, event: str) -> Handler:
        async def handler(connection_id: str, data: Any) -> None:
            await self.whiteboard.relay(connection_id, event, data)
        return handler

    # -- calls -------------------------------------------------------------------

    async def _start_video_call(self, connection_id: str, data: Any) -> None:
        payload = _parse(StartCall, data)
        await self.calls.start_call(connection_id, payload.target_user_id, payload.workspace_id, payload.call_type)

    async def _accept_call(self, connection_id: str, data: Any) -> None:
        await self.calls.accept_call(connection_id, _parse(CallRef, data, "callId").call_id)

    async def _reject_call(self, connection_id: str, data: Any) -> None:
        await self.calls.reject_call(connection_id, _parse(CallRef, data, "callId").call_id)

    async def _end_call(self, connection_id: str, data: Any) -> None:
        await self.calls.end_call(connection_id, _parse(CallRef, data, "callId").call_id)

    async def _join_group_call(self, connection_id: str, data: Any) -> None:
        await self.calls.join_group_call(connection_id, _parse(WorkspaceRef, data, "workspaceId").workspace_id)

    async def _leave_group_call(self, connection_id: str, data: Any) -> None:
        await self.calls.leave_group_call(connection_id, _parse(CallRef, data, "callId").call_id)

    async def _join_user_room(self, connection_id: str, data: Any) -> None:
        conn = self.sessions.connection(connection_id)
        self.router.join(connection_id, user_channel(conn.user_id))
        await self.router.send(connection_id, "user_room_joined", {"userId": conn.user_id})

    def _signal(self, event: str) -> Handler:
        async def handler(connection_id: str, data: Any) -> None:
            await self.calls.relay_signal(connection_id, event, data)
        return handler

    # -- documents ---------------------------------------------------------------

    async def _document_join(self, connection_id: str, data: Any) -> None:
        await self.documents.join_document(connection_id, _parse(DocumentRef, data, "documentId").document_id)

    async def _document_leave(self, connection_id: str, data: Any) -> None:
        await self.documents.leave_document(connection_id, _parse(DocumentRef, data, "documentId").document_id)

    async def _document_update(self, connection_id: str, data: Any) -> None:
        if isinstance(data, (bytes, bytearray, memoryview)):
            data = {"update": bytes(data)}
        payload = _parse(DocumentUpdate, data)
        await self.documents.relay_update(connection_id, payload.update, payload.document_id)
