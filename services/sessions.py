"""Live connections and per-workspace presence.

This is the only place that can answer "is user X reachable right now". The
in-memory records are authoritative; the ``user_presence`` table is a
best-effort mirror written in the background.
"""
from __future__ import annotations
import logging
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Set, Tuple

from realtime import RoomRouter, channel_id, user_channel, workspace_channel
from .background import BestEffortWriter
from .errors import AuthorizationDenied, NotFound, ProtocolMisuse
from .persistence import PersistenceService
from .types import Connection, PresenceRecord, PresenceStatus, UserRecord

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_status(value: object) -> PresenceStatus:
    try:
        return PresenceStatus(value)
    except ValueError as exc:
        raise ProtocolMisuse(f"Unknown presence status: {value!r}") from exc


class SessionRegistry:
    def __init__(
        self,
        router: RoomRouter,
        persistence: PersistenceService,
        writer: BestEffortWriter,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._router = router
        self._persistence = persistence
        self._writer = writer
        self._clock = clock
        self._connections: Dict[str, Connection] = {}
        self._user_connections: Dict[str, Set[str]] = defaultdict(set)
        self._presence: Dict[Tuple[str, str], PresenceRecord] = {}

    # -- connections -------------------------------------------------------

    def register_connection(
        self,
        user_id: str,
        user_record: UserRecord,
        connection_id: Optional[str] = None,
    ) -> str:
        """Add a connection. Every call creates a new entry (one per tab)."""
        if user_record.id != user_id:
            raise ProtocolMisuse("User record does not match user id")
        connection_id = connection_id or uuid.uuid4().hex
        if connection_id in self._connections:
            raise ProtocolMisuse(f"Connection {connection_id} already registered")
        self._connections[connection_id] = Connection(id=connection_id, user=user_record, connected_at=self._clock())
        self._user_connections[user_id].add(connection_id)
        self._router.join(connection_id, user_channel(user_id))
        logger.info("User %s connected (%s), %d live connection(s)", user_record.email, connection_id, len(self._user_connections[user_id]))
        return connection_id

    async def unregister_connection(self, connection_id: str) -> Optional[Connection]:
        """Remove a connection and demote presence where it was the user's last
        foothold."""
        conn, gone_offline = self.release_connection(connection_id)
        if conn is not None:
            await self.announce_offline(conn, gone_offline)
        return conn

    def release_connection(self, connection_id: str) -> Tuple[Optional[Connection], List[str]]:
        """Synchronous half of ``unregister_connection``: once this returns,
        ``connection()`` raises for the id. Returns the workspaces where the
        user went offline."""
        conn = self._connections.pop(connection_id, None)
        if conn is None:
            return None, []
        workspaces = [channel_id(c) for c in self._router.channels_of(connection_id, "workspace:")]
        self._router.leave_all(connection_id)
        remaining = self._user_connections.get(conn.user_id)
        if remaining is not None:
            remaining.discard(connection_id)
            if not remaining:
                self._user_connections.pop(conn.user_id, None)

        gone_offline = [w for w in workspaces if not self._user_on_workspace(conn.user_id, w)]
        for workspace_id in gone_offline:
            self.set_presence(conn.user_id, workspace_id, PresenceStatus.OFFLINE)
        logger.info("User %s disconnected (%s)", conn.user.email, connection_id)
        return conn, gone_offline

    async def announce_offline(self, conn: Connection, workspace_ids: List[str]) -> None:
        for workspace_id in workspace_ids:
            await self._router.broadcast(
                workspace_channel(workspace_id),
                "user_offline",
                {"userId": conn.user_id, "user": conn.user.to_payload(), "workspaceId": workspace_id},
            )

    def connection(self, connection_id: str) -> Connection:
        conn = self._connections.get(connection_id)
        if conn is None:
            raise NotFound("Unknown connection")
        return conn

    def find_connection(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def connections_for(self, user_id: str) -> Set[str]:
        return set(self._user_connections.get(user_id, ()))

    def is_connected(self, user_id: str) -> bool:
        return bool(self._user_connections.get(user_id))

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    # -- workspaces & presence ---------------------------------------------

    def _user_on_workspace(self, user_id: str, workspace_id: str) -> bool:
        return self._router.any_subscribed(self._user_connections.get(user_id, ()), workspace_channel(workspace_id))

    async def join_workspace(self, connection_id: str, workspace_id: str) -> bool:
        """Subscribe an (already authorized) connection to a workspace and mark
        its user online there. Returns False if it was already subscribed."""
        conn = self.connection(connection_id)
        joined = self._router.join(connection_id, workspace_channel(workspace_id))
        previous = self._presence.get((conn.user_id, workspace_id))
        self.set_presence(conn.user_id, workspace_id, PresenceStatus.ONLINE)
        if previous is None or previous.status != PresenceStatus.ONLINE:
            await self._router.broadcast(
                workspace_channel(workspace_id),
                "user_online",
                {"userId": conn.user_id, "user": conn.user.to_payload(), "workspaceId": workspace_id},
                exclude=connection_id,
            )
        return joined

    async def leave_workspace(self, connection_id: str, workspace_id: str) -> bool:
        conn = self.connection(connection_id)
        if not self._router.leave(connection_id, workspace_channel(workspace_id)):
            return False
        if not self._user_on_workspace(conn.user_id, workspace_id):
            self.set_presence(conn.user_id, workspace_id, PresenceStatus.OFFLINE)
            await self._router.broadcast(
                workspace_channel(workspace_id),
                "user_offline",
                {"userId": conn.user_id, "user": conn.user.to_payload(), "workspaceId": workspace_id},
            )
        return True

    def set_presence(self, user_id: str, workspace_id: str, status: PresenceStatus | str) -> PresenceRecord:
        """Upsert the in-memory record and mirror it in the background.

        A failed mirror write is logged by the writer; it never reaches the
        caller and never rolls the in-memory record back.
        """
        status = parse_status(status)
        record = PresenceRecord(status=status, last_seen=self._clock())
        self._presence[(user_id, workspace_id)] = record
        self._writer.submit(
            self._persistence.upsert_presence(user_id, workspace_id, status.value, record.last_seen),
            f"presence {user_id}@{workspace_id}={status.value}",
        )
        return record

    async def update_presence(self, connection_id: str, workspace_id: str, status: PresenceStatus | str) -> PresenceRecord:
        """Explicit status change requested by a client (away, busy, ...)."""
        status = parse_status(status)
        conn = self.connection(connection_id)
        if not self._router.is_subscribed(connection_id, workspace_channel(workspace_id)):
            raise AuthorizationDenied("Join the workspace before updating presence")
        record = self.set_presence(conn.user_id, workspace_id, status)
        await self._router.broadcast(
            workspace_channel(workspace_id),
            "presence_updated",
            {
                "userId": conn.user_id,
                "user": conn.user.to_payload(),
                "status": status.value,
                "workspaceId": workspace_id,
            },
            exclude=connection_id,
        )
        return record

    def get_presence(self, user_id: str, workspace_id: str) -> Optional[PresenceRecord]:
        return self._presence.get((user_id, workspace_id))

    def list_online(self, workspace_id: str) -> Set[str]:
        return {
            user_id
            for (user_id, w), record in self._presence.items()
            if w == workspace_id and record.status == PresenceStatus.ONLINE
        }

    def workspace_presence(self, workspace_id: str) -> Dict[str, PresenceRecord]:
        return {user_id: record for (user_id, w), record in self._presence.items() if w == workspace_id}
