"""Collaborative document bridge.

Document updates are opaque bytes produced by the client-side CRDT; merging
and conflict resolution belong to that format. The bridge only:

* checks collaborator permission on join,
* keeps the ordered update log of each open document (seeded from the last
  snapshot),
* relays each update to the other editors with its position in the log,
* persists the log as a snapshot every ``snapshot_every`` updates of a
  session or ``snapshot_interval`` seconds, whichever comes first, and once
  more when the last editor leaves.

Snapshots are fire-and-forget: a failed write is logged and never blocks or
retries the relay.
"""
from __future__ import annotations
import asyncio
import logging
import struct
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from realtime import RoomRouter, document_channel
from .background import BestEffortWriter
from .errors import AuthorizationDenied, NotFound, ProtocolMisuse
from .persistence import PersistenceService
from .sessions import SessionRegistry
from .types import Connection, DocumentPermission

logger = logging.getLogger(__name__)

_FRAME = struct.Struct(">I")


def encode_snapshot(updates: Sequence[bytes]) -> bytes:
    """Frame an ordered update log as length-prefixed chunks."""
    parts = []
    for update in updates:
        parts.append(_FRAME.pack(len(update)))
        parts.append(bytes(update))
    return b"".join(parts)


def decode_snapshot(blob: bytes) -> List[bytes]:
    updates = []
    offset = 0
    while offset < len(blob):
        if offset + _FRAME.size > len(blob):
            raise ValueError("Truncated snapshot frame header")
        (size,) = _FRAME.unpack_from(blob, offset)
        offset += _FRAME.size
        if offset + size > len(blob):
            raise ValueError("Truncated snapshot frame body")
        updates.append(bytes(blob[offset:offset + size]))
        offset += size
    return updates


@dataclass
class DocumentEditSession:
    connection_id: str
    document_id: str
    user_id: str
    permission: DocumentPermission
    last_snapshot_at: float
    update_count: int = 0


@dataclass
class LiveDocument:
    document_id: str
    updates: List[bytes] = field(default_factory=list)
    dirty: bool = False

    @property
    def version(self) -> int:
        return len(self.updates)


class DocumentBridge:
    def __init__(
        self,
        router: RoomRouter,
        sessions: SessionRegistry,
        persistence: PersistenceService,
        writer: BestEffortWriter,
        snapshot_every: int = 10,
        snapshot_interval: float = 30.0,
        max_update_bytes: int = 1024 * 1024,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._router = router
        self._sessions = sessions
        self._persistence = persistence
        self._writer = writer
        self._snapshot_every = snapshot_every
        self._snapshot_interval = snapshot_interval
        self._max_update_bytes = max_update_bytes
        self._clock = clock
        # connection id -> document id -> session
        self._edit_sessions: Dict[str, Dict[str, DocumentEditSession]] = {}
        self._documents: Dict[str, LiveDocument] = {}
        self._loading: Dict[str, asyncio.Task] = {}

    # -- hydration -------------------------------------------------------------

    async def _live_document(self, document_id: str) -> LiveDocument:
        doc = self._documents.get(document_id)
        if doc is not None:
            return doc
        task = self._loading.get(document_id)
        if task is None:
            # Concurrent first joins share one load
            task = asyncio.get_running_loop().create_task(self._hydrate(document_id))
            self._loading[document_id] = task
            task.add_done_callback(lambda _t: self._loading.pop(document_id, None))
        return await task

    async def _hydrate(self, document_id: str) -> LiveDocument:
        blob = await self._persistence.load_document_snapshot(document_id)
        updates: List[bytes] = []
        if blob:
            try:
                updates = decode_snapshot(blob)
            except ValueError:
                # Content written by something else: keep it as one opaque update
                logger.warning("Document %s snapshot is not framed; seeding it whole", document_id)
                updates = [blob]
        doc = self._documents.setdefault(document_id, LiveDocument(document_id=document_id, updates=updates))
        logger.info("Document %s hydrated with %d update(s)", document_id, doc.version)
        return doc

    # -- join / leave ------------------------------------------------------------

    async def join_document(self, connection_id: str, document_id: str) -> DocumentEditSession:
        conn = self._sessions.connection(connection_id)
        if not document_id:
            raise ProtocolMisuse("documentId is required")
        raw = await self._persistence.get_document_permission(document_id, conn.user_id)
        try:
            permission = DocumentPermission(raw)
        except ValueError as exc:
            raise AuthorizationDenied("No access to this document") from exc
        doc = await self._live_document(document_id)
        if self._sessions.find_connection(connection_id) is None:
            # Closed while hydrating: don't keep a document nobody edits
            self._evict_if_idle(document_id, conn.user_id)
            raise NotFound("Unknown connection")

        # From here to the first await: register, subscribe and copy the log
        # in one step, so the sync plus later numbered updates cover every edit.
        doc = self._documents.setdefault(document_id, doc)
        per_conn = self._edit_sessions.setdefault(connection_id, {})
        session = per_conn.get(document_id)
        rejoin = session is not None
        if session is None:
            session = DocumentEditSession(
                connection_id=connection_id,
                document_id=document_id,
                user_id=conn.user_id,
                permission=permission,
                last_snapshot_at=self._clock(),
            )
            per_conn[document_id] = session
        else:
            session.permission = permission
        self._router.join(connection_id, document_channel(document_id))
        sync = {"documentId": document_id, "updates": list(doc.updates), "version": doc.version}
        logger.info("User %s joined document %s with %s permission", conn.user_id, document_id, permission.value)

        await self._router.send(connection_id, "document_joined", {"documentId": document_id, "permission": permission.value})
        await self._router.send(connection_id, "document_sync", sync)
        if not rejoin:
            await self._router.broadcast(
                document_channel(document_id),
                "collaborator_joined",
                {"userId": conn.user_id, "user": conn.user.to_payload(), "documentId": document_id},
                exclude=connection_id,
            )
        return session

    async def leave_document(self, connection_id: str, document_id: str) -> None:
        conn = self._sessions.connection(connection_id)
        left = self._detach(connection_id, document_id)
        if left:
            await self._router.broadcast(
                document_channel(document_id),
                "collaborator_left",
                {"userId": conn.user_id, "user": conn.user.to_payload(), "documentId": document_id},
            )
        await self._router.send(connection_id, "document_left", {"documentId": document_id})

    def release_connection(self, connection_id: str) -> List[str]:
        """Drop every edit session of the connection without awaiting;
        returns the documents it was editing."""
        document_ids = list(self._edit_sessions.get(connection_id, {}))
        for document_id in document_ids:
            self._detach(connection_id, document_id)
        return document_ids

    async def announce_departure(self, conn: Connection, document_ids: List[str]) -> None:
        for document_id in document_ids:
            await self._router.broadcast(
                document_channel(document_id),
                "collaborator_left",
                {"userId": conn.user_id, "user": conn.user.to_payload(), "documentId": document_id},
            )

    def _detach(self, connection_id: str, document_id: str) -> bool:
        per_conn = self._edit_sessions.get(connection_id, {})
        session = per_conn.pop(document_id, None)
        if not per_conn:
            self._edit_sessions.pop(connection_id, None)
        self._router.leave(connection_id, document_channel(document_id))
        if session is None:
            return False
        self._evict_if_idle(document_id, session.user_id)
        return True

    def _evict_if_idle(self, document_id: str, user_id: str) -> None:
        if self._router.subscribers(document_channel(document_id)):
            return
        # Last editor gone: write what's pending and drop the live state
        doc = self._documents.pop(document_id, None)
        if doc is not None and doc.dirty:
            self._snapshot(doc, user_id)

    # -- relay -------------------------------------------------------------------

    def _session_for(self, connection_id: str, document_id: Optional[str]) -> DocumentEditSession:
        per_conn = self._edit_sessions.get(connection_id, {})
        if document_id is None:
            if len(per_conn) != 1:
                raise ProtocolMisuse("documentId is required")
            return next(iter(per_conn.values()))
        session = per_conn.get(document_id)
        if session is None:
            raise NotFound("Join the document before sending updates")
        return session

    async def relay_update(self, connection_id: str, update: bytes, document_id: Optional[str] = None) -> int:
        """Forward one update to the document's other editors; returns its log position."""
        conn = self._sessions.connection(connection_id)
        if not isinstance(update, (bytes, bytearray, memoryview)):
            raise ProtocolMisuse("Document updates must be binary")
        update = bytes(update)
        if not update:
            raise ProtocolMisuse("Empty document update")
        if len(update) > self._max_update_bytes:
            raise ProtocolMisuse("Document update too large")
        session = self._session_for(connection_id, document_id)
        if session.permission is DocumentPermission.READ:
            raise AuthorizationDenied("Read-only access to this document")
        doc = self._documents[session.document_id]

        seq = doc.version
        doc.updates.append(update)
        doc.dirty = True
        session.update_count += 1
        now = self._clock()
        if (
            session.update_count % self._snapshot_every == 0
            or now - session.last_snapshot_at > self._snapshot_interval
        ):
            session.last_snapshot_at = now
            self._snapshot(doc, conn.user_id)

        await self._router.broadcast(
            document_channel(session.document_id),
            "document_update",
            {"documentId": session.document_id, "update": update, "seq": seq, "fromUserId": conn.user_id},
            exclude=connection_id,
        )
        return seq

    def _snapshot(self, doc: LiveDocument, user_id: str) -> None:
        content = encode_snapshot(doc.updates)
        doc.dirty = False
        logger.debug("Snapshot of document %s at version %d", doc.document_id, doc.version)
        self._writer.submit(
            self._persistence.save_document_snapshot(doc.document_id, content, user_id),
            f"snapshot of document {doc.document_id}",
        )

    # -- queries -------------------------------------------------------------------

    def edit_session(self, connection_id: str, document_id: str) -> Optional[DocumentEditSession]:
        return self._edit_sessions.get(connection_id, {}).get(document_id)

    def collaborators(self, document_id: str) -> List[str]:
        users = {
            self._edit_sessions[c][document_id].user_id
            for c in self._router.subscribers(document_channel(document_id))
            if document_id in self._edit_sessions.get(c, {})
        }
        return sorted(users)

    def has_access(self, document_id: str, user_id: str) -> bool:
        return user_id in self.collaborators(document_id)

    def live_document(self, document_id: str) -> Optional[LiveDocument]:
        return self._documents.get(document_id)
