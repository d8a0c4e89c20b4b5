"""SQLAlchemy implementation of ``PersistenceService``.

Sessions are synchronous, so every call is pushed to the threadpool with
``run_in_threadpool`` and the dispatch loop keeps serving other connections.
ORM rows never leave the session: results are copied into plain records.
"""
from __future__ import annotations
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Sequence, TypeVar

from fastapi.concurrency import run_in_threadpool
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from models.chat import ChatRoomMember, Message
from models.document import Document, DocumentCollaborator
from models.presence import UserPresence
from models.profile import Profile
from models.task_board import TaskBoard
from models.workspace import WorkspaceMember
from .errors import NotFound, PersistenceFailure
from .types import MessageRecord, UserRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _profile_record(profile: Profile) -> UserRecord:
    return UserRecord(
        id=profile.id,
        email=profile.email,
        full_name=profile.full_name,
        avatar_url=profile.avatar_url,
    )


class SqlPersistence:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        return await run_in_threadpool(self._in_session, fn, *args)

    def _in_session(self, fn: Callable[..., T], *args: Any) -> T:
        db: Session = self._session_factory()
        try:
            return fn(db, *args)
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning("Persistence call %s failed: %s", fn.__name__, exc)
            raise PersistenceFailure() from exc
        finally:
            db.close()

    # -- lookups -----------------------------------------------------------

    async def get_profile(self, user_id: str) -> Optional[UserRecord]:
        return await self._run(self._get_profile, user_id)

    @staticmethod
    def _get_profile(db: Session, user_id: str) -> Optional[UserRecord]:
        profile = db.get(Profile, user_id)
        return _profile_record(profile) if profile else None

    async def get_membership_role(self, workspace_id: str, user_id: str) -> Optional[str]:
        return await self._run(self._get_membership_role, workspace_id, user_id)

    @staticmethod
    def _get_membership_role(db: Session, workspace_id: str, user_id: str) -> Optional[str]:
        row = (
            db.query(WorkspaceMember.role)
            .filter(WorkspaceMember.workspace_id == workspace_id, WorkspaceMember.user_id == user_id)
            .first()
        )
        return row[0] if row else None

    async def list_member_workspaces(self, user_id: str, workspace_ids: Sequence[str]) -> list[str]:
        if not workspace_ids:
            return []
        return await self._run(self._list_member_workspaces, user_id, list(workspace_ids))

    @staticmethod
    def _list_member_workspaces(db: Session, user_id: str, workspace_ids: list[str]) -> list[str]:
        rows = (
            db.query(WorkspaceMember.workspace_id)
            .filter(WorkspaceMember.user_id == user_id, WorkspaceMember.workspace_id.in_(workspace_ids))
            .all()
        )
        found = {r[0] for r in rows}
        # Keep the caller's ordering
        return [w for w in workspace_ids if w in found]

    async def is_room_member(self, room_id: str, user_id: str) -> bool:
        return await self._run(self._is_room_member, room_id, user_id)

    @staticmethod
    def _is_room_member(db: Session, room_id: str, user_id: str) -> bool:
        row = (
            db.query(ChatRoomMember.id)
            .filter(ChatRoomMember.room_id == room_id, ChatRoomMember.user_id == user_id)
            .first()
        )
        return row is not None

    async def get_board_workspace(self, board_id: str) -> Optional[str]:
        return await self._run(self._get_board_workspace, board_id)

    @staticmethod
    def _get_board_workspace(db: Session, board_id: str) -> Optional[str]:
        row = db.query(TaskBoard.workspace_id).filter(TaskBoard.id == board_id).first()
        return row[0] if row else None

    async def get_document_permission(self, document_id: str, user_id: str) -> Optional[str]:
        return await self._run(self._get_document_permission, document_id, user_id)

    @staticmethod
    def _get_document_permission(db: Session, document_id: str, user_id: str) -> Optional[str]:
        row = (
            db.query(DocumentCollaborator.permission)
            .filter(DocumentCollaborator.document_id == document_id, DocumentCollaborator.user_id == user_id)
            .first()
        )
        return row[0] if row else None

    async def load_document_snapshot(self, document_id: str) -> Optional[bytes]:
        return await self._run(self._load_document_snapshot, document_id)

    @staticmethod
    def _load_document_snapshot(db: Session, document_id: str) -> Optional[bytes]:
        row = db.query(Document.content).filter(Document.id == document_id).first()
        if not row or row[0] is None:
            return None
        return bytes(row[0])

    # -- writes ------------------------------------------------------------

    async def create_message(
        self,
        room_id: str,
        sender_id: str,
        content: str,
        message_type: str,
        metadata: Optional[dict[str, Any]],
    ) -> MessageRecord:
        return await self._run(self._create_message, room_id, sender_id, content, message_type, metadata)

    @staticmethod
    def _create_message(
        db: Session,
        room_id: str,
        sender_id: str,
        content: str,
        message_type: str,
        metadata: Optional[dict[str, Any]],
    ) -> MessageRecord:
        sender = db.get(Profile, sender_id)
        if sender is None:
            raise NotFound("Sender profile not found")
        message = Message(
            room_id=room_id,
            sender_id=sender_id,
            content=content,
            message_type=message_type,
            extra=metadata,
            created_at=datetime.now(timezone.utc),
        )
        db.add(message)
        db.commit()
        db.refresh(message)
        return MessageRecord(
            id=message.id,
            room_id=message.room_id,
            sender=_profile_record(sender),
            content=message.content,
            message_type=message.message_type,
            metadata=message.extra,
            created_at=message.created_at,
        )

    async def save_document_snapshot(self, document_id: str, content: bytes, user_id: str) -> None:
        await self._run(self._save_document_snapshot, document_id, content, user_id)

    @staticmethod
    def _save_document_snapshot(db: Session, document_id: str, content: bytes, user_id: str) -> None:
        updated = (
            db.query(Document)
            .filter(Document.id == document_id)
            .update(
                {
                    Document.content: content,
                    Document.last_modified_by: user_id,
                    Document.updated_at: datetime.now(timezone.utc),
                },
                synchronize_session=False,
            )
        )
        if not updated:
            db.rollback()
            raise NotFound(f"Document {document_id} not found")
        db.commit()

    async def upsert_presence(self, user_id: str, workspace_id: str, status: str, last_seen: datetime) -> None:
        await self._run(self._upsert_presence, user_id, workspace_id, status, last_seen)

    @staticmethod
    def _upsert_presence(db: Session, user_id: str, workspace_id: str, status: str, last_seen: datetime) -> None:
        values = {UserPresence.status: status, UserPresence.last_seen: last_seen}
        updated = (
            db.query(UserPresence)
            .filter(UserPresence.user_id == user_id, UserPresence.workspace_id == workspace_id)
            .update(values, synchronize_session=False)
        )
        if updated:
            db.commit()
            return
        db.add(UserPresence(user_id=user_id, workspace_id=workspace_id, status=status, last_seen=last_seen))
        try:
            db.commit()
        except IntegrityError:
            # Lost the insert race to another writer; the row exists now
            db.rollback()
            db.query(UserPresence).filter(
                UserPresence.user_id == user_id, UserPresence.workspace_id == workspace_id
            ).update(values, synchronize_session=False)
            db.commit()
