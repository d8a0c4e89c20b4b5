"""Boundary to the relational store.

The realtime core only needs a handful of filtered lookups and two writes, so
it depends on this protocol rather than on SQLAlchemy directly. Implementations
raise ``PersistenceFailure`` when the store itself fails; "no such row" is
reported through the return value.
"""
from __future__ import annotations
from datetime import datetime
from typing import Any, Optional, Protocol, Sequence

from .types import MessageRecord, UserRecord


class PersistenceService(Protocol):
    async def get_profile(self, user_id: str) -> Optional[UserRecord]: ...

    async def get_membership_role(self, workspace_id: str, user_id: str) -> Optional[str]: ...

    async def list_member_workspaces(self, user_id: str, workspace_ids: Sequence[str]) -> list[str]: ...

    async def is_room_member(self, room_id: str, user_id: str) -> bool: ...

    async def create_message(
        self,
        room_id: str,
        sender_id: str,
        content: str,
        message_type: str,
        metadata: Optional[dict[str, Any]],
    ) -> MessageRecord: ...

    async def get_board_workspace(self, board_id: str) -> Optional[str]: ...

    async def get_document_permission(self, document_id: str, user_id: str) -> Optional[str]: ...

    async def load_document_snapshot(self, document_id: str) -> Optional[bytes]: ...

    async def save_document_snapshot(self, document_id: str, content: bytes, user_id: str) -> None: ...

    async def upsert_presence(self, user_id: str, workspace_id: str, status: str, last_seen: datetime) -> None: ...
