from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class PresenceStatus(str, Enum):
    ONLINE = "online"
    AWAY = "away"
    BUSY = "busy"
    OFFLINE = "offline"


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    SYSTEM = "system"


class DocumentPermission(str, Enum):
    READ = "read"
    WRITE = "write"
    ADMIN = "admin"


@dataclass(frozen=True)
class UserRecord:
    id: str
    email: str
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None

    def to_payload(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "avatar_url": self.avatar_url,
        }


@dataclass
class MessageRecord:
    id: str
    room_id: str
    sender: UserRecord
    content: str
    message_type: str
    metadata: Optional[dict[str, Any]]
    created_at: datetime

    def to_payload(self) -> dict:
        return {
            "id": self.id,
            "roomId": self.room_id,
            "content": self.content,
            "messageType": self.message_type,
            "metadata": self.metadata,
            "createdAt": self.created_at.isoformat(),
            "sender": self.sender.to_payload(),
        }


@dataclass
class PresenceRecord:
    status: PresenceStatus
    last_seen: datetime


@dataclass
class Connection:
    id: str
    user: UserRecord
    connected_at: datetime

    @property
    def user_id(self) -> str:
        return self.user.id
