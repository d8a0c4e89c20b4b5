from sqlalchemy import Column, String, DateTime, ForeignKey, Text, Index, UniqueConstraint
from sqlalchemy.types import JSON as GenericJSON
from database import Base
from models.profile import _uuid, _now

class ChatRoom(Base):
    __tablename__ = "chat_rooms"
    id = Column(String(36), primary_key=True, default=_uuid)
    workspace_id = Column(String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    type = Column(String(10), nullable=False, default="general")  # 'general' | 'direct' | 'group'
    created_by = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime, default=_now)

class ChatRoomMember(Base):
    __tablename__ = "chat_room_members"
    __table_args__ = (
        UniqueConstraint("room_id", "user_id", name="uq_chat_room_members_room_user"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    room_id = Column(String(36), ForeignKey("chat_rooms.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    joined_at = Column(DateTime, default=_now)

class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_room_created", "room_id", "created_at"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    room_id = Column(String(36), ForeignKey("chat_rooms.id", ondelete="CASCADE"), nullable=False)
    sender_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False)
    content = Column(Text, nullable=False)
    message_type = Column(String(10), nullable=False, default="text")  # 'text' | 'image' | 'file' | 'system'
    # `metadata` is reserved on declarative classes
    extra = Column("metadata", GenericJSON, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)
