from sqlalchemy import Column, String, DateTime, ForeignKey, UniqueConstraint
from database import Base
from models.profile import _uuid, _now

class UserPresence(Base):
    """Best-effort mirror of the in-memory presence records."""
    __tablename__ = "user_presence"
    __table_args__ = (
        UniqueConstraint("user_id", "workspace_id", name="uq_user_presence_user_workspace"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    workspace_id = Column(String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(String(10), nullable=False, default="offline")  # 'online' | 'away' | 'busy' | 'offline'
    last_seen = Column(DateTime, default=_now)
