from sqlalchemy import Column, String, DateTime, ForeignKey, Text, UniqueConstraint
from database import Base
from models.profile import _uuid, _now

class Workspace(Base):
    __tablename__ = "workspaces"
    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    owner_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime, default=_now)

class WorkspaceMember(Base):
    __tablename__ = "workspace_members"
    __table_args__ = (
        UniqueConstraint("workspace_id", "user_id", name="uq_workspace_members_workspace_user"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    workspace_id = Column(String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(String(10), nullable=False, default="member")  # 'owner' | 'admin' | 'member'
    joined_at = Column(DateTime, default=_now)
