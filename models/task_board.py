from sqlalchemy import Column, String, DateTime, ForeignKey, Text
from database import Base
from models.profile import _uuid, _now

class TaskBoard(Base):
    """Only the board -> workspace linkage matters to the realtime layer;
    lists and tasks are owned by the REST CRUD service."""
    __tablename__ = "task_boards"
    id = Column(String(36), primary_key=True, default=_uuid)
    workspace_id = Column(String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    created_by = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime, default=_now)
