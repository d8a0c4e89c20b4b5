from sqlalchemy import Column, String, DateTime, ForeignKey, LargeBinary, UniqueConstraint
from database import Base
from models.profile import _uuid, _now

class Document(Base):
    __tablename__ = "documents"
    id = Column(String(36), primary_key=True, default=_uuid)
    workspace_id = Column(String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String, nullable=False)
    # Last collaborative snapshot, opaque bytes
    content = Column(LargeBinary, nullable=True)
    created_by = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False)
    last_modified_by = Column(String(36), ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, default=_now)
    updated_at = Column(DateTime, default=_now)

class DocumentCollaborator(Base):
    __tablename__ = "document_collaborators"
    __table_args__ = (
        UniqueConstraint("document_id", "user_id", name="uq_document_collaborators_document_user"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    document_id = Column(String(36), ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    permission = Column(String(10), nullable=False, default="read")  # 'read' | 'write' | 'admin'
    added_at = Column(DateTime, default=_now)
