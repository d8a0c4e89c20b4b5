from pydantic import BaseModel, ConfigDict, Field
from typing import Any, List, Optional


class EventModel(BaseModel):
    # Clients send camelCase; unknown keys are ignored
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class JoinWorkspaces(EventModel):
    workspace_ids: List[str] = Field(alias="workspaceIds")


class WorkspaceRef(EventModel):
    workspace_id: str = Field(alias="workspaceId", min_length=1)


class PresenceUpdate(WorkspaceRef):
    status: str


class RoomRef(EventModel):
    room_id: str = Field(alias="roomId", min_length=1)


class SendMessage(RoomRef):
    content: str
    message_type: str = Field(default="text", alias="messageType")
    metadata: Optional[dict[str, Any]] = None


class BoardRef(EventModel):
    board_id: str = Field(alias="boardId", min_length=1)


class StartCall(EventModel):
    target_user_id: str = Field(alias="targetUserId", min_length=1)
    workspace_id: str = Field(alias="workspaceId", min_length=1)
    call_type: str = Field(default="1:1", alias="callType")


class CallRef(EventModel):
    call_id: str = Field(alias="callId", min_length=1)


class DocumentRef(EventModel):
    document_id: str = Field(alias="documentId", min_length=1)


class DocumentUpdate(EventModel):
    update: bytes = Field(strict=True)
    document_id: Optional[str] = Field(default=None, alias="documentId")
