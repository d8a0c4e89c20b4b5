"""Import every realtime table so ``Base.metadata`` knows about all of them."""
from models.profile import Profile
from models.workspace import Workspace, WorkspaceMember
from models.chat import ChatRoom, ChatRoomMember, Message
from models.task_board import TaskBoard
from models.document import Document, DocumentCollaborator
from models.presence import UserPresence

__all__ = [
    "Profile",
    "Workspace",
    "WorkspaceMember",
    "ChatRoom",
    "ChatRoomMember",
    "Message",
    "TaskBoard",
    "Document",
    "DocumentCollaborator",
    "UserPresence",
]
