# models.py
from dataclasses import dataclass
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

AccessLevel = Literal["public", "followers", "friends", "private"]
ACCESS_LEVELS = ("public", "followers", "friends", "private")

HANDLE_PREFIX_CHARS = 16


def display_handle(did: str, handle: Optional[str] = None) -> str:
    """Resolved handle when known, otherwise the start of the DID."""
    if handle:
        return handle
    return did[:HANDLE_PREFIX_CHARS] + "..."


# -------------------- sessions --------------------
@dataclass
class SessionRecord:
    session_id: str
    did: str
    handle: str
    access_jwt: str = ""
    refresh_jwt: str = ""
    email: Optional[str] = None
    active: bool = True
    created_at: int = 0

    @property
    def has_tokens(self) -> bool:
        return bool(self.access_jwt and self.refresh_jwt)


@dataclass(frozen=True)
class SessionUser:
    did: str
    handle: str


@dataclass(frozen=True)
class AuthenticatedRequest:
    """Identity of the caller, resolved from the session cookie."""
    user: SessionUser
    session: SessionRecord


# -------------------- requests --------------------
class LoginRequest(BaseModel):
    did: Optional[str] = None
    handle: Optional[str] = None
    accessJwt: Optional[str] = None
    refreshJwt: Optional[str] = None
    email: Optional[str] = None
    active: Optional[bool] = None
    # alternative: let the server log in to Bluesky
    identifier: Optional[str] = None
    password: Optional[str] = None


class SendMessageRequest(BaseModel):
    receiverId: str
    content: str


class MarkReadRequest(BaseModel):
    messageIds: List[str]


class CreatePostRequest(BaseModel):
    title: str = ""
    content: str
    accessLevel: AccessLevel = "public"
    privacyTechnique: str = "None"
    privacyScore: int = Field(0, ge=0, le=100)


class UpdatePostRequest(BaseModel):
    title: Optional[str] = None
    content: Optional[str] = None


# -------------------- responses --------------------
class MessageOut(BaseModel):
    id: str
    senderId: str
    receiverId: str
    conversationId: str
    content: str
    timestamp: str
    isDelivered: bool
    isRead: bool


class LastMessageOut(BaseModel):
    text: str
    timestamp: str
    isEncrypted: bool = True


class ConversationOut(BaseModel):
    id: str
    participantDid: str
    participantHandle: str
    lastMessage: Optional[LastMessageOut] = None
    unreadCount: int = 0


class ConversationListResponse(BaseModel):
    conversations: List[ConversationOut]


class MessageListResponse(BaseModel):
    messages: List[MessageOut]


class SendMessageResponse(BaseModel):
    messageId: str
    conversationId: str
    message: MessageOut


class PostOut(BaseModel):
    id: int
    authorId: str
    title: str
    content: str
    accessLevel: AccessLevel
    privacyScore: int
    privacyTechnique: str
    atProtocolUri: Optional[str] = None
    isOwn: bool = False
    createdAt: str
    updatedAt: str


class PostListResponse(BaseModel):
    posts: List[PostOut]


class CreatePostResponse(BaseModel):
    id: int
    accessLevel: AccessLevel
    privacyScore: int
    message: str
    atProtocolUri: Optional[str] = None
    blueskyUrl: Optional[str] = None
    warning: Optional[str] = None
