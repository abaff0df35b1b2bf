from pydantic import BaseModel, Field
from typing import List, Optional

class Account(BaseModel):
    id: str
    email: str
    username: str
    created_at: int
    is_online: bool = False
    last_seen: Optional[int] = None
    last_activity: Optional[int] = None

class RegisterRequest(BaseModel):
    email: str
    username: str
    password: str

class LoginRequest(BaseModel):
    email: str
    password: str

class LoginResponse(BaseModel):
    account: Account
    token: str
    token_type: str = "bearer"

class UpdateProfileRequest(BaseModel):
    username: str

class Message(BaseModel):
    id: str
    conversation_id: str
    seq: int
    sender_id: str
    sender_name: str
    timestamp: int
    text: Optional[str] = None
    image_url: Optional[str] = None

class SendMessageRequest(BaseModel):
    text: Optional[str] = None
    image_url: Optional[str] = None

class DirectConversation(BaseModel):
    id: str
    participant: Optional[Account] = None
    last_message: Optional[Message] = None

class CreateGroupRequest(BaseModel):
    name: str
    visibility: str = "public"  # "public" or "private"
    password: Optional[str] = None

class JoinGroupRequest(BaseModel):
    password: Optional[str] = None

class Group(BaseModel):
    id: str
    name: str
    visibility: str
    created_by: str
    created_at: int
    member_count: int
    is_member: bool = False

class GroupMember(BaseModel):
    account_id: str
    username: str
    email: Optional[str] = None
    role: str
    joined_at: int
    is_online: bool = False
    last_seen: Optional[int] = None

class GroupDetail(Group):
    members: List[GroupMember] = Field(default_factory=list)

class LeaveGroupResult(BaseModel):
    status: str
    group_id: str
    group_deleted: bool
    promoted: Optional[str] = None

class UnreadEntry(BaseModel):
    conversation_id: str
    kind: str
    unread: int

class UnreadSummary(BaseModel):
    conversations: List[UnreadEntry] = Field(default_factory=list)
    total: int = 0

class MarkReadResult(BaseModel):
    conversation_id: str
    last_read_at: int
    unread: int

class UploadResult(BaseModel):
    url: str
    path: str
    size: int
    content_type: str
