# services/models_db.py
from typing import Optional
from sqlalchemy import UniqueConstraint
from sqlmodel import SQLModel, Field


class Account(SQLModel, table=True):
    id: str = Field(primary_key=True)
    email: str = Field(index=True, unique=True)
    username: str
    password_hash: Optional[str] = None  # imported accounts may have none
    created_at: int
    is_online: bool = False
    last_seen: Optional[int] = None
    last_activity: Optional[int] = None


class AuthSession(SQLModel, table=True):
    """One row per sign-in. Sign-out sets revoked_at."""
    id: str = Field(primary_key=True)
    account_id: str = Field(foreign_key="account.id", index=True)
    created_at: int
    expires_at: int
    revoked_at: Optional[int] = None


class Conversation(SQLModel, table=True):
    id: str = Field(primary_key=True)
    kind: str  # "direct" or "group"
    participant_a: Optional[str] = None
    participant_b: Optional[str] = None
    next_seq: int = 1
    # highest timestamp handed to a message or a read watermark
    clock_ms: int = 0
    created_at: int


class Message(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("conversation_id", "seq"),)

    id: str = Field(primary_key=True)
    conversation_id: str = Field(foreign_key="conversation.id", index=True)
    seq: int
    sender_id: str
    sender_name: str
    timestamp: int = Field(index=True)
    text: Optional[str] = None
    image_url: Optional[str] = None


class ChatGroup(SQLModel, table=True):
    id: str = Field(primary_key=True)
    name: str
    visibility: str  # "public" or "private"
    password_hash: Optional[str] = None
    created_by: str
    created_at: int


class GroupMember(SQLModel, table=True):
    group_id: str = Field(foreign_key="chatgroup.id", primary_key=True)
    account_id: str = Field(foreign_key="account.id", primary_key=True)
    role: str = "member"
    joined_at: int


class ReadWatermark(SQLModel, table=True):
    """Read-up-to timestamp per account and conversation."""
    account_id: str = Field(primary_key=True)
    conversation_id: str = Field(primary_key=True)
    last_read_at: int
