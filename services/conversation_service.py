# services/conversation_service.py
import logging
import threading
from typing import List, Dict, Optional
from sqlmodel import select

from db import get_session
from services.errors import InvalidInput, NotFound, PermissionDenied
from services.fanout import hub, account_topic, conversation_topic
from services.models_db import Account, ChatGroup, Conversation, GroupMember, Message
from services.push_ids import generate_push_id, now_ms

logger = logging.getLogger(__name__)

KEY_SEPARATOR = "_"
MAX_TEXT_LENGTH = 4000
NOTIFICATION_BODY_LENGTH = 50
IMAGE_NOTIFICATION_BODY = "📸 Image sent"

# Serializes seq/timestamp allocation and watermark writes
append_lock = threading.Lock()


def conversation_key(a: str, b: str) -> str:
    """Deterministic id of the two-party conversation between a and b."""
    if not a or not b:
        raise InvalidInput("Both participants are required")
    if a == b:
        raise InvalidInput("Cannot start a conversation with yourself")
    return KEY_SEPARATOR.join(sorted([a, b]))


def message_to_dict(m: Message) -> Dict:
    return {
        "id": m.id,
        "conversation_id": m.conversation_id,
        "seq": m.seq,
        "sender_id": m.sender_id,
        "sender_name": m.sender_name,
        "timestamp": m.timestamp,
        "text": m.text,
        "image_url": m.image_url,
    }


def _clean_content(text: Optional[str], image_url: Optional[str]):
    if text is not None and not text.strip():
        text = None
    if image_url is not None and not image_url.strip():
        image_url = None
    if text is None and image_url is None:
        raise InvalidInput("A message needs text or an image")
    if text is not None and len(text) > MAX_TEXT_LENGTH:
        raise InvalidInput(f"Message too long. Maximum length is {MAX_TEXT_LENGTH} characters.")
    return text, image_url


def _ensure_direct(session, key: str, a: str, b: str) -> Conversation:
    conv = session.get(Conversation, key)
    if conv is None:
        low, high = sorted([a, b])
        conv = Conversation(id=key, kind="direct", participant_a=low, participant_b=high, created_at=now_ms())
        session.add(conv)
        session.flush()
        logger.info(f"Created direct conversation {key}")
    return conv


def _is_member(session, group_id: str, account_id: str) -> bool:
    return session.get(GroupMember, (group_id, account_id)) is not None


def participants(conversation_id: str) -> List[str]:
    """Account ids allowed to read the conversation."""
    with get_session() as session:
        conv = session.get(Conversation, conversation_id)
        if not conv:
            raise NotFound("Conversation not found")
        if conv.kind == "direct":
            return [conv.participant_a, conv.participant_b]
        members = session.exec(select(GroupMember).where(GroupMember.group_id == conversation_id)).all()
        return [m.account_id for m in members]


def check_access(account_id: str, conversation_id: str) -> Dict:
    """Raise unless the account may read and write the conversation."""
    with get_session() as session:
        conv = session.get(Conversation, conversation_id)
        if not conv:
            raise NotFound("Conversation not found")
        if conv.kind == "direct":
            allowed = account_id in (conv.participant_a, conv.participant_b)
        else:
            allowed = _is_member(session, conversation_id, account_id)
        if not allowed:
            raise PermissionDenied("Not a participant of this conversation")
        return {"id": conv.id, "kind": conv.kind}


def authorize_subscription(account_id: str, conversation_id: str):
    """
    Like check_access, but a direct conversation may be watched before its
    first message creates it.
    """
    try:
        check_access(account_id, conversation_id)
        return
    except NotFound:
        parts = conversation_id.split(KEY_SEPARATOR)
        if len(parts) != 2 or account_id not in parts or conversation_key(*parts) != conversation_id:
            raise
    other_id = parts[1] if parts[0] == account_id else parts[0]
    with get_session() as session:
        if not session.get(Account, other_id):
            raise NotFound("Conversation not found")


def append_message(conversation_id: str, sender: Dict, text: Optional[str] = None, image_url: Optional[str] = None) -> Dict:
    """
    Shared append path for direct and group conversations. The caller has
    already checked that the sender may write here.
    """
    text, image_url = _clean_content(text, image_url)
    with append_lock:
        with get_session() as session:
            conv = session.get(Conversation, conversation_id)
            if not conv:
                raise NotFound("Conversation not found")
            data = _insert_message(session, conv, sender, text, image_url)
    _fan_out_message(data)
    return data


def _insert_message(session, conv: Conversation, sender: Dict, text, image_url) -> Dict:
    # strictly increasing per conversation, and always past any watermark
    ts = max(now_ms(), conv.clock_ms + 1)
    msg = Message(
        id=generate_push_id(ts),
        conversation_id=conv.id,
        seq=conv.next_seq,
        sender_id=sender["id"],
        sender_name=sender.get("username") or "User",
        timestamp=ts,
        text=text,
        image_url=image_url,
    )
    conv.next_seq += 1
    conv.clock_ms = ts
    session.add(conv)
    session.add(msg)
    session.commit()
    session.refresh(msg)
    logger.debug(f"Appended message {msg.id} (seq {msg.seq}) to {conv.id}")
    return message_to_dict(msg)


def send_direct_message(sender: Dict, recipient_id: str, text: Optional[str] = None, image_url: Optional[str] = None) -> Dict:
    key = conversation_key(sender["id"], recipient_id)
    text, image_url = _clean_content(text, image_url)
    with append_lock:
        with get_session() as session:
            if not session.get(Account, recipient_id):
                raise NotFound("User not found")
            conv = _ensure_direct(session, key, sender["id"], recipient_id)
            data = _insert_message(session, conv, sender, text, image_url)
    _fan_out_message(data)
    return data


def _notification_for(session, conv: Conversation, message: Dict) -> Dict:
    if conv.kind == "group":
        group = session.get(ChatGroup, conv.id)
        title = f"New message in {group.name if group else 'group'}"
        tag = f"group-{conv.id}"
    else:
        title = f"New message from {message['sender_name']}"
        tag = f"chat-{conv.id}"
    body = (message["text"] or "")[:NOTIFICATION_BODY_LENGTH] if message["text"] else IMAGE_NOTIFICATION_BODY
    return {
        "type": "notification",
        "conversation_id": conv.id,
        "kind": conv.kind,
        "title": title,
        "body": body,
        "tag": tag,
    }


def _fan_out_message(message: Dict):
    from services.unread_service import unread_count

    cid = message["conversation_id"]
    hub.publish(conversation_topic(cid), {"type": "message_added", "conversation_id": cid, "message": message})

    with get_session() as session:
        conv = session.get(Conversation, cid)
        if conv is None:
            return
        notification = _notification_for(session, conv, message)
    recipients = [a for a in participants(cid) if a != message["sender_id"]]
    for account_id in recipients:
        hub.publish(account_topic(account_id), {
            "type": "unread_changed",
            "conversation_id": cid,
            "unread": unread_count(account_id, cid),
        })
        # already looking at the conversation
        if not hub.is_subscribed(account_id, conversation_topic(cid)):
            hub.publish(account_topic(account_id), notification)


def list_messages(conversation_id: str, limit: int = 50, before_seq: Optional[int] = None) -> List[Dict]:
    """The newest `limit` messages (before `before_seq`), oldest first."""
    limit = max(1, min(int(limit), 500))
    with get_session() as session:
        stmt = select(Message).where(Message.conversation_id == conversation_id)
        if before_seq is not None:
            stmt = stmt.where(Message.seq < before_seq)
        stmt = stmt.order_by(Message.timestamp.desc(), Message.seq.desc()).limit(limit)
        msgs = [message_to_dict(m) for m in session.exec(stmt).all()]
    return list(reversed(msgs))


def list_direct_messages(account_id: str, other_id: str, limit: int = 50, before_seq: Optional[int] = None) -> List[Dict]:
    key = conversation_key(account_id, other_id)
    with get_session() as session:
        if not session.get(Account, other_id):
            raise NotFound("User not found")
        if not session.get(Conversation, key):
            return []
    return list_messages(key, limit=limit, before_seq=before_seq)


def delete_message(conversation_id: str, message_id: str, account_id: str) -> Dict:
    """Senders delete their own messages; group admins may delete any in their group."""
    with get_session() as session:
        msg = session.get(Message, message_id)
        if not msg or msg.conversation_id != conversation_id:
            raise NotFound("Message not found")
        if msg.sender_id != account_id:
            conv = session.get(Conversation, conversation_id)
            member = session.get(GroupMember, (conversation_id, account_id)) if conv and conv.kind == "group" else None
            if not member or member.role != "admin":
                raise PermissionDenied("You can only delete your own messages")
        session.delete(msg)
        session.commit()
    logger.info(f"Deleted message {message_id} from {conversation_id}")
    hub.publish(conversation_topic(conversation_id), {
        "type": "message_deleted",
        "conversation_id": conversation_id,
        "message_id": message_id,
    })
    return {"status": "ok", "id": message_id}


def last_message(session, conversation_id: str) -> Optional[Dict]:
    stmt = (
        select(Message)
        .where(Message.conversation_id == conversation_id)
        .order_by(Message.timestamp.desc(), Message.seq.desc())
        .limit(1)
    )
    m = session.exec(stmt).first()
    return message_to_dict(m) if m else None


def list_direct_conversations(account_id: str) -> List[Dict]:
    """Direct conversations of the account, most recent activity first."""
    from services.identity_service import account_to_dict

    results = []
    with get_session() as session:
        convs = session.exec(
            select(Conversation).where(
                Conversation.kind == "direct",
                (Conversation.participant_a == account_id) | (Conversation.participant_b == account_id),
            )
        ).all()
        for conv in convs:
            other_id = conv.participant_b if conv.participant_a == account_id else conv.participant_a
            other = session.get(Account, other_id)
            results.append({
                "id": conv.id,
                "participant": account_to_dict(other) if other else None,
                "last_message": last_message(session, conv.id),
            })
    results.sort(key=lambda c: c["last_message"]["timestamp"] if c["last_message"] else 0, reverse=True)
    return results
