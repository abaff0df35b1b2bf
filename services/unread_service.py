# services/unread_service.py
import logging
from typing import Dict, Iterable, List, Optional
from sqlalchemy import func
from sqlmodel import select

from db import get_session
from services.conversation_service import append_lock, authorize_subscription, check_access
from services.errors import NotFound
from services.fanout import hub, account_topic
from services.models_db import Conversation, GroupMember, Message, ReadWatermark
from services.push_ids import now_ms

logger = logging.getLogger(__name__)


def count_unread(watermark: int, messages: Iterable[Dict], account_id: str) -> int:
    """Messages newer than the watermark that someone else wrote."""
    return sum(
        1 for m in messages
        if m["timestamp"] > watermark and m["sender_id"] != account_id
    )


def _load_watermark(session, account_id: str, conversation_id: str) -> int:
    state = session.get(ReadWatermark, (account_id, conversation_id))
    return state.last_read_at if state else 0


def _save_watermark(session, account_id: str, conversation_id: str, last_read_at: int) -> int:
    """Upsert a watermark. It only ever moves forward."""
    existing = session.get(ReadWatermark, (account_id, conversation_id))
    if existing:
        if last_read_at > existing.last_read_at:
            existing.last_read_at = last_read_at
            session.add(existing)
        return existing.last_read_at
    session.add(ReadWatermark(account_id=account_id, conversation_id=conversation_id, last_read_at=last_read_at))
    return last_read_at


def unread_count(account_id: str, conversation_id: str) -> int:
    """
    Derived on every call from stored timestamps, so a message that lands
    after a read-mark is always counted.
    """
    with get_session() as session:
        watermark = _load_watermark(session, account_id, conversation_id)
        stmt = (
            select(func.count())
            .select_from(Message)
            .where(
                Message.conversation_id == conversation_id,
                Message.timestamp > watermark,
                Message.sender_id != account_id,
            )
        )
        return session.exec(stmt).one()


def _mark_read_locked(session, account_id: str, conv: Conversation) -> int:
    current = _load_watermark(session, account_id, conv.id)
    watermark = max(now_ms(), conv.clock_ms, current)
    watermark = _save_watermark(session, account_id, conv.id, watermark)
    if watermark > conv.clock_ms:
        # later appends get a timestamp strictly past this watermark
        conv.clock_ms = watermark
        session.add(conv)
    return watermark


def mark_read(account_id: str, conversation_id: str) -> Dict:
    """Clear unread for one conversation. Reading twice is a no-op."""
    try:
        check_access(account_id, conversation_id)
    except NotFound:
        # a direct chat can be opened before its first message creates it
        authorize_subscription(account_id, conversation_id)
    with append_lock:
        with get_session() as session:
            conv = session.get(Conversation, conversation_id)
            if conv is None:
                watermark = _load_watermark(session, account_id, conversation_id)
            else:
                watermark = _mark_read_locked(session, account_id, conv)
                session.commit()
    logger.debug(f"Account {account_id} read {conversation_id} up to {watermark}")
    hub.publish(account_topic(account_id), {
        "type": "unread_changed",
        "conversation_id": conversation_id,
        "unread": 0,
    })
    return {"conversation_id": conversation_id, "last_read_at": watermark, "unread": 0}


def set_join_watermark(session, account_id: str, conv: Conversation, joined_at: int):
    """
    History from before a group join is not unread. Caller holds
    append_lock, since this advances the conversation clock.
    """
    watermark = _save_watermark(session, account_id, conv.id, max(joined_at, conv.clock_ms))
    if watermark > conv.clock_ms:
        conv.clock_ms = watermark
        session.add(conv)


def delete_watermarks(session, conversation_id: str, account_id: Optional[str] = None):
    stmt = select(ReadWatermark).where(ReadWatermark.conversation_id == conversation_id)
    if account_id is not None:
        stmt = stmt.where(ReadWatermark.account_id == account_id)
    for state in session.exec(stmt).all():
        session.delete(state)


def _account_conversations(session, account_id: str) -> List[Conversation]:
    direct = session.exec(
        select(Conversation).where(
            Conversation.kind == "direct",
            (Conversation.participant_a == account_id) | (Conversation.participant_b == account_id),
        )
    ).all()
    group_ids = [
        m.group_id for m in session.exec(select(GroupMember).where(GroupMember.account_id == account_id)).all()
    ]
    groups = []
    if group_ids:
        groups = session.exec(select(Conversation).where(Conversation.id.in_(group_ids))).all()
    return list(direct) + list(groups)


def unread_summary(account_id: str) -> Dict:
    """Unread per conversation (non-zero only) plus the total."""
    with get_session() as session:
        convs = [(c.id, c.kind) for c in _account_conversations(session, account_id)]

    entries = []
    for conversation_id, kind in convs:
        count = unread_count(account_id, conversation_id)
        if count:
            entries.append({"conversation_id": conversation_id, "kind": kind, "unread": count})
    entries.sort(key=lambda e: e["conversation_id"])
    return {"conversations": entries, "total": sum(e["unread"] for e in entries)}


def mark_all_read(account_id: str) -> Dict:
    """
    Mark every conversation of the account as read. Only messages that
    arrive after this call count as unread.
    """
    with append_lock:
        with get_session() as session:
            convs = _account_conversations(session, account_id)
            for conv in convs:
                _mark_read_locked(session, account_id, conv)
            session.commit()
            ids = [c.id for c in convs]
    logger.info(f"Marked {len(ids)} conversation(s) read for account {account_id}")
    for conversation_id in ids:
        hub.publish(account_topic(account_id), {
            "type": "unread_changed",
            "conversation_id": conversation_id,
            "unread": 0,
        })
    return {"status": "ok", "count": len(ids)}
