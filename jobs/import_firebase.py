import json, argparse, logging
from datetime import datetime
import tqdm
from dotenv import load_dotenv
from sqlmodel import select
from werkzeug.security import generate_password_hash
from db import init_db, get_session
from services.conversation_service import conversation_key
from services.models_db import Account, ChatGroup, Conversation, GroupMember, Message
from services.push_ids import push_id_timestamp
from services.unread_service import set_join_watermark

load_dotenv()
logger = logging.getLogger(__name__)


def _iso_to_ms(value) -> int:
    if isinstance(value, (int, float)):
        return int(value)
    if not value:
        return 0
    return int(datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp() * 1000)


def _message_rows(conversation_id: str, raw: dict):
    """Export messages sorted by (timestamp, push key), skipping empty ones."""
    rows = []
    for key, m in (raw or {}).items():
        text = m.get("text") or None
        image_url = m.get("imageUrl") or None
        if text is None and image_url is None:
            continue
        ts = m.get("timestamp")
        if ts is None:
            try:
                ts = push_id_timestamp(key)
            except ValueError:
                ts = 0
        rows.append({
            "id": key,
            "conversation_id": conversation_id,
            "sender_id": m.get("senderId") or "",
            "sender_name": m.get("senderName") or "User",
            "timestamp": int(ts),
            "text": text,
            "image_url": image_url,
        })
    rows.sort(key=lambda r: (r["timestamp"], r["id"]))
    return rows


def import_users(session, users: dict, temp_password: str = None) -> int:
    password_hash = generate_password_hash(temp_password) if temp_password else None
    count = 0
    for uid, u in (users or {}).items():
        email = (u.get("email") or f"{uid}@imported.invalid").strip().lower()
        account = session.get(Account, uid) or Account(id=uid, email=email, username="User", created_at=0)
        account.email = email
        account.username = (u.get("username") or "User").strip() or "User"
        account.created_at = _iso_to_ms(u.get("createdAt"))
        account.is_online = False  # presence is rebuilt from live heartbeats
        account.last_seen = _iso_to_ms(u.get("lastSeen")) or None
        if password_hash and not account.password_hash:
            account.password_hash = password_hash
        session.add(account)
        count += 1
    session.commit()
    return count


def import_groups(session, groups: dict) -> list:
    """Groups and members. Returns (group_id, raw_messages) pairs for the message pass."""
    pending = []
    for gid, g in (groups or {}).items():
        members = g.get("members") or {}
        if not members:
            # a group only exists while it has members
            logger.warning(f"Skipping group {gid}: no members in the export")
            continue
        created = _iso_to_ms(g.get("createdAt"))
        visibility = "private" if g.get("type") == "private" else "public"
        password = g.get("password")
        group = session.get(ChatGroup, gid) or ChatGroup(id=gid, name="", visibility=visibility, created_by="", created_at=created)
        group.name = g.get("name") or "Group"
        group.visibility = visibility
        group.password_hash = generate_password_hash(password) if visibility == "private" and password else None
        group.created_by = g.get("createdBy") or ""
        group.created_at = created
        session.add(group)
        if not session.get(Conversation, gid):
            session.add(Conversation(id=gid, kind="group", created_at=created))

        rows = []
        for uid, member in members.items():
            row = session.get(GroupMember, (gid, uid)) or GroupMember(group_id=gid, account_id=uid, joined_at=0)
            row.role = "admin" if member.get("role") == "admin" else "member"
            row.joined_at = _iso_to_ms(member.get("joinedAt"))
            rows.append(row)
        if not any(r.role == "admin" for r in rows):
            min(rows, key=lambda r: (r.joined_at, r.account_id)).role = "admin"
        for row in rows:
            session.add(row)
        pending.append((gid, g.get("messages") or {}))
    session.commit()
    return pending


def _direct_conversation(session, chat_id: str) -> Conversation:
    a, b = chat_id.split("_", 1)
    key = conversation_key(a, b)
    conv = session.get(Conversation, key)
    if conv is None:
        low, high = sorted([a, b])
        conv = Conversation(id=key, kind="direct", participant_a=low, participant_b=high, created_at=0)
        session.add(conv)
        session.flush()
    return conv


def _participants(session, conv: Conversation) -> list:
    if conv.kind == "direct":
        return [conv.participant_a, conv.participant_b]
    return list(session.exec(select(GroupMember.account_id).where(GroupMember.group_id == conv.id)).all())


def import_messages(session, conv: Conversation, rows: list, batch_size: int = 500) -> int:
    """Assign sequence numbers in log order and move the clock to the newest message."""
    existing_ids = set(session.exec(select(Message.id).where(Message.conversation_id == conv.id)).all())
    added = 0
    for i in range(0, len(rows), batch_size):
        for r in rows[i:i + batch_size]:
            if r["id"] in existing_ids:
                continue
            session.add(Message(seq=conv.next_seq, **r))
            conv.next_seq += 1
            conv.clock_ms = max(conv.clock_ms, r["timestamp"])
            if not conv.created_at:
                conv.created_at = r["timestamp"]
            added += 1
        session.add(conv)
        session.commit()
    return added


def run(path: str, temp_password: str = None, batch_size: int = 500) -> dict:
    with open(path, "r", encoding="utf-8") as f:
        export = json.load(f)

    init_db()
    stats = {"users": 0, "groups": 0, "messages": 0, "skipped_conversations": 0}
    with get_session() as session:
        stats["users"] = import_users(session, export.get("users"), temp_password)
        pending = import_groups(session, export.get("groups"))
        stats["groups"] = len(pending)

        work = []
        for chat_id, raw in (export.get("messages") or {}).items():
            a, _, b = chat_id.partition("_")
            if not a or not b or a == b:
                logger.warning(f"Skipping direct conversation with malformed key {chat_id}")
                stats["skipped_conversations"] += 1
                continue
            work.append((_direct_conversation(session, chat_id), _message_rows(chat_id, raw)))
        for gid, raw in pending:
            work.append((session.get(Conversation, gid), _message_rows(gid, raw)))

        for conv, rows in tqdm.tqdm(work, desc="conversations"):
            for r in rows:
                r["conversation_id"] = conv.id
            stats["messages"] += import_messages(session, conv, rows, batch_size)
            # imported history starts out read
            for account_id in _participants(session, conv):
                set_join_watermark(session, account_id, conv, conv.clock_ms)
            session.commit()

    logger.info(f"Import finished: {stats}")
    return stats


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    parser = argparse.ArgumentParser(description="Import a Firebase Realtime Database JSON export.")
    parser.add_argument("export", help="path to the exported JSON file")
    parser.add_argument("--temp-password", default=None, help="password given to imported accounts that have none")
    parser.add_argument("--batch-size", type=int, default=500)
    args = parser.parse_args()
    print(json.dumps(run(args.export, args.temp_password, args.batch_size), indent=2))
