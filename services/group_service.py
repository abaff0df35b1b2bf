# services/group_service.py
import logging
from typing import List, Dict, Optional
from sqlmodel import select
from werkzeug.security import generate_password_hash, check_password_hash

from db import get_session
from services import conversation_service as convs
from services.errors import Conflict, InvalidInput, NotFound, PermissionDenied
from services.fanout import hub, conversation_topic
from services.models_db import Account, ChatGroup, Conversation, GroupMember, Message
from services.push_ids import generate_push_id, now_ms
from services.unread_service import delete_watermarks, set_join_watermark

logger = logging.getLogger(__name__)

VISIBILITIES = ("public", "private")
MIN_GROUP_PASSWORD_LENGTH = 6
MAX_GROUP_NAME_LENGTH = 100


def _group_to_dict(group: ChatGroup, member_count: int, is_member: bool) -> Dict:
    return {
        "id": group.id,
        "name": group.name,
        "visibility": group.visibility,
        "created_by": group.created_by,
        "created_at": group.created_at,
        "member_count": member_count,
        "is_member": is_member,
    }


def _members(session, group_id: str) -> List[GroupMember]:
    stmt = (
        select(GroupMember)
        .where(GroupMember.group_id == group_id)
        .order_by(GroupMember.joined_at, GroupMember.account_id)
    )
    return list(session.exec(stmt).all())


def _get_group(session, group_id: str) -> ChatGroup:
    group = session.get(ChatGroup, group_id)
    if not group:
        raise NotFound("Group not found")
    return group


def create_group(creator: Dict, name: str, visibility: str = "public", password: Optional[str] = None) -> Dict:
    name = (name or "").strip()
    if not name:
        raise InvalidInput("Group name is required")
    if len(name) > MAX_GROUP_NAME_LENGTH:
        raise InvalidInput(f"Group name must be at most {MAX_GROUP_NAME_LENGTH} characters")
    if visibility not in VISIBILITIES:
        raise InvalidInput("Group visibility must be 'public' or 'private'")

    password_hash = None
    if visibility == "private":
        if not (password or "").strip():
            raise InvalidInput("Password is required for private groups")
        if len(password) < MIN_GROUP_PASSWORD_LENGTH:
            raise InvalidInput(f"Password must be at least {MIN_GROUP_PASSWORD_LENGTH} characters")
        password_hash = generate_password_hash(password)

    created = now_ms()
    group_id = generate_push_id(created)
    with get_session() as session:
        group = ChatGroup(
            id=group_id,
            name=name,
            visibility=visibility,
            password_hash=password_hash,
            created_by=creator["id"],
            created_at=created,
        )
        conv = Conversation(id=group_id, kind="group", created_at=created, clock_ms=created)
        session.add(group)
        session.add(conv)
        session.add(GroupMember(group_id=group_id, account_id=creator["id"], role="admin", joined_at=created))
        set_join_watermark(session, creator["id"], conv, created)
        session.commit()
        session.refresh(group)
        data = _group_to_dict(group, 1, True)

    logger.info(f"Group {group_id} ({name}, {visibility}) created by {creator['id']}")
    return data


def list_groups(account_id: str) -> List[Dict]:
    """Every group, newest first, with membership flags. Password hashes stay private."""
    with get_session() as session:
        groups = session.exec(select(ChatGroup)).all()
        results = []
        for g in groups:
            members = _members(session, g.id)
            is_member = any(m.account_id == account_id for m in members)
            results.append(_group_to_dict(g, len(members), is_member))
    results.sort(key=lambda g: (g["created_at"], g["id"]), reverse=True)
    return results


def get_group(group_id: str, account_id: Optional[str] = None) -> Dict:
    """Group with its members, oldest member first, annotated with profile and presence."""
    with get_session() as session:
        group = _get_group(session, group_id)
        members = _members(session, group_id)
        member_list = []
        for m in members:
            account = session.get(Account, m.account_id)
            member_list.append({
                "account_id": m.account_id,
                "username": account.username if account else "User",
                "email": account.email if account else None,
                "role": m.role,
                "joined_at": m.joined_at,
                "is_online": account.is_online if account else False,
                "last_seen": account.last_seen if account else None,
            })
        is_member = any(m.account_id == account_id for m in members)
        data = _group_to_dict(group, len(members), is_member)
    data["members"] = member_list
    return data


def join_group(account: Dict, group_id: str, password: Optional[str] = None) -> Dict:
    with get_session() as session:
        group = _get_group(session, group_id)
        if session.get(GroupMember, (group_id, account["id"])):
            raise Conflict("You are already a member of this group")
        if group.visibility == "private":
            if not (password or "").strip():
                raise PermissionDenied("Password is required to join this private group")
            if not group.password_hash or not check_password_hash(group.password_hash, password):
                logger.info(f"Rejected join of {account['id']} to private group {group_id}: wrong password")
                raise PermissionDenied("Incorrect password")

    with convs.append_lock:
        with get_session() as session:
            if session.get(GroupMember, (group_id, account["id"])):
                raise Conflict("You are already a member of this group")
            conv = session.get(Conversation, group_id)
            if conv is None:
                raise NotFound("Group not found")
            joined = now_ms()
            session.add(GroupMember(group_id=group_id, account_id=account["id"], role="member", joined_at=joined))
            set_join_watermark(session, account["id"], conv, joined)
            session.commit()

    logger.info(f"Account {account['id']} joined group {group_id}")
    hub.publish(conversation_topic(group_id), {
        "type": "member_joined",
        "group_id": group_id,
        "account_id": account["id"],
        "username": account.get("username"),
        "role": "member",
        "joined_at": joined,
    })
    return get_group(group_id, account["id"])


def _remove_member(group_id: str, account_id: str) -> Dict:
    """
    Shared by leave and kick. Promotes the longest-standing member when the
    last admin goes, and deletes the group with the last member.
    """
    promoted = None
    deleted = False
    # concurrent leaves must agree on who remains
    with convs.append_lock:
        with get_session() as session:
            _get_group(session, group_id)
            member = session.get(GroupMember, (group_id, account_id))
            if not member:
                raise NotFound("Not a member of this group")
            session.delete(member)
            delete_watermarks(session, group_id, account_id)
            session.flush()

            remaining = _members(session, group_id)
            if not remaining:
                _delete_group(session, group_id)
                deleted = True
            elif not any(m.role == "admin" for m in remaining):
                successor = remaining[0]
                successor.role = "admin"
                session.add(successor)
                promoted = successor.account_id
            session.commit()

    topic = conversation_topic(group_id)
    hub.publish(topic, {"type": "member_left", "group_id": group_id, "account_id": account_id})
    hub.unsubscribe_account(account_id, topic)
    if promoted:
        logger.info(f"Account {promoted} promoted to admin of group {group_id}")
        hub.publish(topic, {"type": "member_promoted", "group_id": group_id, "account_id": promoted})
    if deleted:
        logger.info(f"Group {group_id} deleted after its last member left")
        hub.publish(topic, {"type": "group_deleted", "group_id": group_id})
    return {"status": "ok", "group_id": group_id, "group_deleted": deleted, "promoted": promoted}


def _delete_group(session, group_id: str):
    # messages first, then the conversation they belong to
    for m in session.exec(select(Message).where(Message.conversation_id == group_id)).all():
        session.delete(m)
    delete_watermarks(session, group_id)
    conv = session.get(Conversation, group_id)
    if conv:
        session.delete(conv)
    session.flush()
    session.delete(session.get(ChatGroup, group_id))


def leave_group(account_id: str, group_id: str) -> Dict:
    logger.info(f"Account {account_id} leaving group {group_id}")
    return _remove_member(group_id, account_id)


def remove_member(admin_id: str, group_id: str, account_id: str) -> Dict:
    with get_session() as session:
        _get_group(session, group_id)
        admin = session.get(GroupMember, (group_id, admin_id))
        if not admin or admin.role != "admin":
            raise PermissionDenied("Only group admins can remove members")
    logger.info(f"Admin {admin_id} removing {account_id} from group {group_id}")
    return _remove_member(group_id, account_id)


def _require_member(account_id: str, group_id: str):
    with get_session() as session:
        _get_group(session, group_id)
        if not session.get(GroupMember, (group_id, account_id)):
            raise PermissionDenied("You are not a member of this group")


def send_group_message(account: Dict, group_id: str, text: Optional[str] = None, image_url: Optional[str] = None) -> Dict:
    _require_member(account["id"], group_id)
    return convs.append_message(group_id, account, text=text, image_url=image_url)


def list_group_messages(account_id: str, group_id: str, limit: int = 50, before_seq: Optional[int] = None) -> List[Dict]:
    _require_member(account_id, group_id)
    return convs.list_messages(group_id, limit=limit, before_seq=before_seq)
