# services/presence_service.py
import os
import logging
from typing import Dict, List, Optional
from dotenv import load_dotenv
from sqlmodel import select

from db import get_session
from services.errors import NotFound
from services.fanout import hub, USERS_TOPIC
from services.models_db import Account
from services.push_ids import now_ms

load_dotenv()

logger = logging.getLogger(__name__)

IDLE_TIMEOUT_SECONDS = int(os.getenv("PARLEY_IDLE_TIMEOUT_SECONDS", "300"))


def _presence_event(account: Account) -> Dict:
    return {
        "type": "presence",
        "account_id": account.id,
        "is_online": account.is_online,
        "last_seen": account.last_seen,
    }


def heartbeat(account_id: str, now: Optional[int] = None) -> Dict:
    """Record activity. Announces presence only when the account comes online."""
    now = now_ms() if now is None else now
    with get_session() as session:
        account = session.get(Account, account_id)
        if not account:
            raise NotFound("User not found")
        came_online = not account.is_online
        account.is_online = True
        account.last_activity = now
        session.add(account)
        session.commit()
        event = _presence_event(account)
    if came_online:
        logger.info(f"Account {account_id} is online")
        hub.publish(USERS_TOPIC, event)
    return event


def mark_offline(account_id: str, now: Optional[int] = None) -> Dict:
    now = now_ms() if now is None else now
    with get_session() as session:
        account = session.get(Account, account_id)
        if not account:
            raise NotFound("User not found")
        was_online = account.is_online
        account.is_online = False
        account.last_seen = now
        session.add(account)
        session.commit()
        event = _presence_event(account)
    if was_online:
        logger.info(f"Account {account_id} is offline")
        hub.publish(USERS_TOPIC, event)
    return event


def sweep_idle(now: Optional[int] = None, timeout_seconds: Optional[int] = None) -> List[str]:
    """
    Take accounts offline when their last activity is older than the idle
    timeout. last_seen becomes the last activity, not the sweep time.
    """
    now = now_ms() if now is None else now
    timeout = IDLE_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
    cutoff = now - timeout * 1000

    events = []
    with get_session() as session:
        stale = session.exec(
            select(Account).where(Account.is_online == True, Account.last_activity < cutoff)  # noqa: E712
        ).all()
        for account in stale:
            account.is_online = False
            account.last_seen = account.last_activity
            session.add(account)
        session.commit()
        events = [_presence_event(a) for a in stale]

    for event in events:
        hub.publish(USERS_TOPIC, event)
    if events:
        logger.info(f"Idle sweep took {len(events)} account(s) offline")
    return [e["account_id"] for e in events]
