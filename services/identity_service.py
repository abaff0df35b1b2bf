# services/identity_service.py
import os
import re
import uuid
import logging
from typing import List, Dict, Optional, Tuple
from dotenv import load_dotenv
from jose import JWTError, jwt
from sqlmodel import select
from werkzeug.security import generate_password_hash, check_password_hash

from db import get_session
from services.errors import AuthError, Conflict, InvalidInput, NotFound
from services.fanout import hub, USERS_TOPIC
from services.models_db import Account, AuthSession
from services.push_ids import now_ms

load_dotenv()

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
TOKEN_TTL_MINUTES = int(os.getenv("PARLEY_TOKEN_TTL_MINUTES", str(7 * 24 * 60)))
MIN_PASSWORD_LENGTH = 6
MAX_USERNAME_LENGTH = 64

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _secret_key() -> str:
    secret = os.getenv("PARLEY_SECRET_KEY")
    if not secret:
        raise RuntimeError("PARLEY_SECRET_KEY environment variable is required")
    return secret


def account_to_dict(account: Account) -> Dict:
    """Public profile. Never includes the password hash."""
    return {
        "id": account.id,
        "email": account.email,
        "username": account.username,
        "created_at": account.created_at,
        "is_online": account.is_online,
        "last_seen": account.last_seen,
        "last_activity": account.last_activity,
    }


def _clean_username(username: str) -> str:
    username = (username or "").strip()
    if not username:
        raise InvalidInput("Username is required")
    if len(username) > MAX_USERNAME_LENGTH:
        raise InvalidInput(f"Username must be at most {MAX_USERNAME_LENGTH} characters")
    return username


def register(email: str, username: str, password: str) -> Dict:
    email = (email or "").strip().lower()
    if not _EMAIL_RE.match(email):
        raise InvalidInput("A valid email address is required")
    username = _clean_username(username)
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise InvalidInput(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")

    with get_session() as session:
        existing = session.exec(select(Account).where(Account.email == email)).first()
        if existing:
            raise Conflict("Email address is already in use")
        account = Account(
            id=uuid.uuid4().hex,
            email=email,
            username=username,
            password_hash=generate_password_hash(password),
            created_at=now_ms(),
        )
        session.add(account)
        session.commit()
        session.refresh(account)
        data = account_to_dict(account)

    logger.info(f"Registered account {data['id']} ({username})")
    hub.publish(USERS_TOPIC, {"type": "account_created", "account": data})
    return data


def _issue_token(session, account_id: str) -> str:
    issued = now_ms()
    expires = issued + TOKEN_TTL_MINUTES * 60 * 1000
    auth_session = AuthSession(
        id=uuid.uuid4().hex,
        account_id=account_id,
        created_at=issued,
        expires_at=expires,
    )
    session.add(auth_session)
    session.commit()
    claims = {"sub": account_id, "jti": auth_session.id, "exp": expires // 1000}
    return jwt.encode(claims, _secret_key(), algorithm=ALGORITHM)


def authenticate(email: str, password: str) -> Tuple[Dict, str]:
    """Check credentials and open a session. Returns (account, token)."""
    email = (email or "").strip().lower()
    with get_session() as session:
        account = session.exec(select(Account).where(Account.email == email)).first()
        if not account or not account.password_hash or not check_password_hash(account.password_hash, password or ""):
            logger.info(f"Failed sign-in for {email}")
            raise AuthError("Invalid email or password")
        data = account_to_dict(account)
        token = _issue_token(session, account.id)
    logger.info(f"Account {data['id']} signed in")
    return data, token


def _decode(token: str) -> Dict:
    try:
        claims = jwt.decode(token, _secret_key(), algorithms=[ALGORITHM])
    except JWTError as e:
        raise AuthError("Invalid or expired token") from e
    if not claims.get("sub") or not claims.get("jti"):
        raise AuthError("Invalid or expired token")
    return claims


def resolve_session(token: str) -> Tuple[Dict, str]:
    """Return (account, session_id) for a live token."""
    claims = _decode(token)
    with get_session() as session:
        auth_session = session.get(AuthSession, claims["jti"])
        if (
            not auth_session
            or auth_session.account_id != claims["sub"]
            or auth_session.revoked_at is not None
            or auth_session.expires_at <= now_ms()
        ):
            raise AuthError("Session is no longer valid")
        account = session.get(Account, claims["sub"])
        if not account:
            raise AuthError("Session is no longer valid")
        return account_to_dict(account), auth_session.id


def resolve_token(token: str) -> Dict:
    account, _ = resolve_session(token)
    return account


def sign_out(token: str) -> Optional[str]:
    """
    Revoke the session behind the token. Signing out twice is a no-op.
    Returns the revoked session id, or None when nothing changed.
    """
    claims = _decode(token)
    with get_session() as session:
        auth_session = session.get(AuthSession, claims["jti"])
        if not auth_session or auth_session.revoked_at is not None:
            return None
        auth_session.revoked_at = now_ms()
        session.add(auth_session)
        session.commit()
    logger.info(f"Account {claims['sub']} signed out (session {claims['jti']})")
    return claims["jti"]


def get_account(account_id: str) -> Dict:
    with get_session() as session:
        account = session.get(Account, account_id)
        if not account:
            raise NotFound("User not found")
        return account_to_dict(account)


def list_accounts(exclude: Optional[str] = None, query: Optional[str] = None) -> List[Dict]:
    """The global user list, sorted by username."""
    with get_session() as session:
        stmt = select(Account)
        if exclude:
            stmt = stmt.where(Account.id != exclude)
        accounts = session.exec(stmt).all()
        results = [account_to_dict(a) for a in accounts]

    q = (query or "").strip().lower()
    if q:
        results = [a for a in results if q in a["username"].lower()]
    results.sort(key=lambda a: (a["username"].lower(), a["id"]))
    return results


def update_username(account_id: str, username: str) -> Dict:
    username = _clean_username(username)
    with get_session() as session:
        account = session.get(Account, account_id)
        if not account:
            raise NotFound("User not found")
        account.username = username
        session.add(account)
        session.commit()
        session.refresh(account)
        data = account_to_dict(account)
    hub.publish(USERS_TOPIC, {"type": "account_updated", "account": data})
    return data
