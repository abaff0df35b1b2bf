import os, json
import logging
import asyncio
from typing import List, Optional
from fastapi import FastAPI, HTTPException, Depends, File, Query, Request, UploadFile, WebSocket, WebSocketDisconnect, status
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from starlette.websockets import WebSocketState
from dotenv import load_dotenv
from models import (
    Account, RegisterRequest, LoginRequest, LoginResponse, UpdateProfileRequest,
    Message, SendMessageRequest, DirectConversation, CreateGroupRequest, JoinGroupRequest,
    Group, GroupDetail, LeaveGroupResult, UnreadSummary, MarkReadResult, UploadResult,
)
from db import init_db
from services import identity_service as identity
from services import conversation_service as convs
from services import group_service as groups
from services import presence_service as presence
from services import unread_service as unread
from services import storage_service as storage
from services.errors import AuthError, ChatError, PermissionDenied
from services.fanout import hub, Subscriber, USERS_TOPIC, account_topic

# Load environment variables first
load_dotenv()

# Configure logging
logging.basicConfig(
    level=os.getenv("PARLEY_LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Validate required environment variables
if not os.getenv("PARLEY_SECRET_KEY"):
    logger.error("PARLEY_SECRET_KEY environment variable is required but not set")
    raise ValueError("PARLEY_SECRET_KEY environment variable is required. Please set it in your .env file or environment.")

PRESENCE_SWEEP_INTERVAL = int(os.getenv("PARLEY_PRESENCE_SWEEP_INTERVAL", "30"))

# Initialize database
try:
    init_db()
    logger.info("Database initialized successfully")
except Exception as e:
    logger.error(f"Failed to initialize database: {e}")
    raise

app = FastAPI(title="Parley Backend", version="0.1.0")

# Configure CORS - allow specific origins or localhost for development
ALLOWED_ORIGINS = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")
ALLOWED_ORIGINS = [origin.strip() for origin in ALLOWED_ORIGINS if origin.strip()]

# In development, allow any localhost port
ALLOWED_ORIGIN_REGEX = None
if os.getenv("ENVIRONMENT", "development") == "development":
    ALLOWED_ORIGIN_REGEX = r"http://(localhost|127\.0\.0\.1)(:\d+)?"
    logger.warning("CORS is configured for development. Set ENVIRONMENT=production and CORS_ORIGINS for production.")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS if ALLOWED_ORIGINS else ["*"],
    allow_origin_regex=ALLOWED_ORIGIN_REGEX,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["*"],
)

@app.on_event("startup")
async def startup_event():
    """Start the idle-presence sweep unless it is disabled."""
    if PRESENCE_SWEEP_INTERVAL > 0:
        asyncio.create_task(sweep_presence_periodically())
        logger.info(f"Started background presence sweep (every {PRESENCE_SWEEP_INTERVAL} seconds)")

@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthError) else None
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=headers)

# ============================================================================
# Auth dependencies
# ============================================================================

bearer = HTTPBearer(auto_error=False)

def current_session(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer)) -> dict:
    if credentials is None or not credentials.credentials:
        raise AuthError("Not authenticated")
    account, session_id = identity.resolve_session(credentials.credentials)
    return {"account": account, "session_id": session_id, "token": credentials.credentials}

def current_account(ctx: dict = Depends(current_session)) -> dict:
    return ctx["account"]

# Health and readiness endpoints
@app.get("/health")
def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy"}

@app.get("/ready")
def readiness_check():
    """Readiness check - verifies database connectivity."""
    try:
        from db import get_session
        from sqlmodel import text
        with get_session() as session:
            session.exec(text("SELECT 1"))
        return {"status": "ready", "database": "connected"}
    except Exception as e:
        logger.error(f"Readiness check failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Service not ready: {str(e)}"
        )

# ============================================================================
# Authentication
# ============================================================================

@app.post("/auth/register", response_model=Account, status_code=status.HTTP_201_CREATED)
def register(req: RegisterRequest):
    return identity.register(req.email, req.username, req.password)

@app.post("/auth/login", response_model=LoginResponse)
def login(req: LoginRequest):
    account, token = identity.authenticate(req.email, req.password)
    return {"account": account, "token": token}

@app.post("/auth/logout")
def logout(ctx: dict = Depends(current_session)):
    """
    Revoke the current session and close the sockets opened with it.
    """
    identity.sign_out(ctx["token"])
    for sub in hub.connections(ctx["account"]["id"], ctx["session_id"]):
        sub.deliver({"type": "session_ended"})
    return {"status": "ok"}

@app.get("/auth/me", response_model=Account)
def me(account: dict = Depends(current_account)):
    return account

@app.patch("/auth/me", response_model=Account)
def update_me(req: UpdateProfileRequest, account: dict = Depends(current_account)):
    return identity.update_username(account["id"], req.username)

# ============================================================================
# Users
# ============================================================================

@app.get("/users", response_model=List[Account])
def users_list(q: Optional[str] = None, account: dict = Depends(current_account)):
    """Everyone except the caller, with presence."""
    return identity.list_accounts(exclude=account["id"], query=q)

@app.get("/users/{user_id}", response_model=Account)
def user_detail(user_id: str, account: dict = Depends(current_account)):
    return identity.get_account(user_id)

# ============================================================================
# Direct conversations
# ============================================================================

@app.get("/conversations", response_model=List[DirectConversation])
def conversations_list(account: dict = Depends(current_account)):
    return convs.list_direct_conversations(account["id"])

@app.get("/conversations/direct/{user_id}/messages", response_model=List[Message])
def direct_messages(user_id: str, limit: int = 50, before_seq: Optional[int] = None, account: dict = Depends(current_account)):
    return convs.list_direct_messages(account["id"], user_id, limit=limit, before_seq=before_seq)

@app.post("/conversations/direct/{user_id}/messages", response_model=Message, status_code=status.HTTP_201_CREATED)
def send_direct(user_id: str, req: SendMessageRequest, account: dict = Depends(current_account)):
    return convs.send_direct_message(account, user_id, text=req.text, image_url=req.image_url)

@app.get("/conversations/{conversation_id}/messages", response_model=List[Message])
def conversation_messages(conversation_id: str, limit: int = 50, before_seq: Optional[int] = None, account: dict = Depends(current_account)):
    convs.check_access(account["id"], conversation_id)
    return convs.list_messages(conversation_id, limit=limit, before_seq=before_seq)

@app.delete("/conversations/{conversation_id}/messages/{message_id}")
def delete_message(conversation_id: str, message_id: str, account: dict = Depends(current_account)):
    convs.check_access(account["id"], conversation_id)
    return convs.delete_message(conversation_id, message_id, account["id"])

# ============================================================================
# Groups
# ============================================================================

@app.get("/groups", response_model=List[Group])
def groups_list(account: dict = Depends(current_account)):
    return groups.list_groups(account["id"])

@app.post("/groups", response_model=Group, status_code=status.HTTP_201_CREATED)
def create_group(req: CreateGroupRequest, account: dict = Depends(current_account)):
    return groups.create_group(account, req.name, req.visibility, req.password)

@app.get("/groups/{group_id}", response_model=GroupDetail)
def group_detail(group_id: str, account: dict = Depends(current_account)):
    return groups.get_group(group_id, account["id"])

@app.post("/groups/{group_id}/join", response_model=GroupDetail)
def join_group(group_id: str, req: JoinGroupRequest = JoinGroupRequest(), account: dict = Depends(current_account)):
    return groups.join_group(account, group_id, req.password)

@app.post("/groups/{group_id}/leave", response_model=LeaveGroupResult)
def leave_group(group_id: str, account: dict = Depends(current_account)):
    return groups.leave_group(account["id"], group_id)

@app.delete("/groups/{group_id}/members/{member_id}", response_model=LeaveGroupResult)
def remove_group_member(group_id: str, member_id: str, account: dict = Depends(current_account)):
    return groups.remove_member(account["id"], group_id, member_id)

@app.get("/groups/{group_id}/messages", response_model=List[Message])
def group_messages(group_id: str, limit: int = 50, before_seq: Optional[int] = None, account: dict = Depends(current_account)):
    return groups.list_group_messages(account["id"], group_id, limit=limit, before_seq=before_seq)

@app.post("/groups/{group_id}/messages", response_model=Message, status_code=status.HTTP_201_CREATED)
def send_group_message(group_id: str, req: SendMessageRequest, account: dict = Depends(current_account)):
    return groups.send_group_message(account, group_id, text=req.text, image_url=req.image_url)

# ============================================================================
# Unread Messages Endpoints
# ============================================================================

@app.get("/unread", response_model=UnreadSummary)
def get_unread(account: dict = Depends(current_account)):
    """Unread count per conversation and in total, derived at read time."""
    return unread.unread_summary(account["id"])

@app.post("/unread/mark-all-read")
def mark_all_read(account: dict = Depends(current_account)):
    """
    Mark every conversation of the caller as read.
    After this, only NEW messages will be considered unread.
    """
    return unread.mark_all_read(account["id"])

@app.post("/unread/{conversation_id}/read", response_model=MarkReadResult)
def mark_read(conversation_id: str, account: dict = Depends(current_account)):
    return unread.mark_read(account["id"], conversation_id)

# ============================================================================
# Uploads
# ============================================================================

@app.post("/uploads", response_model=UploadResult, status_code=status.HTTP_201_CREATED)
async def upload_image(file: UploadFile = File(...), account: dict = Depends(current_account)):
    """Store an image attachment and return the URL to put in a message."""
    data = await file.read()
    return await run_in_threadpool(storage.upload, account["id"], file.filename, data, file.content_type)

@app.get("/files/{path:path}")
def get_file(path: str):
    full_path = storage.resolve(path)
    return FileResponse(full_path, media_type=storage.media_type(full_path))

# ============================================================================
# Admin
# ============================================================================

@app.post("/admin/sweep-presence")
def sweep_presence(account: dict = Depends(current_account)):
    """Run the idle sweep now instead of waiting for the background task."""
    offline = presence.sweep_idle()
    return {"status": "ok", "offline": offline}

# ============================================================================
# Real-time subscriptions
# ============================================================================

def _authorize_topic(account_id: str, topic: str):
    if topic == USERS_TOPIC:
        return
    if topic.startswith("account:"):
        if topic != account_topic(account_id):
            raise PermissionDenied("Cannot subscribe to another account")
        return
    if topic.startswith("conversation:"):
        convs.authorize_subscription(account_id, topic[len("conversation:"):])
        return
    raise PermissionDenied(f"Unknown topic: {topic}")

def handle_frame(sub: Subscriber, frame: dict) -> dict:
    """Apply one client frame and return the reply frame."""
    action = frame.get("action")
    topic = frame.get("topic")
    try:
        if action == "heartbeat":
            presence.heartbeat(sub.account_id)
            return {"type": "heartbeat_ack"}
        if action in ("subscribe", "unsubscribe"):
            if not isinstance(topic, str) or not topic:
                return {"type": "error", "detail": "A topic is required"}
            if action == "subscribe":
                _authorize_topic(sub.account_id, topic)
                hub.subscribe(sub, topic)
                return {"type": "subscribed", "topic": topic}
            hub.unsubscribe(sub, topic)
            return {"type": "unsubscribed", "topic": topic}
        return {"type": "error", "detail": f"Unknown action: {action}"}
    except ChatError as e:
        return {"type": "error", "detail": e.detail, "topic": topic}

async def _pump_events(websocket: WebSocket, sub: Subscriber):
    """Write queued events to the socket until the session ends or the queue overflows."""
    try:
        while True:
            event = await sub.queue.get()
            await websocket.send_json(event)
            if event.get("type") == "session_ended":
                await websocket.close(code=status.WS_1000_NORMAL_CLOSURE)
                return
            if sub.overflowed:
                await websocket.close(code=status.WS_1013_TRY_AGAIN_LATER)
                return
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.warning(f"Stopped writing to socket of account {sub.account_id}: {e}")

@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, token: Optional[str] = Query(None)):
    try:
        account, session_id = await run_in_threadpool(identity.resolve_session, token or "")
    except AuthError:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    sub = Subscriber(account["id"], session_id, asyncio.get_running_loop())
    hub.register(sub)
    writer = None
    try:
        await run_in_threadpool(presence.heartbeat, account["id"])
        await websocket.send_json({"type": "session", "account": account})
        writer = asyncio.create_task(_pump_events(websocket, sub))
        logger.info(f"Socket opened for account {account['id']}")

        # the writer closes the socket itself on sign-out or overflow
        while websocket.application_state == WebSocketState.CONNECTED:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except ValueError:
                sub.deliver({"type": "error", "detail": "Frames must be JSON objects"})
                continue
            if not isinstance(frame, dict):
                sub.deliver({"type": "error", "detail": "Frames must be JSON objects"})
                continue
            reply = await run_in_threadpool(handle_frame, sub, frame)
            sub.deliver(reply)
    except WebSocketDisconnect:
        pass
    finally:
        if writer is not None:
            writer.cancel()
        remaining = hub.unregister(sub)
        logger.info(f"Socket closed for account {account['id']} ({remaining} remaining)")
        if remaining == 0:
            try:
                await run_in_threadpool(presence.mark_offline, account["id"])
            except ChatError as e:
                logger.warning(f"Could not mark {account['id']} offline: {e}")

# Background task to take idle accounts offline
async def sweep_presence_periodically():
    """
    Runs the idle sweep every PRESENCE_SWEEP_INTERVAL seconds.
    """
    while True:
        try:
            await asyncio.sleep(PRESENCE_SWEEP_INTERVAL)
            offline = await run_in_threadpool(presence.sweep_idle)
            if offline:
                logger.info(f"Marked {len(offline)} idle account(s) offline")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error in background presence sweep: {e}")

if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
