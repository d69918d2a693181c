# main.py
import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Callable, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from bluesky import BlueskyClient, BlueskyError, FollowRelationship, build_post_text, post_url
from config import settings, setup_logging
from crypto_utils import new_session_id
from models import (
    AuthenticatedRequest,
    ConversationListResponse,
    ConversationOut,
    CreatePostRequest,
    CreatePostResponse,
    LastMessageOut,
    LoginRequest,
    MarkReadRequest,
    MessageListResponse,
    MessageOut,
    PostListResponse,
    PostOut,
    SendMessageRequest,
    SendMessageResponse,
    SessionRecord,
    SessionUser,
    UpdatePostRequest,
    display_handle,
)
from repository import Repositories, utc_now_iso

logger = logging.getLogger("privacy_bsky.api")

_repositories: Optional[Repositories] = None


# -------------------- dependencies --------------------
def get_repositories() -> Repositories:
    global _repositories
    if _repositories is None:
        _repositories = Repositories()
    return _repositories


def get_bluesky_client() -> BlueskyClient:
    # one client per request; each carries the caller's tokens
    return BlueskyClient()


def current_user(request: Request, repos: Repositories = Depends(get_repositories)) -> AuthenticatedRequest:
    session_id = request.cookies.get(settings["session_cookie"])
    if not session_id:
        raise HTTPException(status_code=401, detail="Missing session ID")
    session = repos.sessions.get(session_id)
    if session is None or not session.did:
        raise HTTPException(status_code=401, detail="Invalid session")
    return AuthenticatedRequest(user=SessionUser(did=session.did, handle=session.handle), session=session)


def bluesky_session(session: SessionRecord) -> dict:
    return {
        "did": session.did,
        "handle": session.handle,
        "accessJwt": session.access_jwt,
        "refreshJwt": session.refresh_jwt,
        "email": session.email,
        "active": session.active,
    }


# -------------------- session sweeper --------------------
async def periodic_session_sweeper(interval_seconds: int):
    """Periodically drop sessions older than the cookie lifetime."""
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            removed = await asyncio.to_thread(get_repositories().sessions.prune)
            if removed:
                logger.info("🧹 Pruned %d expired sessions", removed)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Error in session sweeper loop")


# -------------------- lifespan (startup/shutdown) --------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Start background tasks here and ensure they are cancelled on shutdown.
    """
    setup_logging()
    get_repositories()
    interval = int(settings.get("session_sweep_interval_secs", 3600))
    sweeper_task = asyncio.create_task(periodic_session_sweeper(interval))
    logger.info("🚀 API ready on %s", settings.get("api_url"))
    try:
        yield
    finally:
        sweeper_task.cancel()
        try:
            await sweeper_task
        except asyncio.CancelledError:
            pass


app = FastAPI(title="Privacy Bluesky Messenger", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.get("cors_origins", [])),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health():
    return {"ok": True, "status": "ok", "timestamp": utc_now_iso()}


# -------------------- auth --------------------
@app.post("/auth/login")
def login(
    data: LoginRequest,
    response: Response,
    repos: Repositories = Depends(get_repositories),
    bluesky: BlueskyClient = Depends(get_bluesky_client),
):
    if data.identifier and data.password:
        try:
            remote = bluesky.login(data.identifier, data.password)
        except BlueskyError as e:
            logger.warning("Bluesky login failed for %s: %s", data.identifier, e)
            raise HTTPException(status_code=401, detail=f"Bluesky login failed: {e}")
        record = SessionRecord(
            session_id=new_session_id(),
            did=remote["did"],
            handle=remote["handle"],
            access_jwt=remote["accessJwt"],
            refresh_jwt=remote["refreshJwt"],
            email=remote.get("email"),
            active=remote.get("active", True) is not False,
        )
    elif data.did and data.handle:
        record = SessionRecord(
            session_id=new_session_id(),
            did=data.did,
            handle=data.handle,
            access_jwt=data.accessJwt or "",
            refresh_jwt=data.refreshJwt or "",
            email=data.email,
            active=data.active is not False,
        )
        if not record.has_tokens:
            logger.warning("Session login for %s without AT Protocol tokens", data.handle)
    else:
        raise HTTPException(
            status_code=400,
            detail="Missing required session data: provide (did, handle), a full Bluesky session, or (identifier, password)",
        )

    record.created_at = int(time.time())
    repos.sessions.put(record)
    repos.users.put(record.did, record.handle)

    max_age = int(settings.get("session_max_age_secs", 604_800))
    response.set_cookie(
        key=settings["session_cookie"],
        value=record.session_id,
        max_age=max_age,
        path="/",
        httponly=True,
        samesite="lax",
        secure=bool(settings.get("cookie_secure", False)),
    )
    return {
        "success": True,
        "user": {"did": record.did, "handle": record.handle},
        "hasTokens": record.has_tokens,
        "message": "Session created with AT Protocol integration" if record.has_tokens
        else "Session created (limited - no AT Protocol tokens)",
    }


@app.post("/auth/logout")
def logout(request: Request, response: Response, repos: Repositories = Depends(get_repositories)):
    session_id = request.cookies.get(settings["session_cookie"])
    if session_id:
        repos.sessions.delete(session_id)
        response.delete_cookie(settings["session_cookie"], path="/")
        logger.info("Session logged out: %s...", session_id[:8])
    return {"success": True, "message": "Logged out successfully"}


@app.get("/auth/debug")
def auth_debug(request: Request, repos: Repositories = Depends(get_repositories)):
    session_id = request.cookies.get(settings["session_cookie"])
    if not session_id:
        return {"authenticated": False, "sessionId": None, "error": "No session cookie found"}
    session = repos.sessions.get(session_id)
    if session is None:
        return {"authenticated": False, "sessionId": session_id[:8] + "...", "error": "Session not found in store"}
    return {
        "authenticated": True,
        "sessionId": session_id[:8] + "...",
        "user": {"did": session.did, "handle": session.handle},
        "hasTokens": session.has_tokens,
        "sessionAge": int(time.time()) - session.created_at,
    }


# -------------------- messages --------------------
def _conversation_for(repos: Repositories, conversation_id: str, did: str) -> dict:
    conversation = repos.conversations.get(conversation_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    if did not in conversation["participants"]:
        raise HTTPException(status_code=403, detail="Not authorized to access this conversation")
    return conversation


@app.get("/messages", response_model=ConversationListResponse)
def list_conversations(auth: AuthenticatedRequest = Depends(current_user), repos: Repositories = Depends(get_repositories)):
    did = auth.user.did
    out: List[ConversationOut] = []
    for conv in repos.conversations.list_for(did):
        others = [p for p in conv["participants"] if p != did]
        other = others[0] if others else did
        last = repos.messages.last_message(conv["id"])
        out.append(ConversationOut(
            id=conv["id"],
            participantDid=other,
            participantHandle=display_handle(other, repos.users.handle_for(other)),
            lastMessage=LastMessageOut(text=last["content"], timestamp=last["timestamp"], isEncrypted=True) if last else None,
            unreadCount=repos.messages.unread_count(conv["id"], did),
        ))
    return ConversationListResponse(conversations=out)


@app.get("/messages/conversations/{conversation_id}", response_model=MessageListResponse)
def get_conversation_messages(
    conversation_id: str,
    auth: AuthenticatedRequest = Depends(current_user),
    repos: Repositories = Depends(get_repositories),
):
    _conversation_for(repos, conversation_id, auth.user.did)
    # fetching counts as delivery for the recipient
    repos.messages.mark_delivered(conversation_id, auth.user.did)
    messages = repos.messages.list_for_conversation(conversation_id)
    return MessageListResponse(messages=[MessageOut(**m) for m in messages])


@app.delete("/messages/conversations/{conversation_id}")
def delete_conversation(
    conversation_id: str,
    auth: AuthenticatedRequest = Depends(current_user),
    repos: Repositories = Depends(get_repositories),
):
    _conversation_for(repos, conversation_id, auth.user.did)
    repos.conversations.delete(conversation_id)
    logger.info("Deleted conversation %s... for %s", conversation_id[:8], auth.user.handle)
    return {"success": True}


@app.post("/messages/send", response_model=SendMessageResponse)
def send_message(
    data: SendMessageRequest,
    auth: AuthenticatedRequest = Depends(current_user),
    repos: Repositories = Depends(get_repositories),
):
    if not data.receiverId.strip() or not data.content:
        raise HTTPException(status_code=400, detail="Missing required fields")
    conversation_id = repos.conversations.get_or_create(auth.user.did, data.receiverId)
    message = repos.messages.add(conversation_id, auth.user.did, data.receiverId, data.content)
    repos.conversations.touch(conversation_id, message["timestamp"])
    return SendMessageResponse(messageId=message["id"], conversationId=conversation_id, message=MessageOut(**message))


@app.post("/messages/mark-read")
def mark_read(
    data: MarkReadRequest,
    auth: AuthenticatedRequest = Depends(current_user),
    repos: Repositories = Depends(get_repositories),
):
    updated = repos.messages.mark_read(data.messageIds, auth.user.did)
    return {"success": True, "updatedCount": updated}


# -------------------- posts --------------------
def post_visible_to(post: dict, viewer: str, relationship: Callable[[str], Optional[FollowRelationship]]) -> bool:
    """Access rule for a post; `relationship(author)` returns None when unknown."""
    if post["authorId"] == viewer:
        return True
    level = post["accessLevel"]
    if level == "public":
        return True
    if level == "private":
        return False
    rel = relationship(post["authorId"])
    if rel is None:
        return False
    if level == "followers":
        return rel.is_following
    if level == "friends":
        return rel.is_mutual
    return False


def follow_lookup(bluesky: BlueskyClient, session: SessionRecord) -> Callable[[str], Optional[FollowRelationship]]:
    """Memoized per-author follow relationship for the viewer; failures deny."""
    cache: Dict[str, Optional[FollowRelationship]] = {}
    resumed: List[bool] = []

    def lookup(author: str) -> Optional[FollowRelationship]:
        if author in cache:
            return cache[author]
        try:
            if not resumed:
                bluesky.resume_session(bluesky_session(session))
                resumed.append(True)
            cache[author] = bluesky.check_follow_relationship(session.did, author)
        except BlueskyError as e:
            logger.warning("Follow lookup for %s failed: %s", author, e)
            cache[author] = None
        return cache[author]

    return lookup


@app.get("/posts", response_model=PostListResponse)
def list_posts(
    auth: AuthenticatedRequest = Depends(current_user),
    repos: Repositories = Depends(get_repositories),
    bluesky: BlueskyClient = Depends(get_bluesky_client),
):
    viewer = auth.user.did
    relationship = follow_lookup(bluesky, auth.session)
    posts = [
        PostOut(**p, isOwn=p["authorId"] == viewer)
        for p in repos.posts.list_all()
        if post_visible_to(p, viewer, relationship)
    ]
    return PostListResponse(posts=posts)


@app.post("/posts", status_code=201, response_model=CreatePostResponse, response_model_exclude_none=True)
def create_post(
    data: CreatePostRequest,
    auth: AuthenticatedRequest = Depends(current_user),
    repos: Repositories = Depends(get_repositories),
    bluesky: BlueskyClient = Depends(get_bluesky_client),
):
    # persist first; publishing never undoes the local save
    post = repos.posts.add(
        auth.user.did, data.title, data.content, data.accessLevel, data.privacyScore, data.privacyTechnique
    )

    uri: Optional[str] = None
    warning: Optional[str] = None
    if data.accessLevel == "public":
        if not auth.session.has_tokens:
            warning = "No AT Protocol tokens available"
            logger.warning("Cannot publish post %s to Bluesky: no tokens", post["id"])
        else:
            try:
                bluesky.resume_session(bluesky_session(auth.session))
                text = build_post_text(data.title, data.content)
                logger.info("Publishing to Bluesky: %r", text[:50])
                result = bluesky.post(text)
                uri = result["uri"]
                repos.posts.set_publish_ref(post["id"], uri, result.get("cid"))
                logger.info("✅ Published post %s to Bluesky: %s", post["id"], uri)
            except BlueskyError as e:
                warning = str(e)
                logger.error("Error publishing post %s to Bluesky: %s", post["id"], e)
    else:
        logger.info("Post %s marked as %s, not publishing to Bluesky", post["id"], data.accessLevel)

    if data.accessLevel != "public":
        message = "🔒 Saved to private server only (access controlled)"
    elif uri:
        message = "✅ Published to Bluesky and saved to private server!"
    else:
        message = f"⚠️ Saved to private server only (Bluesky: {warning})"

    return CreatePostResponse(
        id=post["id"],
        accessLevel=data.accessLevel,
        privacyScore=data.privacyScore,
        message=message,
        atProtocolUri=uri,
        blueskyUrl=post_url(auth.user.handle, uri) if uri else None,
        warning=warning,
    )


@app.get("/posts/test-bluesky")
def test_bluesky(
    auth: AuthenticatedRequest = Depends(current_user),
    bluesky: BlueskyClient = Depends(get_bluesky_client),
):
    session = auth.session
    if not session.has_tokens:
        return {"success": False, "error": "No AT Protocol tokens available", "hasTokens": False}
    try:
        bluesky.resume_session(bluesky_session(session))
        profile = bluesky.get_profile(session.did)
    except BlueskyError as e:
        return {"success": False, "error": str(e), "details": "Failed to connect to AT Protocol"}
    return {
        "success": True,
        "message": "AT Protocol integration is working!",
        "profile": {
            "handle": profile.get("handle"),
            "displayName": profile.get("displayName"),
            "followersCount": profile.get("followersCount"),
            "followsCount": profile.get("followsCount"),
            "postsCount": profile.get("postsCount"),
        },
    }


def _own_post(repos: Repositories, post_id: int, did: str) -> dict:
    post = repos.posts.get(post_id)
    if post is None or post["authorId"] != did:
        raise HTTPException(status_code=404, detail="Post not found or unauthorized")
    return post


@app.get("/posts/{post_id}", response_model=PostOut)
def get_post(post_id: int, auth: AuthenticatedRequest = Depends(current_user), repos: Repositories = Depends(get_repositories)):
    post = _own_post(repos, post_id, auth.user.did)
    return PostOut(**post, isOwn=True)


@app.put("/posts/{post_id}")
def update_post(
    post_id: int,
    data: UpdatePostRequest,
    auth: AuthenticatedRequest = Depends(current_user),
    repos: Repositories = Depends(get_repositories),
):
    _own_post(repos, post_id, auth.user.did)
    repos.posts.update(post_id, title=data.title, content=data.content)
    return {"success": True}


@app.delete("/posts/{post_id}")
def delete_post(post_id: int, auth: AuthenticatedRequest = Depends(current_user), repos: Repositories = Depends(get_repositories)):
    _own_post(repos, post_id, auth.user.did)
    repos.posts.delete(post_id)
    return {"success": True}


if __name__ == "__main__":
    import uvicorn

    setup_logging()
    uvicorn.run(app, host=settings.get("host", "127.0.0.1"), port=int(settings.get("port", 3001)))
