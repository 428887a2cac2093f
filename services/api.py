# ─────────────────────────────────────────────────────────────────────────────
# services/api.py
"""
FastAPI surface for the Teams / SMS sender.

• Sign-in:   GET /auth/login → Entra ID → GET /auth/callback
             POST /auth/sso  (Teams tab hands over its SSO token)
• Teams:     GET /me · GET /chats · POST /teams/messages
• SMS:       POST /sms · POST /sms/bulk

Sessions are tracked with one opaque cookie; tokens never leave the server.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Callable, List, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from pydantic import BaseModel, Field

from common.chat_resolver import ChatResolver, search_conversations
from common.errors import (
    AuthRequired,
    CreationRejected,
    DeliveryFailure,
    GraphAPIError,
    InteractionAlreadyInProgress,
    SenderError,
    SmsDeliveryError,
    UserCancelled,
    ValidationError,
)
from common.executor_pool import cleanup_executor, run_in_shared_executor
from common.graph_auth import AuthSession, HostContext, SessionStore, detect_host_context
from common.graph_client import GraphClient
from common.models import Credential, UserProfile
from common.sms_gateway import SmsGateway
from config.credentials import get_settings

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

SMS_REQUIRED = "Phone number and message are required."
HOST_TOKEN_HEADER = "x-host-sso-token"


# ─────────────────────────  App + lifespan  ─────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    cleanup_executor()


app = FastAPI(title="Teams / SMS sender", lifespan=lifespan)
app.state.sessions = SessionStore()


# ─────────────────────────  Dependencies  ───────────────────────────────
def get_store(request: Request) -> SessionStore:
    return request.app.state.sessions


@lru_cache
def get_sms_gateway() -> SmsGateway:
    return SmsGateway()


def get_graph_factory() -> Callable[[Credential], GraphClient]:
    timeout = get_settings().GRAPH_TIMEOUT_SECONDS
    return lambda credential: GraphClient(credential, timeout=timeout)


def _cookie(request: Request) -> Optional[str]:
    return request.cookies.get(get_settings().SESSION_COOKIE_NAME)


def _bind_cookie(response: Response, session: AuthSession) -> None:
    response.set_cookie(
        get_settings().SESSION_COOKIE_NAME, session.id,
        httponly=True, samesite="none", secure=True,
    )


def _session_or_create(request: Request, store: SessionStore) -> AuthSession:
    context = detect_host_context(request.headers, request.query_params)
    return store.get_or_create(_cookie(request), context)


def get_session(request: Request, store: SessionStore = Depends(get_store)) -> AuthSession:
    session = store.get(_cookie(request))
    if session is None:
        raise AuthRequired("Sign-in required.", login_url="/auth/login")
    return session


def get_optional_session(request: Request, store: SessionStore = Depends(get_store)) -> Optional[AuthSession]:
    return store.get(_cookie(request))


async def get_credential(request: Request, session: AuthSession = Depends(get_session)) -> Credential:
    return await session.strategy.acquire(session, request.headers.get(HOST_TOKEN_HEADER))


async def _load_profile(session: AuthSession, credential: Credential, graph_factory) -> UserProfile:
    if session.profile is None:
        async with graph_factory(credential) as graph:
            session.profile = await graph.get_profile()
    return session.profile


# ─────────────────────────  Error mapping  ──────────────────────────────
def _status_for(exc: SenderError) -> int:
    if isinstance(exc, (ValidationError, UserCancelled)):
        return 400
    if isinstance(exc, AuthRequired):
        return 401
    if isinstance(exc, InteractionAlreadyInProgress):
        return 409
    if isinstance(exc, GraphAPIError) and exc.status in (401, 403):
        return exc.status
    if isinstance(exc, (GraphAPIError, CreationRejected, DeliveryFailure)):
        return 502
    return 500


@app.exception_handler(SenderError)
async def sender_error_handler(request: Request, exc: SenderError) -> JSONResponse:
    status = _status_for(exc)
    if status < 500:
        logger.warning("%s %s → %s: %s", request.method, request.url.path, status, exc)
    else:
        logger.error("%s %s → %s: %s", request.method, request.url.path, status, exc,
                     exc_info=exc)
    content = {"error": str(exc)}
    if isinstance(exc, AuthRequired) and exc.login_url:
        content["login_url"] = exc.login_url
    return JSONResponse(content, status_code=status)


# ─────────────────────────  Auth endpoints  ─────────────────────────────
@app.get("/auth/login")
async def auth_login(request: Request, store: SessionStore = Depends(get_store)) -> RedirectResponse:
    session = _session_or_create(request, store)
    url = await run_in_shared_executor(
        session.begin_interactive_sign_in, get_settings().MS_REDIRECT_URI,
    )
    response = RedirectResponse(url)
    _bind_cookie(response, session)
    return response


@app.get("/auth/callback")
async def auth_callback(request: Request, store: SessionStore = Depends(get_store)) -> HTMLResponse:
    session = store.get(_cookie(request))
    if session is None:
        raise AuthRequired("Sign-in session not found – start again.", login_url="/auth/login")
    await run_in_shared_executor(
        session.complete_interactive_sign_in, dict(request.query_params),
    )
    return HTMLResponse("<h2>✅ Login successful — you can close this tab.</h2>")


class SsoIn(BaseModel):
    token: str = Field(..., description="SSO token handed over by the host frame")


@app.post("/auth/sso")
async def auth_sso(payload: SsoIn, request: Request, store: SessionStore = Depends(get_store)):
    session = store.get(_cookie(request))
    is_new = session is None
    if is_new:
        session = store.build(HostContext.EMBEDDED)
    credential = await session.strategy.acquire(session, payload.token)
    if is_new:
        store.add(session)          # only sessions that actually signed in are kept
    response = JSONResponse({"signed_in": True, "account_id": credential.account_id})
    _bind_cookie(response, session)
    return response


@app.post("/auth/logout")
async def auth_logout(request: Request, store: SessionStore = Depends(get_store)):
    store.discard(_cookie(request))
    response = JSONResponse({"signed_out": True})
    response.delete_cookie(get_settings().SESSION_COOKIE_NAME)
    return response


# ─────────────────────────  Teams endpoints  ────────────────────────────
@app.get("/me")
async def me(
    session: AuthSession = Depends(get_session),
    credential: Credential = Depends(get_credential),
    graph_factory=Depends(get_graph_factory),
):
    profile = await _load_profile(session, credential, graph_factory)
    return profile.model_dump()


class ChatOut(BaseModel):
    id: str
    name: str
    topic: Optional[str] = None
    type: str
    participants: List[dict]
    last_message_preview: Optional[str] = None


@app.get("/chats", response_model=List[ChatOut])
async def chats(
    q: str = "",
    preview: bool = False,
    session: AuthSession = Depends(get_session),
    credential: Credential = Depends(get_credential),
    graph_factory=Depends(get_graph_factory),
):
    async with graph_factory(credential) as graph:
        resolver = ChatResolver(graph, session.profile)
        profile = await resolver.current_user()
        session.profile = profile
        conversations = await resolver.list_conversations_with_members(with_preview=preview)

    return [
        ChatOut(
            id=c.id,
            name=c.display_name_for(profile.id),
            topic=c.topic,
            type=c.kind.value,
            participants=[p.model_dump() for p in c.participants],
            last_message_preview=c.last_message_preview,
        )
        for c in search_conversations(conversations, q)
    ]


class TeamsMessageIn(BaseModel):
    recipient: Optional[str] = Field(None, description="User id or e-mail")
    message: str = ""
    chat_id: Optional[str] = Field(None, description="Skip lookup, post here")


@app.post("/teams/messages")
async def send_teams_message(
    payload: TeamsMessageIn,
    session: AuthSession = Depends(get_session),
    credential: Credential = Depends(get_credential),
    graph_factory=Depends(get_graph_factory),
):
    async with graph_factory(credential) as graph:
        resolver = ChatResolver(graph, session.profile)
        receipt = await resolver.send_to(payload.recipient, payload.message, payload.chat_id)
        if resolver.profile is not None:
            session.profile = resolver.profile
    return {"success": True, **receipt.model_dump(mode="json")}


# ─────────────────────────  SMS endpoints  ──────────────────────────────
class SmsIn(BaseModel):
    to: Optional[str] = None
    body: Optional[str] = None
    include_signature: bool = Field(False, description="Append the sender's Teams name and e-mail")


class BulkSmsIn(BaseModel):
    to: List[str] = Field(default_factory=list)
    body: Optional[str] = None
    include_signature: bool = False


async def _sms_body(
    body: str,
    include_signature: bool,
    request: Request,
    session: Optional[AuthSession],
    graph_factory,
) -> str:
    if not include_signature:
        return body
    if session is None:
        raise AuthRequired("Sign in to add your Teams signature.", login_url="/auth/login")
    credential = await session.strategy.acquire(session, request.headers.get(HOST_TOKEN_HEADER))
    profile = await _load_profile(session, credential, graph_factory)
    return body + profile.sms_signature()


@app.post("/sms")
async def send_sms(
    payload: SmsIn,
    request: Request,
    gateway: SmsGateway = Depends(get_sms_gateway),
    session: Optional[AuthSession] = Depends(get_optional_session),
    graph_factory=Depends(get_graph_factory),
):
    if not payload.to or not payload.body:
        return JSONResponse({"error": SMS_REQUIRED}, status_code=400)
    body = await _sms_body(payload.body, payload.include_signature, request, session, graph_factory)
    try:
        receipt = await gateway.send(payload.to, body)
    except SmsDeliveryError as exc:
        return JSONResponse({"error": str(exc)}, status_code=500)
    return {"success": True, "sid": receipt.sid}


@app.post("/sms/bulk")
async def send_bulk_sms(
    payload: BulkSmsIn,
    request: Request,
    gateway: SmsGateway = Depends(get_sms_gateway),
    session: Optional[AuthSession] = Depends(get_optional_session),
    graph_factory=Depends(get_graph_factory),
):
    recipients = [to for to in payload.to if to]
    if not recipients or not payload.body:
        return JSONResponse({"error": SMS_REQUIRED}, status_code=400)
    body = await _sms_body(payload.body, payload.include_signature, request, session, graph_factory)
    try:
        receipts = await gateway.send_bulk(recipients, body)
    except SmsDeliveryError as exc:
        return JSONResponse({"error": str(exc)}, status_code=500)
    return {"success": True, "sids": [r.sid for r in receipts]}
