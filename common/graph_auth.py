"""
Delegated Microsoft Graph sign-in, one session per browser
===========================================================
• Every browser session gets its own AuthSession with its own MSAL token
  cache – nothing is shared between users and nothing lives in globals
• Standalone browser  → auth-code flow (GET /auth/login → /auth/callback)
• Embedded Teams tab  → cached token, else on-behalf-of exchange of the host
  SSO token, falling back to the auth-code flow when the exchange fails
• The strategy is picked once, when the session is created
"""
from __future__ import annotations

import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

import msal

from common.errors import AuthRequired, InteractionAlreadyInProgress, UserCancelled
from common.executor_pool import run_in_shared_executor
from common.models import Credential, CredentialSource, UserProfile
from config.credentials import get_settings

logger = logging.getLogger(__name__)

LOGIN_PATH = "/auth/login"

# OAuth error codes that mean the user walked away from the prompt
_CANCEL_ERRORS = {"access_denied", "consent_required", "interaction_required", "user_cancelled"}


# ───── MSAL app factory ──────────────────────────────────────────────────
def get_msal_app(cache: msal.SerializableTokenCache) -> msal.ConfidentialClientApplication:
    settings = get_settings()
    return msal.ConfidentialClientApplication(
        client_id=settings.MS_CLIENT_ID,
        client_credential=settings.MS_CLIENT_SECRET.get_secret_value(),
        authority=settings.authority,
        token_cache=cache,
    )


MsalAppFactory = Callable[[msal.SerializableTokenCache], Any]


# ───── Host context detection──────────────────────────────────────────────
class HostContext(str, Enum):
    STANDALONE = "standalone"
    EMBEDDED = "embedded"


def detect_host_context(headers: Mapping[str, str], query: Mapping[str, str]) -> HostContext:
    """EMBEDDED when loaded inside a frame (Teams tab), else STANDALONE."""
    if headers.get("sec-fetch-dest", "").lower() == "iframe":
        return HostContext.EMBEDDED
    if query.get("host", "").lower() == "teams":
        return HostContext.EMBEDDED
    return HostContext.STANDALONE


def _account_id(result: Dict[str, Any]) -> str:
    claims = result.get("id_token_claims") or {}
    return claims.get("oid") or claims.get("sub") or ""


# ───── Session ───────────────────────────────────────────────────────────
class AuthSession:
    """Token cache, pending sign-in and cached profile for one browser session."""

    def __init__(
        self,
        session_id: str,
        context: HostContext = HostContext.STANDALONE,
        app_factory: MsalAppFactory = get_msal_app,
    ):
        self.id = session_id
        self.context = context
        self.created_at = datetime.now(timezone.utc)
        self.cache = msal.SerializableTokenCache()
        self.strategy = select_strategy(context)
        self.profile: Optional[UserProfile] = None

        self.last_seen = time.monotonic()

        self._app = app_factory(self.cache)
        # guards _pending_flow; MSAL calls run on executor threads
        self._flow_lock = threading.Lock()
        self._pending_flow: Optional[Dict[str, Any]] = None
        self._flow_started_at = 0.0

    @property
    def scopes(self):
        return list(get_settings().GRAPH_SCOPES)

    # ---------- lifetime ----------
    def touch(self) -> None:
        self.last_seen = time.monotonic()

    def is_idle(self, now: float | None = None) -> bool:
        """
        Idle past SESSION_IDLE_TIMEOUT_SECONDS, or never signed in and idle
        past INTERACTION_TIMEOUT_SECONDS (an abandoned /auth/login).
        """
        settings = get_settings()
        idle = (now if now is not None else time.monotonic()) - self.last_seen
        if idle > settings.SESSION_IDLE_TIMEOUT_SECONDS:
            return True
        return idle > settings.INTERACTION_TIMEOUT_SECONDS and not self._app.get_accounts()

    # ---------- silent ----------
    def get_active_credential(self) -> Optional[Credential]:
        """Cached (or silently refreshed) credential, else None."""
        accounts = self._app.get_accounts()
        if not accounts:
            return None
        account = accounts[0]
        result = self._app.acquire_token_silent(self.scopes, account=account)
        if not result or "access_token" not in result:
            return None
        return Credential.from_msal(
            result, account.get("local_account_id", ""), CredentialSource.SILENT,
        )

    # ---------- interactive ----------
    def _flow_pending(self) -> bool:
        """Caller holds _flow_lock."""
        if self._pending_flow is None:
            return False
        age = time.monotonic() - self._flow_started_at
        if age > get_settings().INTERACTION_TIMEOUT_SECONDS:
            logger.info("Session %s: abandoning stale sign-in (%.0fs old)", self.id, age)
            self._pending_flow = None
            return False
        return True

    def interaction_in_progress(self) -> bool:
        with self._flow_lock:
            return self._flow_pending()

    def begin_interactive_sign_in(self, redirect_uri: str) -> str:
        """Start the auth-code flow and return the URL the browser must open."""
        with self._flow_lock:
            if self._flow_pending():
                raise InteractionAlreadyInProgress(
                    "A sign-in is already in progress. Finish it or wait before trying again."
                )
            # reserve the slot so a concurrent begin fails while MSAL runs
            reservation: Dict[str, Any] = {}
            self._pending_flow = reservation
            self._flow_started_at = time.monotonic()

        try:
            flow = self._app.initiate_auth_code_flow(
                self.scopes, redirect_uri=redirect_uri, prompt="select_account",
            )
        except Exception:
            self._release(reservation)
            raise
        if "auth_uri" not in flow:
            self._release(reservation)
            raise AuthRequired(f"Could not start sign-in: {flow.get('error_description', flow)}")

        with self._flow_lock:
            if self._pending_flow is reservation:
                self._pending_flow = flow
        return flow["auth_uri"]

    def _release(self, reservation: Dict[str, Any]) -> None:
        with self._flow_lock:
            if self._pending_flow is reservation:
                self._pending_flow = None

    def complete_interactive_sign_in(self, auth_response: Dict[str, str]) -> Credential:
        with self._flow_lock:
            flow, self._pending_flow = self._pending_flow, None
        if flow is not None and "state" not in flow:
            flow = None                     # still a reservation, MSAL never returned
        error = auth_response.get("error")
        if error in _CANCEL_ERRORS:
            raise UserCancelled(auth_response.get("error_description") or "Sign-in was cancelled.")
        if flow is None:
            raise AuthRequired("No sign-in in progress – start again.", login_url=LOGIN_PATH)

        try:
            result = self._app.acquire_token_by_auth_code_flow(flow, dict(auth_response))
        except ValueError as exc:          # state mismatch / replayed callback
            raise AuthRequired(f"Sign-in response rejected: {exc}", login_url=LOGIN_PATH) from exc

        if "access_token" not in result:
            raise AuthRequired(
                f"Auth-code exchange failed: {result.get('error_description', error)}",
                login_url=LOGIN_PATH,
            )
        logger.info("✓ session %s signed in interactively", self.id)
        return Credential.from_msal(result, _account_id(result), CredentialSource.INTERACTIVE)

    # ---------- host SSO ----------
    def exchange_host_token(self, host_token: str) -> Credential:
        result = self._app.acquire_token_on_behalf_of(host_token, self.scopes)
        if "access_token" not in result:
            raise AuthRequired(
                f"SSO exchange failed: {result.get('error_description', result.get('error'))}",
                login_url=LOGIN_PATH,
            )
        logger.info("✓ session %s signed in via host SSO", self.id)
        return Credential.from_msal(result, _account_id(result), CredentialSource.HOST_SSO)

    # ---------- sign-out ----------
    def sign_out(self) -> None:
        """Forget every account and pending flow. Safe to call twice."""
        for account in self._app.get_accounts():
            self._app.remove_account(account)
        with self._flow_lock:
            self._pending_flow = None
        self.profile = None


# ───── Strategies ────────────────────────────────────────────────────────
class CredentialStrategy:
    """Yields a Credential for a session; callers never care which one ran."""
    name = "base"

    async def acquire(self, session: AuthSession, host_token: str | None = None) -> Credential:
        raise NotImplementedError


class InteractiveStrategy(CredentialStrategy):
    name = "interactive"

    async def acquire(self, session: AuthSession, host_token: str | None = None) -> Credential:
        credential = await run_in_shared_executor(session.get_active_credential)
        if credential is None:
            raise AuthRequired("Sign-in required.", login_url=LOGIN_PATH)
        return credential


class HostSSOStrategy(CredentialStrategy):
    name = "host_sso"

    def __init__(self, fallback: CredentialStrategy | None = None):
        self._fallback = fallback or InteractiveStrategy()

    async def acquire(self, session: AuthSession, host_token: str | None = None) -> Credential:
        credential = await run_in_shared_executor(session.get_active_credential)
        if credential is not None:
            return credential
        if host_token:
            try:
                return await run_in_shared_executor(session.exchange_host_token, host_token)
            except AuthRequired as exc:
                logger.warning("Session %s: %s – falling back to interactive sign-in", session.id, exc)
        return await self._fallback.acquire(session)


def select_strategy(context: HostContext) -> CredentialStrategy:
    if context is HostContext.EMBEDDED:
        return HostSSOStrategy()
    return InteractiveStrategy()


# ───── Session store ─────────────────────────────────────────────────────
class SessionStore:
    """Owns every AuthSession, keyed by the opaque id kept in the session cookie."""

    def __init__(self, app_factory: MsalAppFactory = get_msal_app):
        self._app_factory = app_factory
        self._sessions: Dict[str, AuthSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def build(self, context: HostContext = HostContext.STANDALONE) -> AuthSession:
        """A fresh session that is not kept until `add` is called."""
        return AuthSession(uuid.uuid4().hex, context, self._app_factory)

    def add(self, session: AuthSession) -> AuthSession:
        self.sweep()
        self._sessions[session.id] = session
        logger.info("Session %s created (%s, strategy=%s)",
                    session.id, session.context.value, session.strategy.name)
        return session

    def create(self, context: HostContext = HostContext.STANDALONE) -> AuthSession:
        return self.add(self.build(context))

    def sweep(self) -> int:
        """Drop idle sessions; returns how many went."""
        now = time.monotonic()
        idle = [sid for sid, session in self._sessions.items() if session.is_idle(now)]
        for sid in idle:
            self._sessions.pop(sid).sign_out()
        if idle:
            logger.info("Expired %d idle session(s)", len(idle))
        return len(idle)

    def get(self, session_id: str | None) -> Optional[AuthSession]:
        if not session_id:
            return None
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if session.is_idle():
            self.discard(session_id)
            return None
        session.touch()
        return session

    def get_or_create(self, session_id: str | None, context: HostContext) -> AuthSession:
        return self.get(session_id) or self.create(context)

    def discard(self, session_id: str | None) -> None:
        session = self._sessions.pop(session_id, None) if session_id else None
        if session is not None:
            session.sign_out()
            logger.info("Session %s signed out", session.id)
