"""Shared fakes: an in-memory Graph, an MSAL stand-in and a Twilio stand-in."""
from __future__ import annotations

from types import SimpleNamespace
from typing import Any, Dict, List

import pytest

from common.errors import GraphAPIError
from common.models import (
    Conversation,
    MessageReceipt,
    OutboundMessage,
    Participant,
    UserProfile,
)


class FakeGraph:
    """
    Records every call as (name, args). `members` maps chat id → list of
    member dicts or an exception to raise; `create_results` is consumed in
    order by the two create calls.
    """

    def __init__(
        self,
        chats: List[Dict[str, Any]] | Exception | None = None,
        members: Dict[str, Any] | None = None,
        create_results: List[Any] | None = None,
        post_error: Exception | None = None,
        me: str = "me-id",
    ):
        self.chats = chats if chats is not None else []
        self.members = members or {}
        self.create_results = list(create_results or [])
        self.post_error = post_error
        self.me = me
        self.calls: List[tuple] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return None

    def names(self) -> List[str]:
        return [c[0] for c in self.calls]

    async def get_profile(self) -> UserProfile:
        self.calls.append(("get_profile",))
        return UserProfile(id=self.me, display_name="Me", mail="me@contoso.com")

    async def list_conversations(self) -> List[Conversation]:
        self.calls.append(("list_conversations",))
        if isinstance(self.chats, Exception):
            raise self.chats
        return [Conversation.from_graph(c) for c in self.chats]

    async def list_members(self, conversation_id: str) -> List[Participant]:
        self.calls.append(("list_members", conversation_id))
        value = self.members.get(conversation_id, [])
        if isinstance(value, Exception):
            raise value
        return [Participant.from_graph(m) for m in value]

    async def list_messages(self, conversation_id: str, top: int = 1):
        self.calls.append(("list_messages", conversation_id))
        return [{"body": {"content": f"last in {conversation_id}"},
                 "createdDateTime": "2026-01-01T10:00:00Z"}]

    def _next_create(self) -> Conversation:
        result = self.create_results.pop(0) if self.create_results else {"id": "new-chat"}
        if isinstance(result, Exception):
            raise result
        return Conversation.from_graph({"chatType": "oneOnOne", **result})

    async def create_one_on_one_conversation(self, member_a: str, member_b: str) -> Conversation:
        self.calls.append(("create_one_on_one_conversation", member_a, member_b))
        return self._next_create()

    async def create_chat(self, payload: Dict[str, Any]) -> Conversation:
        self.calls.append(("create_chat", payload))
        return self._next_create()

    async def post_message(self, conversation_id: str, message: OutboundMessage) -> MessageReceipt:
        self.calls.append(("post_message", conversation_id, message.body))
        if self.post_error:
            raise self.post_error
        return MessageReceipt(conversation_id=conversation_id, message_id="m1")


class FakeMsalApp:
    """Just enough of ConfidentialClientApplication for AuthSession."""

    def __init__(self, cache=None):
        self.cache = cache
        self.accounts: List[Dict[str, str]] = []
        self.silent_result: Dict[str, Any] | None = {"access_token": "silent-token", "expires_in": 3600}
        self.obo_result: Dict[str, Any] = {
            "access_token": "obo-token", "expires_in": 3600,
            "id_token_claims": {"oid": "user-oid"},
        }
        self.code_result: Dict[str, Any] = {
            "access_token": "interactive-token", "expires_in": 3600,
            "id_token_claims": {"oid": "user-oid"},
        }
        self.flows_started = 0
        self.obo_calls: List[str] = []

    def get_accounts(self):
        return list(self.accounts)

    def remove_account(self, account):
        self.accounts.remove(account)

    def acquire_token_silent(self, scopes, account=None):
        return self.silent_result

    def initiate_auth_code_flow(self, scopes, redirect_uri=None, **kwargs):
        self.flows_started += 1
        return {"auth_uri": f"https://login.example/authorize?n={self.flows_started}",
                "state": f"state-{self.flows_started}"}

    def acquire_token_by_auth_code_flow(self, flow, auth_response):
        if auth_response.get("state") != flow["state"]:
            raise ValueError("state mismatch")
        if "access_token" in self.code_result:
            self.accounts.append({"local_account_id": "user-oid", "home_account_id": "user-oid.tid"})
        return self.code_result

    def acquire_token_on_behalf_of(self, user_assertion, scopes):
        self.obo_calls.append(user_assertion)
        return self.obo_result


class FakeTwilio:
    def __init__(self, error: Exception | None = None):
        self.error = error
        self.sent: List[Dict[str, str]] = []
        self.messages = SimpleNamespace(create=self._create)

    def _create(self, body, to, from_):
        if self.error:
            raise self.error
        self.sent.append({"body": body, "to": to, "from_": from_})
        return SimpleNamespace(sid=f"SM{len(self.sent)}")


@pytest.fixture
def graph_error():
    def _make(status: int = 500, message: str = "boom", code: str | None = None):
        return GraphAPIError(status, message, code)
    return _make


@pytest.fixture
def make_graph():
    return FakeGraph


@pytest.fixture
def msal_app():
    return FakeMsalApp()


@pytest.fixture
def app_factory(msal_app):
    def _factory(cache):
        msal_app.cache = cache
        return msal_app
    return _factory


@pytest.fixture
def make_twilio():
    return FakeTwilio
