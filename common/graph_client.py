"""
common.graph_client
===================

Thin async wrapper around the handful of Microsoft Graph calls the sender
needs. One instance per credential – build a new one after re-auth.

Dependencies
------------
* httpx (async client)
* common.models / common.errors
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from common.errors import GraphAPIError
from common.models import (
    Conversation,
    Credential,
    MessageReceipt,
    OutboundMessage,
    Participant,
    UserProfile,
)

logger = logging.getLogger(__name__)

GRAPH_BASE = "https://graph.microsoft.com/v1.0"


def user_bind(user: str) -> str:
    """`user@odata.bind` value for a user id or UPN."""
    return f"{GRAPH_BASE}/users('{user}')"


class GraphClient:
    """
    Usage:
        async with GraphClient(credential) as graph:
            me = await graph.get_profile()
            await graph.post_message(chat_id, OutboundMessage(body="hi"))
    """

    def __init__(
        self,
        credential: Credential,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not credential.access_token:
            raise ValueError("Access token is required to initialise GraphClient")
        logger.info("Graph client for account %s (token %s…)",
                    credential.account_id, credential.access_token[:10])
        self._http = httpx.AsyncClient(
            base_url=GRAPH_BASE,
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {credential.access_token}",
                "Content-Type": "application/json",
            },
        )

    async def __aenter__(self) -> "GraphClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ───────── plumbing ─────────
    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: Dict[str, Any] | None = None,
        payload: Dict[str, Any] | None = None,
    ) -> Dict[str, Any]:
        try:
            resp = await self._http.request(method, url, params=params, json=payload)
        except httpx.HTTPError as exc:
            raise GraphAPIError(0, f"{type(exc).__name__}: {exc}") from exc

        if resp.is_success:
            return resp.json() if resp.content else {}

        code, message = None, resp.text
        try:
            err = resp.json().get("error", {})
            code = err.get("code")
            message = err.get("message") or message
        except ValueError:
            pass
        raise GraphAPIError(resp.status_code, message, code)

    async def _collect(self, url: str, params: Dict[str, Any] | None = None) -> List[Dict]:
        """Follow `@odata.nextLink` until the collection is exhausted."""
        items: List[Dict] = []
        page = await self._request("GET", url, params=params)
        items.extend(page.get("value", []))
        while page.get("@odata.nextLink"):
            page = await self._request("GET", page["@odata.nextLink"])
            items.extend(page.get("value", []))
        return items

    # ───────── directory ─────────
    async def get_profile(self) -> UserProfile:
        data = await self._request(
            "GET", "/me",
            params={"$select": "id,displayName,mail,userPrincipalName"},
        )
        return UserProfile.from_graph(data)

    # ───────── chats ─────────
    async def list_conversations(self) -> List[Conversation]:
        rows = await self._collect("/me/chats", params={"$select": "id,topic,chatType"})
        return [Conversation.from_graph(r) for r in rows]

    async def list_members(self, conversation_id: str) -> List[Participant]:
        rows = await self._collect(f"/chats/{conversation_id}/members")
        return [Participant.from_graph(r) for r in rows]

    async def list_messages(self, conversation_id: str, top: int = 1) -> List[Dict[str, Any]]:
        page = await self._request(
            "GET", f"/chats/{conversation_id}/messages", params={"$top": top},
        )
        return page.get("value", [])

    async def create_chat(self, payload: Dict[str, Any]) -> Conversation:
        data = await self._request("POST", "/chats", payload=payload)
        return Conversation.from_graph(data)

    async def create_one_on_one_conversation(self, member_a: str, member_b: str) -> Conversation:
        """Create a oneOnOne chat, both members bound via `user@odata.bind`."""
        return await self.create_chat({
            "chatType": "oneOnOne",
            "members": [
                {
                    "@odata.type": "#microsoft.graph.aadUserConversationMember",
                    "roles": ["owner"],
                    "user@odata.bind": user_bind(member),
                }
                for member in (member_a, member_b)
            ],
        })

    async def post_message(self, conversation_id: str, message: OutboundMessage) -> MessageReceipt:
        data = await self._request(
            "POST", f"/chats/{conversation_id}/messages",
            payload=message.graph_payload(),
        )
        return MessageReceipt.from_graph(conversation_id, data)
