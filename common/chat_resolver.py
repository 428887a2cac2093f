"""
common.chat_resolver
====================

Find-or-create a one-to-one Teams chat with a recipient, then post into it.

    resolver = ChatResolver(graph)
    receipt  = await resolver.send_to("alice@contoso.com", "hi")

Flow
----
1. explicit chat id  → post directly (no profile / listing / member calls)
2. current user id   → fetched once, cached on the resolver
3. search            → linear scan of the user's chats, first member match wins
4. create            → oneOnOne chat, both members bound via `user@odata.bind`
5. fallback create   → once, with raw `userId` members, only for the known
                       member-binding rejection; on failure the *first* error
                       is what the caller sees
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from common.errors import (
    CreationRejected,
    DeliveryFailure,
    GraphAPIError,
    ListingFailure,
    TransientLookupFailure,
    ValidationError,
)
from common.graph_client import GraphClient
from common.models import (
    Conversation,
    MessageReceipt,
    OutboundMessage,
    Participant,
    UserProfile,
)

logger = logging.getLogger(__name__)

# Fragments of Graph's error text for a rejected member binding. Graph only
# reports a generic "BadRequest" code for these, so the text is all we have.
_MEMBER_BINDING_MARKERS = ("user@odata.bind", "'userid' field is missing")


def is_member_binding_error(exc: GraphAPIError) -> bool:
    """True for the one creation failure that warrants the fallback payload."""
    if exc.status != 400:
        return False
    text = (exc.message or "").lower()
    return any(marker in text for marker in _MEMBER_BINDING_MARKERS)


def fallback_chat_payload(me_id: str, recipient: str) -> Dict[str, Any]:
    """oneOnOne payload with plain `userId` members, recipient passed as given."""
    return {
        "chatType": "oneOnOne",
        "members": [
            {
                "@odata.type": "#microsoft.graph.aadUserConversationMember",
                "roles": ["owner"],
                "userId": user_id,
            }
            for user_id in (me_id, recipient)
        ],
    }


@dataclass(frozen=True)
class MemberLookup:
    """Outcome of one membership fetch: members, or a soft failure."""
    conversation_id: str
    members: Optional[List[Participant]] = None
    failure: Optional[TransientLookupFailure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    def contains(self, identifier: str) -> bool:
        return self.ok and any(m.matches(identifier) for m in self.members or [])


def search_conversations(conversations: List[Conversation], query: str) -> List[Conversation]:
    """Case-insensitive filter over topic and participant names / e-mails."""
    needle = query.strip().lower()
    if not needle:
        return list(conversations)

    def _hit(conv: Conversation) -> bool:
        fields = [conv.topic or ""]
        for p in conv.participants:
            fields += [p.display_name or "", p.email or ""]
        return any(needle in f.lower() for f in fields)

    return [c for c in conversations if _hit(c)]


class ChatResolver:
    """Resolves a recipient to a chat and delivers one message per call."""

    def __init__(self, graph: GraphClient, profile: UserProfile | None = None):
        self._graph = graph
        self._profile = profile

    # ───────── current user ─────────
    @property
    def profile(self) -> UserProfile | None:
        """Profile if already fetched; never triggers a Graph call."""
        return self._profile

    async def current_user(self) -> UserProfile:
        if self._profile is None:
            self._profile = await self._graph.get_profile()
            logger.info("✓ profile fetched for %s", self._profile.id)
        return self._profile

    # ───────── search ─────────
    async def _lookup_members(self, conversation_id: str) -> MemberLookup:
        try:
            members = await self._graph.list_members(conversation_id)
        except GraphAPIError as exc:
            failure = TransientLookupFailure(f"members of {conversation_id}: {exc}")
            logger.warning("Skipping chat during search – %s", failure)
            return MemberLookup(conversation_id, failure=failure)
        return MemberLookup(conversation_id, members=members)

    async def find_existing_conversation(self, recipient: str) -> Optional[str]:
        """
        First chat (in listing order) having `recipient` as a member, or None.
        A failed listing counts as "none found".
        """
        try:
            conversations = await self._graph.list_conversations()
        except GraphAPIError as exc:
            logger.warning("Chat search aborted – %s", ListingFailure(str(exc)))
            return None

        logger.info("Searching %d chats for %s", len(conversations), recipient)
        for conv in conversations:
            lookup = await self._lookup_members(conv.id)
            if lookup.contains(recipient):
                logger.info("✓ existing chat %s with %s", conv.id, recipient)
                return conv.id

        logger.info("No existing chat with %s", recipient)
        return None

    # ───────── create ─────────
    async def create_conversation(self, recipient: str) -> Conversation:
        me = await self.current_user()
        try:
            return await self._graph.create_one_on_one_conversation(me.id, recipient)
        except GraphAPIError as exc:
            if not is_member_binding_error(exc):
                raise CreationRejected(exc) from exc
            original = CreationRejected(exc, known_shape_mismatch=True)

        logger.info("Chat creation rejected the member binding; retrying with userId members")
        try:
            return await self._graph.create_chat(fallback_chat_payload(me.id, recipient))
        except GraphAPIError as fallback_exc:
            logger.error("Fallback chat creation failed too: %s", fallback_exc)
            raise original from fallback_exc

    # ───────── post ─────────
    async def post(self, conversation_id: str, body: str) -> MessageReceipt:
        message = OutboundMessage(body=body, target_conversation_id=conversation_id)
        try:
            receipt = await self._graph.post_message(conversation_id, message)
        except GraphAPIError as exc:
            raise DeliveryFailure(conversation_id, exc) from exc
        logger.info("✓ message %s posted to chat %s", receipt.message_id, conversation_id)
        return receipt

    # ───────── public entry-point ─────────
    async def send_to(
        self,
        recipient: str | None,
        body: str,
        explicit_conversation_id: str | None = None,
    ) -> MessageReceipt:
        if not body or not body.strip():
            raise ValidationError("Message is required.")
        if explicit_conversation_id:
            return await self.post(explicit_conversation_id, body)

        recipient = (recipient or "").strip()
        if not recipient:
            raise ValidationError("Recipient ID or a selected chat is required.")

        await self.current_user()

        existing = await self.find_existing_conversation(recipient)
        if existing:
            return await self.post(existing, body)

        logger.info("Creating new chat with %s", recipient)
        chat = await self.create_conversation(recipient)
        logger.info("✓ chat %s created", chat.id)
        return await self.post(chat.id, body)

    # ───────── chat picker ─────────
    async def list_conversations_with_members(self, with_preview: bool = False) -> List[Conversation]:
        """
        Every chat with its participants filled in. A chat whose members can't
        be read keeps an empty participant list; a failed listing gives [].
        """
        try:
            conversations = await self._graph.list_conversations()
        except GraphAPIError as exc:
            logger.error("Error listing chats: %s", exc)
            return []

        for conv in conversations:
            lookup = await self._lookup_members(conv.id)
            if lookup.ok:
                conv.participants = lookup.members or []
            if with_preview:
                await self._fill_preview(conv)
        logger.info("Processed %d chats", len(conversations))
        return conversations

    async def _fill_preview(self, conv: Conversation) -> None:
        try:
            messages = await self._graph.list_messages(conv.id, top=1)
        except GraphAPIError as exc:
            logger.debug("No preview for chat %s: %s", conv.id, exc)
            return
        if messages:
            last = messages[0]
            conv.last_message_preview = ((last.get("body") or {}).get("content") or "")[:120]
            conv.last_message_time = last.get("createdDateTime")
