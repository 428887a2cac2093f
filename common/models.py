"""
In-memory shapes shared by the Graph client, the chat resolver and the API.
Nothing here is persisted.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class CredentialSource(str, Enum):
    SILENT = "silent"
    INTERACTIVE = "interactive"
    HOST_SSO = "host_sso"


class Credential(BaseModel):
    """Bearer token for the signed-in user. Replaced, never mutated."""
    model_config = ConfigDict(frozen=True)

    access_token: str
    account_id: str
    expires_at: datetime
    source: CredentialSource = CredentialSource.SILENT

    def is_expired(self, skew: timedelta = timedelta(minutes=5)) -> bool:
        return datetime.now(timezone.utc) >= self.expires_at - skew

    @classmethod
    def from_msal(
        cls,
        result: Dict[str, Any],
        account_id: str,
        source: CredentialSource,
    ) -> "Credential":
        expires_in = int(result.get("expires_in", 3600))
        return cls(
            access_token=result["access_token"],
            account_id=account_id,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
            source=source,
        )


class UserProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    display_name: Optional[str] = None
    mail: Optional[str] = None
    user_principal_name: Optional[str] = None

    @classmethod
    def from_graph(cls, data: Dict[str, Any]) -> "UserProfile":
        return cls(
            id=data["id"],
            display_name=data.get("displayName"),
            mail=data.get("mail"),
            user_principal_name=data.get("userPrincipalName"),
        )

    def sms_signature(self) -> str:
        email = self.mail or self.user_principal_name or ""
        return f"\n\nSent from MS Teams: {self.display_name or ''} & {email}"


class ConversationKind(str, Enum):
    ONE_ON_ONE = "oneOnOne"
    GROUP = "group"
    MEETING = "meeting"


class Participant(BaseModel):
    user_id: Optional[str] = None
    display_name: str = "Unknown"
    email: Optional[str] = None

    @classmethod
    def from_graph(cls, data: Dict[str, Any]) -> "Participant":
        return cls(
            user_id=data.get("userId"),
            display_name=data.get("displayName") or "Unknown",
            email=data.get("email"),
        )

    def matches(self, identifier: str) -> bool:
        """True if `identifier` is this member's user id or e-mail (any case)."""
        needle = identifier.strip().lower()
        return any(
            value and value.lower() == needle
            for value in (self.user_id, self.email)
        )


class Conversation(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    id: str
    topic: Optional[str] = None
    kind: ConversationKind = ConversationKind.GROUP
    participants: List[Participant] = Field(default_factory=list)
    last_message_preview: Optional[str] = None
    last_message_time: Optional[datetime] = None

    @classmethod
    def from_graph(cls, data: Dict[str, Any]) -> "Conversation":
        try:
            kind = ConversationKind(data.get("chatType", "group"))
        except ValueError:
            kind = ConversationKind.GROUP
        return cls(id=data["id"], topic=data.get("topic"), kind=kind)

    def display_name_for(self, current_user_id: str | None) -> str:
        if self.kind is ConversationKind.ONE_ON_ONE and current_user_id:
            other = next(
                (p for p in self.participants if p.user_id != current_user_id),
                None,
            )
            if other and other.display_name != "Unknown":
                return other.display_name
        return self.topic or f"Chat {self.id[:8]}..."


class OutboundMessage(BaseModel):
    """One send attempt. Built fresh every time, never retried from."""
    model_config = ConfigDict(frozen=True)

    body: str
    target_conversation_id: Optional[str] = None
    target_recipient_id: Optional[str] = None

    def graph_payload(self) -> Dict[str, Any]:
        return {"body": {"contentType": "text", "content": self.body}}


class MessageReceipt(BaseModel):
    conversation_id: str
    message_id: str
    created_at: Optional[datetime] = None

    @classmethod
    def from_graph(cls, conversation_id: str, data: Dict[str, Any]) -> "MessageReceipt":
        return cls(
            conversation_id=conversation_id,
            message_id=data.get("id", ""),
            created_at=data.get("createdDateTime"),
        )


class SmsReceipt(BaseModel):
    sid: str
