"""
common.errors
=============

Every failure the sender can surface to a caller. All of them carry a
human-readable message; none of them is fatal to the process.
"""
from __future__ import annotations

from typing import Optional


class SenderError(Exception):
    """Base class – `str(exc)` is safe to show to the user."""


# ───────── input ─────────
class ValidationError(SenderError):
    """Missing recipient or message. Raised before any network call."""


# ───────── auth / session ─────────
class AuthRequired(SenderError):
    """No usable credential – the caller must run the interactive sign-in."""

    def __init__(self, message: str = "Sign-in required.", login_url: str | None = None):
        super().__init__(message)
        self.login_url = login_url


class InteractionAlreadyInProgress(SenderError):
    """A second interactive sign-in was started while one is still pending."""


class UserCancelled(SenderError):
    """The user closed or declined the consent prompt."""


# ───────── Graph ─────────
class GraphAPIError(SenderError):
    """Non-2xx answer (or transport failure) from Microsoft Graph."""

    def __init__(self, status: int, message: str, code: str | None = None):
        super().__init__(f"Graph API error ({status}): {message}")
        self.status = status
        self.code = code
        self.message = message


class TransientLookupFailure(SenderError):
    """Membership fetch for one chat failed during the search scan."""


class ListingFailure(SenderError):
    """The chat listing itself failed; search is treated as 'no match'."""


class CreationRejected(SenderError):
    """Graph refused to create the one-to-one chat."""

    def __init__(self, original: Exception, known_shape_mismatch: bool = False):
        super().__init__(f"Could not create chat: {original}")
        self.original = original
        self.known_shape_mismatch = known_shape_mismatch


class DeliveryFailure(SenderError):
    """Posting the message failed after the chat was resolved."""

    def __init__(self, conversation_id: str, cause: Optional[Exception] = None):
        super().__init__(f"Failed to deliver message to chat {conversation_id}: {cause}")
        self.conversation_id = conversation_id
        self.cause = cause


# ───────── SMS ─────────
class SmsDeliveryError(SenderError):
    """Twilio rejected the message or could not be reached."""
