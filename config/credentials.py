"""
Loads ALL secrets and tunables from env-vars.
Import anywhere:  from config.credentials import get_settings
"""
from functools import lru_cache
from typing import List

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class _Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",         # used only for local dev
        case_sensitive=True,
        extra="ignore",
    )

    # -------- Microsoft Graph / Teams --------
    MS_CLIENT_ID:      str = ""
    MS_CLIENT_SECRET:  SecretStr = SecretStr("")
    MS_TENANT_ID:      str = "common"
    MS_REDIRECT_URI:   str = "http://localhost:8000/auth/callback"
    GRAPH_SCOPES:      List[str] = ["User.Read", "Chat.ReadWrite", "ChatMessage.Send"]

    GRAPH_TIMEOUT_SECONDS:       float = 30.0
    INTERACTION_TIMEOUT_SECONDS: int = 300
    SESSION_IDLE_TIMEOUT_SECONDS: int = 8 * 3600

    # -------- Twilio --------
    TWILIO_ACCOUNT_SID:  str = ""
    TWILIO_AUTH_TOKEN:   SecretStr = SecretStr("")
    TWILIO_PHONE_NUMBER: str = ""

    # -------- Service --------
    SENDER_MAX_WORKERS:  int = 10
    SESSION_COOKIE_NAME: str = "sender_session"

    @property
    def authority(self) -> str:
        return f"https://login.microsoftonline.com/{self.MS_TENANT_ID}"


@lru_cache
def get_settings() -> _Settings:
    """Singleton accessor for settings ↔ avoids re-parsing envs."""
    return _Settings()
