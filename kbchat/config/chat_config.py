from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


DEFAULT_WELCOME_MESSAGE = (
    "Welcome to the knowledge base assistant.\n\n"
    "Ask a question about your documents, or attach a file or image to "
    "have it analysed together with the knowledge base."
)


class ChatConfig(BaseSettings):
    """Configuration for the remote knowledge-base service and the chat engine."""

    api_base_url: str = Field("http://localhost:8030", alias="KBCHAT_API_BASE_URL")
    api_timeout: float = Field(30.0, alias="KBCHAT_API_TIMEOUT")
    history_prefix: str = Field("/api/chat-history", alias="KBCHAT_HISTORY_PREFIX")
    workflows_prefix: str = Field("/api/workflows", alias="KBCHAT_WORKFLOWS_PREFIX")

    model: str = Field("qa", alias="KBCHAT_MODEL")
    kb_name: str = Field("default", alias="KBCHAT_KB_NAME")
    use_kb: bool = Field(True, alias="KBCHAT_USE_KB")
    temperature: float = Field(0.7, alias="KBCHAT_TEMPERATURE")
    max_tokens: int = Field(8192, alias="KBCHAT_MAX_TOKENS")
    stream: bool = Field(True, alias="KBCHAT_STREAM")
    vector_store_type: str = Field("lancedb", alias="KBCHAT_VECTOR_STORE_TYPE")

    title_max_length: int = Field(30, alias="KBCHAT_TITLE_MAX_LENGTH")
    storage_key: str = Field("chatHistory", alias="KBCHAT_STORAGE_KEY")
    token_key: str = Field("token", alias="KBCHAT_TOKEN_KEY")

    welcome_message: str = Field(DEFAULT_WELCOME_MESSAGE, alias="KBCHAT_WELCOME_MESSAGE")
    # Remote system messages containing any of these are onboarding text
    onboarding_markers: List[str] = Field(
        default_factory=lambda: ["Welcome to the knowledge base assistant"],
        alias="KBCHAT_ONBOARDING_MARKERS",
    )

    @field_validator("api_base_url")
    def validate_api_base_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("KBCHAT_API_BASE_URL must be an http(s) URL")
        return value.rstrip("/")

    @field_validator("temperature")
    def validate_temperature(cls, value: float) -> float:
        if not 0.0 <= value <= 1.0:
            raise ValueError("KBCHAT_TEMPERATURE must be between 0.0 and 1.0")
        return value

    @field_validator("api_timeout")
    def validate_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("KBCHAT_API_TIMEOUT must be positive")
        return value

    @field_validator("max_tokens", "title_max_length")
    def validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("KBCHAT_MAX_TOKENS and KBCHAT_TITLE_MAX_LENGTH must be positive")
        return value

    @field_validator("history_prefix", "workflows_prefix")
    def validate_prefix(cls, value: str) -> str:
        value = value.rstrip("/")
        if value and not value.startswith("/"):
            value = "/" + value
        return value

    @property
    def suppressed_system_texts(self) -> list[str]:
        """Markers identifying onboarding/system-prompt text."""
        first_line = self.welcome_message.strip().splitlines()[0] if self.welcome_message.strip() else ""
        markers = [marker for marker in self.onboarding_markers if marker]
        if first_line and first_line not in markers:
            markers.append(first_line)
        return markers

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)


@lru_cache()
def get_chat_config() -> ChatConfig:
    """Return a cached chat configuration."""

    return ChatConfig()
