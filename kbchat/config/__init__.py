"""Configuration package for application and chat settings."""

from .app_config import AppConfig, get_app_config  # noqa: F401
from .chat_config import ChatConfig, get_chat_config  # noqa: F401
