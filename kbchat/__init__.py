"""Conversation sync and answer streaming for knowledge-base chat clients."""

from .main import create_store, open_store  # noqa: F401
from .services.conversation_store import ConversationStore, ResponseStream  # noqa: F401

__version__ = "0.1.0"
