"""Expose commonly used model classes at the package level.

Importing these classes here allows consumers to write concise imports like::

    from kbchat.models import ChatMessage, Conversation, Attachment

These names refer to the underlying Pydantic models defined in their
respective modules.
"""

from .attachment import Attachment, AttachmentPayload, FileInfo  # noqa: F401
from .chat_message import ChatMessage, WELCOME_MESSAGE_ID  # noqa: F401
from .chat_request import KnowledgeQARequest  # noqa: F401
from .conversation import Conversation  # noqa: F401
from .enums import (  # noqa: F401
    AttachmentState,
    DateBucket,
    FeedbackType,
    MessageRole,
    RemoteDeleteStatus,
    SessionState,
    StreamEventType,
)
from .feedback import Feedback  # noqa: F401
from .outcomes import DeleteOutcome, FeedbackOutcome, SyncOutcome  # noqa: F401
from .stream_event import StreamEvent  # noqa: F401
