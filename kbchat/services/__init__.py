"""Services package holding the conversation store and its collaborators."""

from .attachment_pipeline import AttachmentPipeline  # noqa: F401
from .conversation_store import ConversationStore, ResponseStream  # noqa: F401
from .remote_service import RemoteConversationService  # noqa: F401
from .stream_decoder import SSEDecoder, decode_stream  # noqa: F401
from .streaming_session import StreamingSession, split_reasoning  # noqa: F401
from .sync_engine import SyncEngine  # noqa: F401
