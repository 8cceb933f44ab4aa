"""
Threadline

A terminal chat client that keeps a local, cached view of remote
conversation threads and streams agent replies into it.
"""

__version__ = "1.0.0"

from .models import Thread, ChatMessage, CacheSnapshot, derive_title
from .cache import ChatStore, ThreadCache, MessageCache
from .decoder import StreamDecoder, TextDelta, EndOfStream, MalformedFrame
from .client import ApiClient, ApiError, PersistenceAdapter, ChatTransport
from .preloader import Preloader
from .session import (
    SessionController,
    SessionState,
    SendHandle,
    SendResult,
    SendOutcome,
    CancellationToken,
    CancelReason,
)

__all__ = [
    "Thread",
    "ChatMessage",
    "CacheSnapshot",
    "derive_title",
    "ChatStore",
    "ThreadCache",
    "MessageCache",
    "StreamDecoder",
    "TextDelta",
    "EndOfStream",
    "MalformedFrame",
    "ApiClient",
    "ApiError",
    "PersistenceAdapter",
    "ChatTransport",
    "Preloader",
    "SessionController",
    "SessionState",
    "SendHandle",
    "SendResult",
    "SendOutcome",
    "CancellationToken",
    "CancelReason",
]
