import uuid
from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing_extensions import Annotated

# Thread Cache capacity; the remote list endpoint uses the same cap.
MAX_THREADS = 50
# Thread list freshness window.
THREADS_TTL_SECONDS = 300
TITLE_MAX_LENGTH = 50
TITLE_ELLIPSIS = "..."
DEFAULT_THREAD_TITLE = "New conversation"
SEND_ERROR_MESSAGE = (
    "Sorry, I couldn't generate a reply. Please try sending your message again."
)

Role = Literal["user", "assistant"]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def derive_title(text: str) -> str:
    """Build a thread title from the first user message.

    The first 50 characters are kept; an ellipsis marker is appended only
    when something was cut off.
    """
    title = " ".join(text.split())
    if not title:
        return DEFAULT_THREAD_TITLE
    if len(title) > TITLE_MAX_LENGTH:
        return title[:TITLE_MAX_LENGTH] + TITLE_ELLIPSIS
    return title


def _ensure_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# Naive timestamps from the API are taken to be UTC.
Timestamp = Annotated[datetime, AfterValidator(_ensure_aware)]


class _WireModel(BaseModel):
    """Base for models exchanged with the API and the local snapshot.

    Fields are camelCase on the wire and snake_case in Python.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


class Thread(_WireModel):
    """Summary of a conversation as shown in the thread list."""

    id: str
    title: str = DEFAULT_THREAD_TITLE
    updated_at: Timestamp = Field(default_factory=utc_now)


class ChatMessage(_WireModel):
    """A single message in a thread."""

    id: str = Field(default_factory=new_id)
    role: Role
    content: str = ""
    created_at: Timestamp = Field(default_factory=utc_now)

    def to_prompt(self) -> Dict[str, str]:
        """Return the ``{role, content}`` pair sent to the chat endpoint."""
        return {"role": self.role, "content": self.content}


class CacheSnapshot(_WireModel):
    """Durable view of the chat cache.

    ``hydrated`` is runtime-only state and is never part of the snapshot.
    """

    threads: List[Thread] = Field(default_factory=list)
    threads_last_fetched: Optional[Timestamp] = None
    thread_messages: Dict[str, List[ChatMessage]] = Field(default_factory=dict)
