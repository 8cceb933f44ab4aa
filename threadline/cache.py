import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Tuple

from .models import (
    MAX_THREADS,
    THREADS_TTL_SECONDS,
    CacheSnapshot,
    ChatMessage,
    Thread,
    utc_now,
)
from .serializers import SNAPSHOT_VERSION, ThreadlineSerializer

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

SNAPSHOT_NAME = "chat-store"

# Fields a streamed update may never touch.
_IMMUTABLE_MESSAGE_FIELDS = frozenset({"id", "role", "created_at"})


class MessageCache:
    """Per-thread message history.

    An entry's presence means the history is considered current; absence
    means it was never fetched. ``get`` cannot tell the two apart, ``has``
    can.
    """

    def __init__(self):
        self._entries: Dict[str, List[ChatMessage]] = {}

    def has(self, thread_id: str) -> bool:
        return thread_id in self._entries

    def get(self, thread_id: str) -> List[ChatMessage]:
        return list(self._entries.get(thread_id, []))

    def set(self, thread_id: str, messages: Iterable[ChatMessage]) -> None:
        self._entries[thread_id] = list(messages)

    def append(self, thread_id: str, message: ChatMessage) -> None:
        self._entries.setdefault(thread_id, []).append(message)

    def update_by_id(self, thread_id: str, message_id: str, **patch) -> bool:
        """Merge ``patch`` into a message in place.

        ``id``, ``role`` and ``created_at`` are never changed. Returns False
        when the message is not in the cache.
        """
        messages = self._entries.get(thread_id)
        if not messages:
            return False
        updates = {k: v for k, v in patch.items() if k not in _IMMUTABLE_MESSAGE_FIELDS}
        for index, message in enumerate(messages):
            if message.id == message_id:
                messages[index] = message.model_copy(update=updates)
                return True
        logger.debug(f"Message {message_id} not found in thread {thread_id}")
        return False

    def clear(self, thread_id: str) -> None:
        self._entries.pop(thread_id, None)

    def thread_ids(self) -> List[str]:
        return list(self._entries)

    def to_dict(self) -> Dict[str, List[ChatMessage]]:
        return {thread_id: list(msgs) for thread_id, msgs in self._entries.items()}


class ThreadCache:
    """Bounded, most-recent-first list of thread summaries."""

    def __init__(
        self,
        messages: MessageCache,
        clock: Clock = utc_now,
        ttl_seconds: int = THREADS_TTL_SECONDS,
        max_threads: int = MAX_THREADS,
    ):
        self._messages = messages
        self._clock = clock
        self._ttl = timedelta(seconds=ttl_seconds)
        self._max_threads = max_threads
        self._threads: List[Thread] = []
        self.last_fetched: Optional[datetime] = None

    def __contains__(self, thread_id: str) -> bool:
        return self.get(thread_id) is not None

    def __len__(self) -> int:
        return len(self._threads)

    def list_cached(self) -> List[Thread]:
        return list(self._threads)

    def get(self, thread_id: str) -> Optional[Thread]:
        for thread in self._threads:
            if thread.id == thread_id:
                return thread
        return None

    def is_stale(self) -> bool:
        if self.last_fetched is None:
            return True
        return self._clock() - self.last_fetched > self._ttl

    def replace_from_remote(self, threads: Iterable[Thread]) -> None:
        self._threads = list(threads)[: self._max_threads]
        self.last_fetched = self._clock()

    def restore(self, threads: Iterable[Thread], last_fetched: Optional[datetime]) -> None:
        """Load state from a durable snapshot without touching freshness."""
        self._threads = list(threads)[: self._max_threads]
        self.last_fetched = last_fetched

    def insert_local(self, thread: Thread) -> None:
        self._threads = [thread, *self._threads][: self._max_threads]

    def remove(self, thread_id: str) -> None:
        self._threads = [t for t in self._threads if t.id != thread_id]
        self._messages.clear(thread_id)

    def touch(self, thread_id: str, title: Optional[str] = None) -> None:
        """Refresh ``updated_at`` (and optionally the title) in place.

        The list is not reordered; that happens on the next remote refresh.
        """
        updates = {"updated_at": self._clock()}
        if title is not None:
            updates["title"] = title
        for index, thread in enumerate(self._threads):
            if thread.id == thread_id:
                self._threads[index] = thread.model_copy(update=updates)
                return


class SnapshotStorage(Protocol):
    """Durable key-value storage for serialized snapshots."""

    async def load(self, name: str) -> Optional[Tuple[int, str]]: ...

    async def save(self, name: str, version: int, payload: str) -> None: ...


class ChatStore:
    """The local cache: Thread Cache, Message Cache and hydration state.

    The store is constructed explicitly and passed to the session controller
    and preloader. Until ``hydrate()`` has run, ``hydrated`` is False and
    callers must not make freshness decisions or write the snapshot back.
    """

    def __init__(self, storage: Optional[SnapshotStorage] = None, clock: Clock = utc_now):
        self.storage = storage
        self.clock = clock
        self.messages = MessageCache()
        self.threads = ThreadCache(self.messages, clock=clock)
        self.hydrated = False

    async def hydrate(self) -> bool:
        """Load the durable snapshot into memory, once.

        Returns True if a snapshot was found and applied.
        """
        if self.hydrated:
            return False
        restored = False
        try:
            record = await self.storage.load(SNAPSHOT_NAME) if self.storage else None
            if record is not None:
                version, payload = record
                if version != SNAPSHOT_VERSION:
                    logger.warning(
                        f"Discarding cache snapshot with unsupported version {version}"
                    )
                else:
                    self.apply_snapshot(ThreadlineSerializer.load_snapshot(payload))
                    restored = True
        except Exception as e:
            logger.error(f"Failed to load cache snapshot: {e}")
        finally:
            self.hydrated = True
        logger.info(
            f"Cache hydrated ({len(self.threads)} threads, "
            f"{len(self.messages.thread_ids())} message histories)"
        )
        return restored

    def apply_snapshot(self, snapshot: CacheSnapshot) -> None:
        self.threads.restore(snapshot.threads, snapshot.threads_last_fetched)
        for thread_id in self.messages.thread_ids():
            self.messages.clear(thread_id)
        for thread_id, messages in snapshot.thread_messages.items():
            self.messages.set(thread_id, messages)

    def snapshot(self) -> CacheSnapshot:
        return CacheSnapshot(
            threads=self.threads.list_cached(),
            threads_last_fetched=self.threads.last_fetched,
            thread_messages=self.messages.to_dict(),
        )

    async def persist(self) -> bool:
        """Write the current snapshot to durable storage.

        Failures are logged and reported as False, never raised.
        """
        if not self.hydrated:
            logger.debug("Skipping snapshot write before hydration")
            return False
        if self.storage is None:
            return False
        try:
            payload = ThreadlineSerializer.dump_snapshot(self.snapshot())
            await self.storage.save(SNAPSHOT_NAME, SNAPSHOT_VERSION, payload)
            return True
        except Exception as e:
            logger.warning(f"Failed to persist cache snapshot: {e}")
            return False
