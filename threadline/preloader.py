import asyncio
import logging
from typing import Dict, Iterable, List, Optional

from .cache import ChatStore
from .client import PersistenceAdapter

logger = logging.getLogger(__name__)


class Preloader:
    """Background fill of the Message Cache for threads not yet fetched.

    Fetches run concurrently and settle independently: one thread's failure
    is logged and leaves only that thread uncached.
    """

    def __init__(self, store: ChatStore, api: PersistenceAdapter, *, limit: int = 10):
        self.store = store
        self.api = api
        self.limit = limit
        self._in_flight: Dict[str, asyncio.Task] = {}

    def pending(self, thread_ids: Iterable[str]) -> List[str]:
        """Ids that have no cache entry and no fetch already running."""
        return [
            thread_id
            for thread_id in dict.fromkeys(thread_ids)
            if not self.store.messages.has(thread_id) and thread_id not in self._in_flight
        ]

    async def preload(self, thread_ids: Iterable[str]) -> List[str]:
        """Fetch histories for the uncached ``thread_ids``.

        Returns the ids whose messages were committed to the cache.
        """
        if not self.store.hydrated:
            logger.debug("Skipping preload before hydration")
            return []
        uncached = self.pending(thread_ids)
        if not uncached:
            return []
        results = await asyncio.gather(
            *(asyncio.shield(self._start_fetch(thread_id)) for thread_id in uncached),
            return_exceptions=True,
        )
        committed = [
            thread_id for thread_id, ok in zip(uncached, results) if ok is True
        ]
        logger.info(f"Preloaded {len(committed)}/{len(uncached)} thread histories")
        return committed

    async def load(self, thread_id: str) -> bool:
        """Make sure ``thread_id`` has a cache entry, fetching on demand.

        Joins a fetch that is already running for the same thread instead of
        issuing another request. Returns False when the history could not be
        loaded; the thread then stays uncached.
        """
        if self.store.messages.has(thread_id):
            return True
        task = self._in_flight.get(thread_id) or self._start_fetch(thread_id)
        await asyncio.shield(task)
        return self.store.messages.has(thread_id)

    def _start_fetch(self, thread_id: str) -> "asyncio.Task[bool]":
        task = asyncio.ensure_future(self._fetch(thread_id))
        self._in_flight[thread_id] = task

        def _forget(done: asyncio.Task):
            if self._in_flight.get(thread_id) is done:
                del self._in_flight[thread_id]

        task.add_done_callback(_forget)
        return task

    async def _fetch(self, thread_id: str) -> bool:
        try:
            messages = await self.api.get_messages(thread_id)
        except Exception as e:
            logger.warning(f"Failed to preload messages for thread {thread_id}: {e}")
            return False
        if self.store.messages.has(thread_id):
            # Filled while we were waiting (e.g. a send); keep the newer entry.
            return False
        self.store.messages.set(thread_id, messages)
        return True

    async def refresh_list(self, force: bool = False) -> bool:
        """Replace the Thread Cache from the remote if it is stale.

        Returns True when the thread list was refreshed.
        """
        if not self.store.hydrated:
            logger.debug("Skipping thread refresh before hydration")
            return False
        if not force and not self.store.threads.is_stale():
            return False
        try:
            threads = await self.api.list_threads()
        except Exception as e:
            logger.warning(f"Failed to refresh thread list: {e}")
            return False
        self.store.threads.replace_from_remote(threads)
        return True

    async def preload_recent(self, limit: Optional[int] = None) -> List[str]:
        count = self.limit if limit is None else limit
        recent = [t.id for t in self.store.threads.list_cached()[:count]]
        return await self.preload(recent)

    async def refresh(self, force: bool = False) -> bool:
        """Refresh the Thread Cache when stale, then preload recent threads."""
        refreshed = await self.refresh_list(force=force)
        if refreshed:
            await self.preload_recent()
        return refreshed
