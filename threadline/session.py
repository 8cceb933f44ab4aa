import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from .cache import ChatStore
from .client import ChatTransport, PersistenceAdapter
from .decoder import EndOfStream, MalformedFrame, TextDelta, aiter_events
from .models import (
    DEFAULT_THREAD_TITLE,
    SEND_ERROR_MESSAGE,
    ChatMessage,
    Thread,
    derive_title,
    new_id,
)
from .preloader import Preloader
from .utils import BackgroundTasks

logger = logging.getLogger(__name__)

DeltaCallback = Callable[[str, str, str], None]


class SessionState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


class CancelReason(str, Enum):
    SUPERSEDED = "superseded"
    STOPPED = "stopped"


class SendOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class CancellationToken:
    """Cancellation flag owned by exactly one send operation."""

    __slots__ = ("_reason",)

    def __init__(self):
        self._reason: Optional[CancelReason] = None

    @property
    def cancelled(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> Optional[CancelReason]:
        return self._reason

    def cancel(self, reason: CancelReason = CancelReason.SUPERSEDED) -> None:
        if self._reason is None:
            self._reason = reason


@dataclass
class SendResult:
    outcome: SendOutcome
    thread_id: str
    is_new_thread: bool
    user_message_id: Optional[str] = None
    assistant_message_id: Optional[str] = None
    error: Optional[str] = None
    malformed_frames: int = 0


@dataclass
class SendHandle:
    """Handle on an in-flight send; await it for the ``SendResult``."""

    token: CancellationToken
    task: "asyncio.Task[SendResult]"
    thread_id: str
    is_new_thread: bool
    context: "_SendContext" = field(repr=False)

    def __await__(self):
        return self.task.__await__()

    def cancel(self, reason: CancelReason = CancelReason.SUPERSEDED) -> None:
        self.token.cancel(reason)
        # A send that has not started yet sees the token on its first step.
        if self.context.started and not self.task.done():
            self.task.cancel()

    def done(self) -> bool:
        return self.task.done()


@dataclass
class _SendContext:
    text: str
    thread_id: str
    is_new_thread: bool
    token: CancellationToken
    started: bool = False
    history_complete: bool = True
    is_first_message: bool = False
    user_message: Optional[ChatMessage] = None
    assistant_message: Optional[ChatMessage] = None
    buffer: str = ""
    malformed_frames: int = 0
    inserted_thread: bool = False


class SessionController:
    """Runs sends against the chat endpoint and keeps the cache in step.

    At most one send is in flight. ``start_send`` rejects a new send while
    one is running unless ``supersede=True``, in which case the running send
    is cancelled silently and the new one takes over.
    """

    def __init__(
        self,
        store: ChatStore,
        api: PersistenceAdapter,
        transport: ChatTransport,
        *,
        preloader: Optional[Preloader] = None,
        on_delta: Optional[DeltaCallback] = None,
    ):
        self.store = store
        self.api = api
        self.transport = transport
        self.preloader = preloader or Preloader(store, api)
        self.on_delta = on_delta
        self.current_thread_id: Optional[str] = None
        self.state = SessionState.IDLE
        self.background = BackgroundTasks()
        # Inert edit/reload requests, kept for inspection.
        self.ignored_requests: List[Tuple[str, Dict[str, Any]]] = []
        self._active: Optional[SendHandle] = None

    @property
    def is_running(self) -> bool:
        return self._active is not None

    @property
    def active(self) -> Optional[SendHandle]:
        return self._active

    # --- Sending ---

    def start_send(self, text: str, *, supersede: bool = False) -> Optional[SendHandle]:
        """Begin sending ``text`` to the current thread (or a new one).

        Returns None when the send is rejected: empty text, a store that has
        not been hydrated yet, or another send in flight without ``supersede``.
        """
        if not text.strip():
            return None
        if not self.store.hydrated:
            logger.warning("Send rejected: the local cache has not been hydrated")
            return None
        if self._active is not None:
            if not supersede:
                logger.info("Send rejected: another send is in flight")
                return None
            logger.info(f"Superseding send on thread {self._active.thread_id}")
            self._active.cancel(CancelReason.SUPERSEDED)
            self._active = None

        if self.current_thread_id is not None:
            thread_id, is_new_thread = self.current_thread_id, False
        else:
            thread_id, is_new_thread = new_id(), True

        token = CancellationToken()
        ctx = _SendContext(
            text=text,
            thread_id=thread_id,
            is_new_thread=is_new_thread,
            token=token,
        )
        self.state = SessionState.SENDING
        task = asyncio.ensure_future(self._run_send(ctx))
        handle = SendHandle(
            token=token,
            task=task,
            thread_id=thread_id,
            is_new_thread=is_new_thread,
            context=ctx,
        )
        self._active = handle
        task.add_done_callback(lambda _: self._finish(handle))
        return handle

    async def send(self, text: str, *, supersede: bool = False) -> Optional[SendResult]:
        handle = self.start_send(text, supersede=supersede)
        if handle is None:
            return None
        return await handle

    def stop(self) -> bool:
        """Stop the in-flight send; text received so far is kept."""
        if self._active is None:
            return False
        self._active.cancel(CancelReason.STOPPED)
        return True

    def _finish(self, handle: SendHandle):
        if self._active is handle:
            self._active = None
            self.state = SessionState.IDLE

    def _set_state(self, ctx: _SendContext, state: SessionState):
        if self._active is not None and self._active.token is ctx.token:
            self.state = state

    async def _load_history(self, ctx: _SendContext) -> List[ChatMessage]:
        """Return the thread's history, fetching it first when uncached.

        A history that cannot be fetched is treated as unknown: the send goes
        ahead but the thread is never pushed back as its full message list.
        """
        if not ctx.is_new_thread:
            ctx.history_complete = await self.preloader.load(ctx.thread_id)
            if not ctx.history_complete:
                logger.warning(
                    f"History of thread {ctx.thread_id} is unavailable; "
                    "sending without it"
                )
        history = self.store.messages.get(ctx.thread_id) if ctx.history_complete else []
        thread = self.store.threads.get(ctx.thread_id)
        ctx.is_first_message = (
            ctx.history_complete
            and not history
            and (thread is None or thread.title == DEFAULT_THREAD_TITLE)
        )
        return history

    async def _run_send(self, ctx: _SendContext) -> SendResult:
        ctx.started = True
        if ctx.token.cancelled:
            return self._cancelled(ctx)
        user_message = ChatMessage(role="user", content=ctx.text)
        try:
            history = await self._load_history(ctx)
            if ctx.token.cancelled:
                return self._cancelled(ctx)
            prompt = [
                m for m in history if m.content and m.content != SEND_ERROR_MESSAGE
            ] + [user_message]
            async with self.transport.stream_chat(prompt, ctx.thread_id) as chunks:
                if ctx.token.cancelled:
                    return self._cancelled(ctx)
                self._open_reply(ctx, user_message)
                self._set_state(ctx, SessionState.STREAMING)
                async for event in aiter_events(chunks):
                    if ctx.token.cancelled:
                        return self._cancelled(ctx)
                    if isinstance(event, TextDelta):
                        self._apply_delta(ctx, event.text)
                    elif isinstance(event, MalformedFrame):
                        ctx.malformed_frames += 1
                        logger.warning(
                            f"Skipping malformed stream frame on thread "
                            f"{ctx.thread_id}: {event.raw_line!r}"
                        )
                    elif isinstance(event, EndOfStream):
                        break
            if ctx.token.cancelled:
                return self._cancelled(ctx)
            return self._complete(ctx)
        except asyncio.CancelledError:
            if not ctx.token.cancelled:
                raise
            return self._cancelled(ctx)
        except Exception as e:
            if ctx.token.cancelled:
                return self._cancelled(ctx)
            return self._fail(ctx, user_message, e)

    def _open_reply(self, ctx: _SendContext, user_message: ChatMessage):
        """Apply the optimistic writes once the reply has started."""
        ctx.user_message = user_message
        ctx.assistant_message = ChatMessage(role="assistant", content="")
        self.store.messages.append(ctx.thread_id, user_message)
        self.store.messages.append(ctx.thread_id, ctx.assistant_message)
        if ctx.is_new_thread:
            self.store.threads.insert_local(
                Thread(id=ctx.thread_id, title=DEFAULT_THREAD_TITLE)
            )
            ctx.inserted_thread = True

    def _apply_delta(self, ctx: _SendContext, text: str):
        ctx.buffer += text
        self.store.messages.update_by_id(
            ctx.thread_id, ctx.assistant_message.id, content=ctx.buffer
        )
        if self.on_delta is not None:
            self.on_delta(ctx.thread_id, ctx.assistant_message.id, ctx.buffer)

    def _complete(self, ctx: _SendContext) -> SendResult:
        self._set_state(ctx, SessionState.COMPLETED)
        title = derive_title(ctx.text) if ctx.is_first_message else None
        self.store.threads.touch(ctx.thread_id, title)
        if ctx.is_new_thread:
            self.current_thread_id = ctx.thread_id
        if self._release_unknown_history(ctx):
            self.background.spawn(self.store.persist(), name="persist")
        else:
            self.background.spawn(
                self._sync_thread(ctx.thread_id), name=f"sync-{ctx.thread_id}"
            )
        return SendResult(
            outcome=SendOutcome.COMPLETED,
            thread_id=ctx.thread_id,
            is_new_thread=ctx.is_new_thread,
            user_message_id=ctx.user_message.id,
            assistant_message_id=ctx.assistant_message.id,
            malformed_frames=ctx.malformed_frames,
        )

    def _fail(self, ctx: _SendContext, user_message: ChatMessage, error: Exception) -> SendResult:
        self._set_state(ctx, SessionState.FAILED)
        logger.error(f"Send on thread {ctx.thread_id} failed: {error}")
        assistant_id = None
        if ctx.is_new_thread:
            if ctx.inserted_thread:
                self.store.threads.remove(ctx.thread_id)
            self.store.messages.clear(ctx.thread_id)
        else:
            if ctx.user_message is None:
                ctx.user_message = user_message
                self.store.messages.append(ctx.thread_id, user_message)
            placeholder = ctx.assistant_message
            if placeholder is not None and not ctx.buffer:
                self.store.messages.update_by_id(
                    ctx.thread_id, placeholder.id, content=SEND_ERROR_MESSAGE
                )
                assistant_id = placeholder.id
            else:
                error_message = ChatMessage(role="assistant", content=SEND_ERROR_MESSAGE)
                self.store.messages.append(ctx.thread_id, error_message)
                assistant_id = error_message.id
            self.store.threads.touch(ctx.thread_id)
            self._release_unknown_history(ctx)
        self.background.spawn(self.store.persist(), name="persist")
        return SendResult(
            outcome=SendOutcome.FAILED,
            thread_id=ctx.thread_id,
            is_new_thread=ctx.is_new_thread,
            user_message_id=None if ctx.is_new_thread else ctx.user_message.id,
            assistant_message_id=assistant_id,
            error=str(error),
            malformed_frames=ctx.malformed_frames,
        )

    def _cancelled(self, ctx: _SendContext) -> SendResult:
        reason = ctx.token.reason
        logger.info(f"Send on thread {ctx.thread_id} cancelled ({reason.value})")
        if reason is CancelReason.STOPPED and ctx.inserted_thread:
            # Keep the partial reply visible after a user stop.
            self.current_thread_id = ctx.thread_id
        if ctx.user_message is not None:
            self._release_unknown_history(ctx)
        if ctx.inserted_thread or ctx.user_message is not None:
            self.background.spawn(self.store.persist(), name="persist")
        return SendResult(
            outcome=SendOutcome.CANCELLED,
            thread_id=ctx.thread_id,
            is_new_thread=ctx.is_new_thread,
            user_message_id=ctx.user_message.id if ctx.user_message else None,
            assistant_message_id=(
                ctx.assistant_message.id if ctx.assistant_message else None
            ),
            malformed_frames=ctx.malformed_frames,
        )

    def _release_unknown_history(self, ctx: _SendContext) -> bool:
        """Drop the entry a send started for a thread whose history never loaded.

        The entry would hold only this exchange, so it is cleared and the
        thread refetched in the background instead.
        """
        if ctx.is_new_thread or ctx.history_complete:
            return False
        self.store.messages.clear(ctx.thread_id)
        self.background.spawn(
            self.preloader.load(ctx.thread_id), name=f"load-{ctx.thread_id}"
        )
        return True

    async def _sync_thread(self, thread_id: str):
        """Best-effort push of a thread's history, then a snapshot write."""
        try:
            await self.api.save_messages(thread_id, self.store.messages.get(thread_id))
        except Exception as e:
            logger.warning(f"Background sync of thread {thread_id} failed: {e}")
        await self.store.persist()

    async def drain(self):
        """Wait for outstanding background sync and snapshot writes."""
        await self.background.drain()

    # --- Edit / reload ---

    def edit(self, message_id: str, text: str) -> None:
        """Record an edit request. Editing is not supported yet."""
        self.ignored_requests.append(("edit", {"message_id": message_id, "text": text}))
        logger.info(f"Edit of message {message_id} requested; edits are not supported")

    def reload(self, message_id: Optional[str] = None) -> None:
        """Record a regenerate request. Regeneration is not supported yet."""
        self.ignored_requests.append(("reload", {"message_id": message_id}))
        logger.info(f"Reload from message {message_id} requested; reload is not supported")

    # --- Navigation ---

    def new_thread(self) -> None:
        """Start a fresh conversation; the thread is created on first send."""
        self.current_thread_id = None

    async def switch_thread(self, thread_id: str) -> List[ChatMessage]:
        """Select ``thread_id`` and return its messages, fetching if uncached."""
        self.current_thread_id = thread_id
        if self.store.messages.has(thread_id):
            return self.store.messages.get(thread_id)
        if not await self.preloader.load(thread_id):
            return []
        self.background.spawn(self.store.persist(), name="persist")
        return self.store.messages.get(thread_id)

    async def delete_thread(self, thread_id: str) -> bool:
        try:
            await self.api.delete_thread(thread_id)
        except Exception as e:
            logger.warning(f"Failed to delete thread {thread_id}: {e}")
            return False
        self.store.threads.remove(thread_id)
        if self.current_thread_id == thread_id:
            self.current_thread_id = None
        self.background.spawn(self.store.persist(), name="persist")
        return True

    async def refresh_threads(self, force: bool = False) -> bool:
        """Refresh the thread list if stale, then preload recent histories.

        A selected thread missing from the refreshed list is deselected.
        """
        refreshed = await self.preloader.refresh_list(force=force)
        if not refreshed:
            return False
        if (
            self.current_thread_id is not None
            and self.current_thread_id not in self.store.threads
        ):
            logger.info(f"Selected thread {self.current_thread_id} no longer exists")
            self.current_thread_id = None
        await self.preloader.preload_recent()
        self.background.spawn(self.store.persist(), name="persist")
        return True
