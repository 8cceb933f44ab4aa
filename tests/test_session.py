import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from threadline.cache import ChatStore
from threadline.client import ApiError
from threadline.models import DEFAULT_THREAD_TITLE, SEND_ERROR_MESSAGE, ChatMessage
from threadline.session import (
    CancelReason,
    SendOutcome,
    SessionController,
    SessionState,
)

from .fakes import make_exchange, make_thread, wait_until

END = "d:{}\n"


@pytest.fixture
def controller(store, api):
    return SessionController(store, api, api)


def _contents(store, thread_id):
    return [(m.role, m.content) for m in store.messages.get(thread_id)]


def _select_existing(store, controller, thread_id="a", title="Existing"):
    store.threads.insert_local(make_thread(thread_id, title=title))
    store.messages.set(thread_id, make_exchange())
    controller.current_thread_id = thread_id


# --- New thread ---


@pytest.mark.asyncio
async def test_first_send_creates_titled_thread(controller, store, api, storage):
    api.replies = [['0:"Hel"\n', '0:"lo"\n', END]]

    result = await controller.send("What's the capital of France?")

    assert result.outcome is SendOutcome.COMPLETED
    assert result.is_new_thread
    assert controller.current_thread_id == result.thread_id
    assert not controller.is_running
    assert store.threads.list_cached()[0].id == result.thread_id
    assert store.threads.get(result.thread_id).title == "What's the capital of France?"
    assert _contents(store, result.thread_id) == [
        ("user", "What's the capital of France?"),
        ("assistant", "Hello"),
    ]
    assert api.chat_calls == [
        ([{"role": "user", "content": "What's the capital of France?"}], result.thread_id)
    ]

    await controller.drain()
    assert [m.content for m in api.saved[result.thread_id]] == [
        "What's the capital of France?",
        "Hello",
    ]
    assert storage.saves >= 1


@pytest.mark.asyncio
async def test_long_first_message_is_truncated_for_title(controller, store, api):
    api.replies = [[END]]
    text = "z" * 80

    result = await controller.send(text)

    assert store.threads.get(result.thread_id).title == "z" * 50 + "..."


@pytest.mark.asyncio
async def test_selection_is_committed_only_on_completion(controller, store, api):
    reply = asyncio.Queue()
    api.replies = [reply]

    handle = controller.start_send("Hello")
    await wait_until(lambda: controller.state is SessionState.STREAMING)

    assert controller.current_thread_id is None
    assert handle.thread_id in store.threads
    assert store.threads.get(handle.thread_id).title == DEFAULT_THREAD_TITLE
    assert _contents(store, handle.thread_id) == [("user", "Hello"), ("assistant", "")]

    reply.put_nowait('0:"Hi!"\n')
    reply.put_nowait(None)
    result = await handle

    assert result.outcome is SendOutcome.COMPLETED
    assert controller.current_thread_id == handle.thread_id
    assert controller.state is SessionState.IDLE


@pytest.mark.asyncio
async def test_deltas_are_reported_with_accumulated_text(store, api):
    seen = []
    controller = SessionController(
        store, api, api, on_delta=lambda tid, mid, text: seen.append(text)
    )
    api.replies = [['0:"Hel"\n0:"lo"\n', END]]

    await controller.send("Hi")

    assert seen == ["Hel", "Hello"]


@pytest.mark.asyncio
async def test_new_thread_failure_before_reply_rolls_back(controller, store, api, server_error):
    store.threads.insert_local(make_thread("x"))
    store.messages.set("x", make_exchange())
    before = store.snapshot()
    api.replies = [server_error]

    result = await controller.send("Hello")

    assert result.outcome is SendOutcome.FAILED
    assert result.user_message_id is None
    assert controller.current_thread_id is None
    assert store.snapshot() == before
    assert not store.messages.has(result.thread_id)


@pytest.mark.asyncio
async def test_new_thread_failure_mid_stream_rolls_back(controller, store, api):
    store.threads.insert_local(make_thread("x"))
    before = store.snapshot()
    api.replies = [['0:"partial"\n', ApiError("connection reset")]]

    result = await controller.send("Hello")

    assert result.outcome is SendOutcome.FAILED
    assert result.error == "connection reset"
    assert result.thread_id not in store.threads
    assert not store.messages.has(result.thread_id)
    assert store.snapshot() == before
    assert controller.current_thread_id is None

    await controller.drain()
    assert api.saved == {}


# --- Existing thread ---


@pytest.mark.asyncio
async def test_existing_thread_keeps_title_and_sends_history(controller, store, api, clock):
    _select_existing(store, controller)
    clock.advance(30)
    api.replies = [['0:"Sure"\n', END]]

    result = await controller.send("Tell me more")

    assert not result.is_new_thread
    assert result.thread_id == "a"
    thread = store.threads.get("a")
    assert thread.title == "Existing"
    assert thread.updated_at == clock()
    prompt, thread_id = api.chat_calls[0]
    assert thread_id == "a"
    assert prompt == [
        {"role": "user", "content": "Hi"},
        {"role": "assistant", "content": "Hello!"},
        {"role": "user", "content": "Tell me more"},
    ]
    assert _contents(store, "a")[-2:] == [("user", "Tell me more"), ("assistant", "Sure")]


@pytest.mark.asyncio
async def test_prompt_skips_empty_and_error_messages(controller, store, api):
    store.threads.insert_local(make_thread("a"))
    store.messages.set(
        "a",
        [
            ChatMessage(role="user", content="First"),
            ChatMessage(role="assistant", content=SEND_ERROR_MESSAGE),
            ChatMessage(role="assistant", content=""),
        ],
    )
    controller.current_thread_id = "a"
    api.replies = [[END]]

    await controller.send("Again")

    prompt, _ = api.chat_calls[0]
    assert [m["content"] for m in prompt] == ["First", "Again"]


@pytest.mark.asyncio
async def test_existing_thread_failure_before_reply_appends_error(
    controller, store, api, server_error
):
    _select_existing(store, controller)
    api.replies = [server_error]

    result = await controller.send("Still there?")

    assert result.outcome is SendOutcome.FAILED
    assert controller.current_thread_id == "a"
    assert _contents(store, "a") == [
        ("user", "Hi"),
        ("assistant", "Hello!"),
        ("user", "Still there?"),
        ("assistant", SEND_ERROR_MESSAGE),
    ]
    assert result.assistant_message_id == store.messages.get("a")[-1].id


@pytest.mark.asyncio
async def test_existing_thread_failure_replaces_empty_placeholder(controller, store, api):
    _select_existing(store, controller)
    api.replies = [[ApiError("stream broke")]]

    await controller.send("Still there?")

    contents = _contents(store, "a")
    assert contents[-2:] == [("user", "Still there?"), ("assistant", SEND_ERROR_MESSAGE)]
    assert len(contents) == 4
    assert [c for _, c in contents].count(SEND_ERROR_MESSAGE) == 1
    assert all(content for _, content in contents)


@pytest.mark.asyncio
async def test_existing_thread_failure_keeps_partial_reply(controller, store, api):
    _select_existing(store, controller)
    api.replies = [['0:"Half an ans"\n', ApiError("stream broke")]]

    await controller.send("Still there?")

    assert _contents(store, "a")[-3:] == [
        ("user", "Still there?"),
        ("assistant", "Half an ans"),
        ("assistant", SEND_ERROR_MESSAGE),
    ]


# --- Stream handling ---


@pytest.mark.asyncio
async def test_malformed_frames_are_skipped(controller, store, api, caplog):
    caplog.set_level(logging.WARNING, logger="threadline")
    api.replies = [['0:"a"\n', "9:garbage\n", '0:"b"\n', END]]

    result = await controller.send("Hi")

    assert result.outcome is SendOutcome.COMPLETED
    assert result.malformed_frames == 1
    assert _contents(store, result.thread_id)[-1] == ("assistant", "ab")
    assert "malformed stream frame" in caplog.text


@pytest.mark.asyncio
async def test_stream_without_end_marker_completes(controller, store, api):
    api.replies = [['0:"a"\n', '0:"b"']]

    result = await controller.send("Hi")

    assert result.outcome is SendOutcome.COMPLETED
    assert _contents(store, result.thread_id)[-1] == ("assistant", "ab")


# --- Concurrency ---


@pytest.mark.asyncio
async def test_second_send_is_rejected_while_running(controller, api):
    reply = asyncio.Queue()
    api.replies = [reply]

    first = controller.start_send("one")
    assert controller.is_running
    assert controller.start_send("two") is None
    assert await controller.send("three") is None
    assert controller.start_send("   ") is None

    reply.put_nowait(None)
    result = await first
    assert result.outcome is SendOutcome.COMPLETED
    assert len(api.chat_calls) == 1


@pytest.mark.asyncio
async def test_superseded_send_stops_mutating_cache(controller, store, api):
    _select_existing(store, controller)
    first_reply = asyncio.Queue()
    api.replies = [first_reply, ['0:"second"\n', END]]

    first = controller.start_send("one")
    await wait_until(lambda: controller.state is SessionState.STREAMING)
    first_reply.put_nowait('0:"first"\n')
    await wait_until(lambda: ("assistant", "first") in _contents(store, "a"))

    second = controller.start_send("two", supersede=True)
    assert first.token.cancelled
    assert first.token.reason is CancelReason.SUPERSEDED
    assert controller.active is second

    first_result = await first
    first_reply.put_nowait('0:" late"\n')
    second_result = await second
    await asyncio.sleep(0)

    assert first_result.outcome is SendOutcome.CANCELLED
    assert second_result.outcome is SendOutcome.COMPLETED
    assert _contents(store, "a") == [
        ("user", "Hi"),
        ("assistant", "Hello!"),
        ("user", "one"),
        ("assistant", "first"),
        ("user", "two"),
        ("assistant", "second"),
    ]
    assert controller.state is SessionState.IDLE
    assert not controller.is_running


@pytest.mark.asyncio
async def test_stop_keeps_partial_reply_and_selects_new_thread(controller, store, api):
    reply = asyncio.Queue()
    api.replies = [reply]

    handle = controller.start_send("Write a long story")
    await wait_until(lambda: controller.state is SessionState.STREAMING)
    reply.put_nowait('0:"Once upon"\n')
    await wait_until(lambda: ("assistant", "Once upon") in _contents(store, handle.thread_id))

    assert controller.stop()
    result = await handle

    assert result.outcome is SendOutcome.CANCELLED
    assert handle.token.reason is CancelReason.STOPPED
    assert _contents(store, handle.thread_id)[-1] == ("assistant", "Once upon")
    assert handle.thread_id in store.threads
    assert controller.current_thread_id == handle.thread_id
    assert not controller.stop()


# --- Edit / reload ---


@pytest.mark.asyncio
async def test_edit_and_reload_do_not_touch_state(controller, store, api):
    _select_existing(store, controller)
    before = store.snapshot()

    controller.edit("m1", "Changed")
    controller.reload("m2")
    controller.reload()

    assert store.snapshot() == before
    assert [kind for kind, _ in controller.ignored_requests] == ["edit", "reload", "reload"]
    assert api.chat_calls == []
    assert not controller.is_running


# --- Background sync ---


@pytest.mark.asyncio
async def test_sync_failure_is_logged_and_snapshot_still_written(
    controller, api, storage, caplog
):
    caplog.set_level(logging.WARNING, logger="threadline")
    api.save_error = ApiError("save endpoint down", status_code=503)
    api.replies = [['0:"ok"\n', END]]

    result = await controller.send("Hi")
    await controller.drain()

    assert result.outcome is SendOutcome.COMPLETED
    assert "Background sync" in caplog.text
    assert storage.saves >= 1
    assert len(controller.background) == 0


# --- Navigation ---


@pytest.mark.asyncio
async def test_switch_thread_fetches_uncached_history_once(controller, store, api):
    api.messages = {"b": make_exchange("Remote?")}

    messages = await controller.switch_thread("b")
    again = await controller.switch_thread("b")

    assert controller.current_thread_id == "b"
    assert [m.content for m in messages] == ["Remote?", "Hello!"]
    assert again == messages
    assert api.get_calls == ["b"]


@pytest.mark.asyncio
async def test_switch_thread_fetch_failure_leaves_thread_uncached(controller, store, api):
    api.message_errors = {"b": ApiError("boom", status_code=500)}

    assert await controller.switch_thread("b") == []
    assert controller.current_thread_id == "b"
    assert not store.messages.has("b")


@pytest.mark.asyncio
async def test_new_thread_clears_selection(controller, store):
    _select_existing(store, controller)
    controller.new_thread()
    assert controller.current_thread_id is None


@pytest.mark.asyncio
async def test_delete_thread_removes_and_deselects(controller, store, api):
    _select_existing(store, controller)

    assert await controller.delete_thread("a")

    assert api.deleted == ["a"]
    assert "a" not in store.threads
    assert not store.messages.has("a")
    assert controller.current_thread_id is None


@pytest.mark.asyncio
async def test_delete_thread_failure_keeps_cache(controller, store, api):
    _select_existing(store, controller)
    api.delete_error = ApiError("nope", status_code=500)

    assert not await controller.delete_thread("a")

    assert "a" in store.threads
    assert store.messages.has("a")
    assert controller.current_thread_id == "a"


@pytest.mark.asyncio
async def test_refresh_drops_vanished_selection_and_preloads(controller, store, api):
    _select_existing(store, controller, thread_id="gone")
    api.threads = [make_thread("t1"), make_thread("t2")]

    assert await controller.refresh_threads(force=True)

    assert controller.current_thread_id is None
    assert [t.id for t in store.threads.list_cached()] == ["t1", "t2"]
    assert sorted(api.get_calls) == ["t1", "t2"]


@pytest.mark.asyncio
async def test_refresh_keeps_selection_still_listed(controller, store, api):
    _select_existing(store, controller, thread_id="t1")
    api.threads = [make_thread("t1"), make_thread("t2")]

    assert await controller.refresh_threads(force=True)

    assert controller.current_thread_id == "t1"
    assert api.get_calls == ["t2"]


@pytest.mark.asyncio
async def test_refresh_skipped_when_list_is_fresh(controller, store, api):
    store.threads.replace_from_remote([make_thread("local")])
    api.threads = [make_thread("remote")]

    assert not await controller.refresh_threads()
    assert api.get_calls == []


@pytest.mark.asyncio
async def test_delete_uses_persistence_adapter(store):
    remote = AsyncMock()
    controller = SessionController(store, remote, MagicMock())
    store.threads.insert_local(make_thread("a"))

    assert await controller.delete_thread("a")
    await controller.drain()

    remote.delete_thread.assert_awaited_once_with("a")
    remote.get_messages.assert_not_called()


@pytest.mark.asyncio
async def test_supersede_before_first_send_starts(controller, store, api):
    api.replies = [['0:"second"\n', END]]

    first = controller.start_send("one")
    second = controller.start_send("two", supersede=True)

    first_result = await first
    second_result = await second

    assert first_result.outcome is SendOutcome.CANCELLED
    assert first_result.user_message_id is None
    assert first.thread_id not in store.threads
    assert not store.messages.has(first.thread_id)
    assert second_result.outcome is SendOutcome.COMPLETED
    assert [prompt[-1]["content"] for prompt, _ in api.chat_calls] == ["two"]


@pytest.mark.asyncio
async def test_stop_before_send_starts_returns_cancelled(controller, store, api):
    handle = controller.start_send("never mind")
    assert controller.stop()

    result = await handle

    assert result.outcome is SendOutcome.CANCELLED
    assert api.chat_calls == []
    assert len(store.threads) == 0
    assert not controller.is_running


@pytest.mark.asyncio
async def test_send_is_rejected_before_hydration(clock, storage, api):
    store = ChatStore(storage=storage, clock=clock)
    controller = SessionController(store, api, api)

    assert controller.start_send("Hi") is None
    assert api.chat_calls == []
    assert len(store.threads) == 0


@pytest.mark.asyncio
async def test_send_on_uncached_thread_fetches_history_first(controller, store, api):
    store.threads.insert_local(make_thread("a", title="Existing"))
    controller.current_thread_id = "a"
    api.messages = {"a": make_exchange()}
    api.replies = [['0:"ok"\n', END]]

    result = await controller.send("new question")
    await controller.drain()

    assert result.outcome is SendOutcome.COMPLETED
    assert api.get_calls == ["a"]
    prompt, _ = api.chat_calls[0]
    assert [m["content"] for m in prompt] == ["Hi", "Hello!", "new question"]
    assert [m.content for m in api.saved["a"]] == ["Hi", "Hello!", "new question", "ok"]
    assert store.threads.get("a").title == "Existing"


@pytest.mark.asyncio
async def test_send_with_unavailable_history_never_overwrites_remote(
    controller, store, api
):
    store.threads.insert_local(make_thread("a", title="Existing"))
    controller.current_thread_id = "a"
    api.message_errors = {"a": ApiError("boom", status_code=500)}
    api.replies = [['0:"ok"\n', END]]

    result = await controller.send("new question")
    await controller.drain()

    assert result.outcome is SendOutcome.COMPLETED
    assert "a" not in api.saved
    assert not store.messages.has("a")
    assert store.threads.get("a").title == "Existing"
    prompt, _ = api.chat_calls[0]
    assert [m["content"] for m in prompt] == ["new question"]


@pytest.mark.asyncio
async def test_history_refetched_after_send_without_it(controller, store, api):
    store.threads.insert_local(make_thread("a"))
    controller.current_thread_id = "a"
    api.message_errors = {"a": ApiError("flaky")}
    reply = asyncio.Queue()
    api.replies = [reply]

    handle = controller.start_send("new question")
    await wait_until(lambda: controller.state is SessionState.STREAMING)
    api.message_errors = {}
    api.messages = {"a": make_exchange("server copy")}
    reply.put_nowait(None)
    await handle
    await controller.drain()

    assert _contents(store, "a") == [("user", "server copy"), ("assistant", "Hello!")]
    assert "a" not in api.saved


@pytest.mark.asyncio
async def test_switch_thread_joins_running_preload(controller, store, api):
    api.gate = asyncio.Event()
    api.messages = {"b": make_exchange()}

    preload = asyncio.ensure_future(controller.preloader.preload(["b"]))
    await wait_until(lambda: api.get_calls == ["b"])
    switching = asyncio.ensure_future(controller.switch_thread("b"))
    await asyncio.sleep(0)
    api.gate.set()

    messages = await switching
    await preload

    assert api.get_calls == ["b"]
    assert [m.content for m in messages] == ["Hi", "Hello!"]
    assert controller.current_thread_id == "b"
