"""
Tests for the dialogue flow (client + store glue).
The completion client is replaced with a scripted fake.
"""

import asyncio

import pytest

from chatline.client import (
    API_KEY_MISSING,
    REQUEST_CANCELLED,
    CancelToken,
    CompletionClient,
    CompletionResult,
)
from chatline.dialogue import DIALOGUE_API_KEY_MISSING, DialogueSession, build_history
from chatline.storage.backends.memory import MemoryBackend
from chatline.storage.conversation_store import STORAGE_KEY, ConversationStore
from chatline.storage.models import Message

SETTINGS = {
    "api_url": "https://llm.test/v1",
    "api_key": "sk-test",
    "model": "test-model",
    "system_prompt": "You are a helpful assistant.",
    "max_history_messages": 20,
}


class FakeClient:
    """Stands in for CompletionClient: streams scripted chunks, records requests."""

    def __init__(self, chunks=("Hel", "lo"), error=None, gate=None):
        self.chunks = list(chunks)
        self.error = error
        self.gate = gate
        self.requests = []
        self.tokens: list[CancelToken] = []

    async def send(self, request, on_chunk=None, cancel=None, conversation_id=""):
        self.requests.append(request)
        self.tokens.append(cancel)
        for chunk in self.chunks:
            if on_chunk:
                on_chunk(chunk)
            await asyncio.sleep(0)
        if self.gate is not None:
            waiter = asyncio.ensure_future(cancel.wait())
            gate = asyncio.ensure_future(self.gate.wait())
            await asyncio.wait({waiter, gate}, return_when=asyncio.FIRST_COMPLETED)
            waiter.cancel()
            gate.cancel()
            if cancel.cancelled:
                return CompletionResult.failure(REQUEST_CANCELLED)
        if self.error:
            return CompletionResult.failure(self.error)
        return CompletionResult(content="".join(self.chunks))


@pytest.fixture
def backend():
    return MemoryBackend()


@pytest.fixture
def store(backend):
    return ConversationStore(backend)


def make_session(store, client, **overrides):
    return DialogueSession(store, client, {**SETTINGS, **overrides})


def _last(store) -> str | None:
    conv = store.get_active_conversation()
    return conv.messages[-1].content if conv and conv.messages else None


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------

def test_build_history_drops_empty_and_appends_user_text():
    msgs = [
        Message(role="user", content="q1"),
        Message(role="assistant", content="a1"),
        Message(role="user", content="q2"),
        Message(role="assistant", content=""),
    ]
    assert build_history(msgs, "q2", 20) == [
        {"role": "user", "content": "q1"},
        {"role": "assistant", "content": "a1"},
        {"role": "user", "content": "q2"},
    ]


def test_build_history_keeps_last_pairs_only():
    msgs = [Message(role="user" if i % 2 == 0 else "assistant", content=f"m{i}") for i in range(10)]
    history = build_history(msgs, "new", 2)
    assert [m["content"] for m in history] == ["m6", "m7", "m8", "m9", "new"]


# ---------------------------------------------------------------------------
# send_message
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_send_creates_conversation_and_stores_reply(store, backend):
    client = FakeClient(chunks=("Hel", "lo"))
    session = make_session(store, client)

    result = await session.send_message("Hi there")

    assert result.ok
    conv = store.get_active_conversation()
    assert conv.title == "Hi there"
    assert [(m.role, m.content) for m in conv.messages] == [
        ("user", "Hi there"),
        ("assistant", "Hello"),
    ]
    assert "Hello" in backend.data[STORAGE_KEY]

    [request] = client.requests
    assert request.system_prompt == "You are a helpful assistant."
    assert request.messages == [{"role": "user", "content": "Hi there"}]
    assert request.model == "test-model"


@pytest.mark.asyncio
async def test_streaming_updates_placeholder_and_channel(store):
    published = []
    session = make_session(store, FakeClient(chunks=("a", "b", "c")))
    session.streaming.subscribe(lambda value, previous: published.append(value))

    await session.send_message("go")

    assert published == ["a", "ab", "abc", ""]  # reset after the reply settles
    assert len(store.get_active_conversation().messages) == 2


@pytest.mark.asyncio
async def test_send_reuses_active_conversation(store):
    session = make_session(store, FakeClient())
    await session.send_message("one")
    await session.send_message("two")

    assert len(store.conversations) == 1
    client_history = session.client.requests[-1].messages
    assert [m["content"] for m in client_history] == ["one", "Hello", "two"]


@pytest.mark.asyncio
async def test_error_is_written_into_reply(store):
    session = make_session(store, FakeClient(chunks=(), error="bad request"))
    result = await session.send_message("hi")
    assert result.error == "bad request"
    assert store.get_active_conversation().messages[-1].content == "Error: bad request"


@pytest.mark.asyncio
async def test_missing_key_message_points_at_settings(store):
    session = make_session(store, FakeClient(chunks=(), error=API_KEY_MISSING))
    result = await session.send_message("hi")
    assert result.error == DIALOGUE_API_KEY_MISSING
    assert store.get_active_conversation().messages[-1].content == f"Error: {DIALOGUE_API_KEY_MISSING}"


@pytest.mark.asyncio
async def test_missing_key_with_real_client_never_needs_network(store):
    client = CompletionClient()
    session = make_session(store, client, api_key="")
    result = await session.send_message("hi")
    assert result.error == DIALOGUE_API_KEY_MISSING
    await client.aclose()


@pytest.mark.asyncio
async def test_stop_keeps_partial_reply(store):
    gate = asyncio.Event()
    session = make_session(store, FakeClient(chunks=("par", "tial"), gate=gate))

    task = asyncio.create_task(session.send_message("hi"))
    while _last(store) != "partial":
        await asyncio.sleep(0)
    session.stop()
    result = await task

    assert result.cancelled
    assert store.get_active_conversation().messages[-1].content == "partial"
    assert not session.is_streaming


@pytest.mark.asyncio
async def test_stop_before_any_text_records_cancellation(store):
    gate = asyncio.Event()
    session = make_session(store, FakeClient(chunks=(), gate=gate))

    task = asyncio.create_task(session.send_message("hi"))
    while not session.is_streaming:
        await asyncio.sleep(0)
    session.stop(store.active_conversation_id)
    result = await task

    assert result.cancelled
    assert store.get_active_conversation().messages[-1].content == f"Error: {REQUEST_CANCELLED}"


@pytest.mark.asyncio
async def test_sends_to_same_conversation_are_serialized(store):
    gate = asyncio.Event()
    client = FakeClient(chunks=("r",), gate=gate)
    session = make_session(store, client)
    cid = await store.create_conversation()

    first = asyncio.create_task(session.send_message("first"))
    second = asyncio.create_task(session.send_message("second"))
    for _ in range(20):
        await asyncio.sleep(0)

    # second is parked on the lock: only the first exchange is in the log
    conv = store.get_conversation(cid)
    assert [m.content for m in conv.messages] == ["first", "r"]
    assert len(client.requests) == 1
    assert list(session._locks) == [cid]

    gate.set()
    await asyncio.gather(first, second)

    assert [(m.role, m.content) for m in conv.messages] == [
        ("user", "first"),
        ("assistant", "r"),
        ("user", "second"),
        ("assistant", "r"),
    ]

    # both sends finished: nothing left holding or waiting on the lock
    assert session._locks == {}
    assert session._lock_users == {}


@pytest.mark.asyncio
async def test_locks_are_released_after_each_conversation(store):
    session = make_session(store, FakeClient())
    for _ in range(3):
        await store.create_conversation()
        await session.send_message("hello")

    assert len(store.conversations) == 3
    assert session._locks == {}
