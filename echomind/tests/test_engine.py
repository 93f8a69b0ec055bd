import asyncio
import json

import pytest

from echomind.agents.engine import ChatOptions, ConversationEngine, Turn, TurnState
from echomind.config.settings import EchomindSettings
from echomind.domain.exceptions import AuthError, BusinessError, RequestTimeoutError, TransportError
from echomind.domain.models import FinishReason
from echomind.infrastructure.storage.memory_store import MemoryConversationStore
from echomind.providers.cache import ReplyCache
from echomind.providers.transport import BufferedResponse

OPENAI_KEY = "sk-test-0123456789"


def _ok(content="ok", model="gpt-3.5-turbo"):
    body = {"model": model, "choices": [{"message": {"role": "assistant", "content": content}, "finish_reason": "stop"}]}
    return BufferedResponse(status_code=200, body=json.dumps(body).encode())


class FakeByteStream:
    def __init__(self, chunks):
        self.status_code = 200
        self._chunks = chunks
        self.closed = False

    async def aiter_bytes(self):
        for chunk in self._chunks:
            yield chunk

    async def aread(self):
        return b"".join(self._chunks)

    async def aclose(self):
        self.closed = True


class FakeTransport:
    """按顺序返回预置响应；元素为异常时直接抛出。"""

    def __init__(self, responses=(), streams=(), delay=0.0):
        self.responses = list(responses)
        self.streams = list(streams)
        self.delay = delay
        self.sent = []

    async def send(self, wire, timeout=None):
        self.sent.append(wire)
        if self.delay:
            await asyncio.sleep(self.delay)
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def open_stream(self, wire, timeout=None):
        self.sent.append(wire)
        return self.streams.pop(0)


class RoutingTransport:
    """根据 URL 选择响应，用于多模型比较。"""

    def __init__(self, routes):
        self.routes = routes
        self.sent = []

    async def send(self, wire, timeout=None):
        self.sent.append(wire)
        for fragment, response in self.routes.items():
            if fragment in wire.url:
                return response
        raise TransportError(f"no route for {wire.url}")


def _settings(**kw):
    kw.setdefault("openai_api_key", OPENAI_KEY)
    return EchomindSettings(_env_file=None, **kw)


def _engine(transport, store=None, **kw):
    return ConversationEngine(
        store=store or MemoryConversationStore(),
        transport=transport,
        settings=_settings(max_context_messages=kw.pop("max_context_messages", 20)),
        **kw,
    )


@pytest.mark.asyncio
async def test_send_commits_user_and_assistant():
    engine = _engine(FakeTransport([_ok("hello")]))
    reply = await engine.send("hi", session_id="s1")
    assert reply.content == "hello"
    assert reply.provider_id == "chat"
    state = engine.store.load("s1")
    assert [(m.role, m.content) for m in state.messages] == [("user", "hi"), ("assistant", "hello")]
    assert state.messages[1].meta["provider"] == "chat"
    assert state.messages[1].meta["finish_reason"] == "stop"
    assert engine.turn_state("s1") is TurnState.IDLE


@pytest.mark.asyncio
async def test_history_is_sent_and_bounded():
    transport = FakeTransport([_ok("a1"), _ok("a2"), _ok("a3")])
    engine = _engine(transport, max_context_messages=2)
    await engine.send("q1", session_id="s")
    await engine.send("q2", session_id="s")
    await engine.send("q3", session_id="s")
    messages = transport.sent[-1].json()["messages"]
    assert [m["content"] for m in messages] == ["q2", "a2", "q3"]
    assert len(engine.store.load("s").messages) == 6


@pytest.mark.asyncio
async def test_options_override_settings():
    transport = FakeTransport([_ok()])
    engine = _engine(transport)
    await engine.send("hi", provider="openai", model="gpt-4", options=ChatOptions(temperature=0.1, system_prompt="sys"))
    body = transport.sent[0].json()
    assert body["temperature"] == 0.1
    assert body["messages"][0] == {"role": "system", "content": "sys"}
    assert transport.sent[0].headers["Authorization"] == f"Bearer {OPENAI_KEY}"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "failure",
    [
        TransportError("connection reset"),
        BufferedResponse(status_code=500, body=b"upstream failure"),
        BufferedResponse(status_code=200, body=b"not json"),
    ],
)
async def test_failed_turn_persists_nothing(failure):
    store = MemoryConversationStore()
    engine = _engine(FakeTransport([failure]), store=store)
    with pytest.raises(BusinessError):
        await engine.send("hi", session_id="s")
    assert store.load("s").is_empty
    assert engine.turn_state("s") is TurnState.IDLE


@pytest.mark.asyncio
async def test_retry_after_failure_does_not_duplicate_user_message():
    store = MemoryConversationStore()
    engine = _engine(FakeTransport([TransportError("flaky"), _ok("fine")]), store=store)
    with pytest.raises(TransportError):
        await engine.send("hi", session_id="s")
    await engine.send("hi", session_id="s")
    assert [m.content for m in store.load("s").messages] == ["hi", "fine"]


@pytest.mark.asyncio
async def test_timeout_persists_nothing():
    store = MemoryConversationStore()
    engine = _engine(FakeTransport([_ok()], delay=1.0), store=store)
    with pytest.raises(RequestTimeoutError):
        await engine.send("hi", session_id="s", timeout=0.05)
    assert store.load("s").is_empty


@pytest.mark.asyncio
async def test_missing_key_fails_before_network():
    transport = FakeTransport([_ok()])
    settings = EchomindSettings(_env_file=None, openai_api_key=None, echomind_api_key=None)
    engine = ConversationEngine(MemoryConversationStore(), transport, settings=settings)
    with pytest.raises(AuthError):
        await engine.send("hi", provider="openai")
    assert transport.sent == []


@pytest.mark.asyncio
async def test_cache_serves_repeated_buffered_requests():
    transport = FakeTransport([_ok("cached")])
    engine = _engine(transport, cache=ReplyCache())
    first = await engine.send("same question")
    second = await engine.send("same question")
    assert first.content == second.content == "cached"
    assert len(transport.sent) == 1
    assert engine.cache.hits == 1


@pytest.mark.asyncio
async def test_stream_commits_on_completion():
    stream = FakeByteStream([b'data: {"delta":"Hel"}\n\n', b'data: {"delta":"lo"}\n\n', b"data: [DONE]\n\n"])
    store = MemoryConversationStore()
    engine = _engine(FakeTransport(streams=[stream]), store=store)
    turn = engine.stream("hi", session_id="s")
    fragments = []
    async with turn:
        async for delta in turn:
            fragments.append(delta.text_fragment)
    assert "".join(fragments) == "Hello"
    assert turn.reply.content == "Hello"
    assert [m.content for m in store.load("s").messages] == ["hi", "Hello"]
    assert stream.closed
    assert turn.state is TurnState.IDLE


@pytest.mark.asyncio
async def test_stream_commits_before_final_delta_is_handed_out():
    stream = FakeByteStream([b'data: {"delta":"Hel"}\n\n', b'data: {"delta":"lo"}\n\n', b"data: [DONE]\n\n"])
    store = MemoryConversationStore()
    engine = _engine(FakeTransport(streams=[stream]), store=store)
    async with engine.stream("hi", session_id="s") as turn:
        async for delta in turn:
            if delta.is_final:
                assert [m.content for m in store.load("s").messages] == ["hi", "Hello"]
                break
    assert [m.content for m in store.load("s").messages] == ["hi", "Hello"]
    assert turn.reply.content == "Hello"
    assert stream.closed
    assert engine.turn_state("s") is TurnState.IDLE


@pytest.mark.asyncio
async def test_stream_with_finish_reason_but_no_sentinel_is_persisted():
    stream = FakeByteStream(
        [
            b'data: {"choices":[{"delta":{"content":"Hi"},"finish_reason":null}]}\n\n',
            b'data: {"choices":[{"delta":{},"finish_reason":"stop"}]}\n\n',
        ]
    )
    store = MemoryConversationStore()
    engine = _engine(FakeTransport(streams=[stream]), store=store)
    reply = await engine.stream("hi", session_id="s").collect()
    assert reply.finish_reason is FinishReason.STOP
    assert [m.content for m in store.load("s").messages] == ["hi", "Hi"]


@pytest.mark.asyncio
async def test_incomplete_stream_is_not_persisted():
    stream = FakeByteStream([b'data: {"delta":"par"}\n\n'])
    store = MemoryConversationStore()
    engine = _engine(FakeTransport(streams=[stream]), store=store)
    reply = await engine.stream("hi", session_id="s").collect()
    assert reply.finish_reason is FinishReason.INCOMPLETE
    assert store.load("s").is_empty


@pytest.mark.asyncio
async def test_cancelled_stream_closes_connection_and_persists_nothing():
    stream = FakeByteStream([b'data: {"delta":"a"}\n\n', b'data: {"delta":"b"}\n\n', b"data: [DONE]\n\n"])
    store = MemoryConversationStore()
    engine = _engine(FakeTransport(streams=[stream]), store=store)
    async with engine.stream("hi", session_id="s") as turn:
        async for _ in turn:
            break
    assert stream.closed
    assert store.load("s").is_empty
    assert engine.turn_state("s") is TurnState.IDLE


@pytest.mark.asyncio
async def test_stream_turn_is_single_pass():
    stream = FakeByteStream([b"data: [DONE]\n\n"])
    turn = _engine(FakeTransport(streams=[stream])).stream("hi")
    await turn.collect()
    with pytest.raises(RuntimeError):
        turn.__aiter__()


@pytest.mark.asyncio
async def test_same_session_turns_are_serialized():
    store = MemoryConversationStore()
    engine = _engine(FakeTransport([_ok("a1"), _ok("a2")], delay=0.05), store=store)
    await asyncio.gather(engine.send("q1", session_id="s"), engine.send("q2", session_id="s"))
    roles = [m.role for m in store.load("s").messages]
    assert roles == ["user", "assistant", "user", "assistant"]
    assert engine._session_locks == {}


@pytest.mark.asyncio
async def test_compare_runs_targets_independently():
    claude_body = {"model": "claude-3-haiku", "content": [{"type": "text", "text": "from claude"}], "stop_reason": "end_turn"}
    transport = RoutingTransport(
        {
            "api.openai.com": _ok("from openai", model="gpt-4"),
            "api.anthropic.com": BufferedResponse(status_code=200, body=json.dumps(claude_body).encode()),
        }
    )
    store = MemoryConversationStore()
    engine = _engine(transport, store=store, api_keys={"claude": "ck-test-0123456789"})
    results = await engine.compare("hi", ["gpt-4", "claude-3-haiku", "nope/model"])
    by_provider = {r.provider_id: r for r in results}
    assert by_provider["openai"].reply.content == "from openai"
    assert by_provider["claude"].reply.content == "from claude"
    assert not by_provider["nope"].ok
    assert by_provider["nope"].error.code == "INVALID_PROVIDER"
    assert store.list_sessions() == []


def test_turn_rejects_illegal_transitions():
    turn = Turn("s")
    with pytest.raises(RuntimeError):
        turn.advance(TurnState.REPLIED)
    turn.advance(TurnState.SENDING)
    turn.advance(TurnState.STREAMING)
    with pytest.raises(RuntimeError):
        turn.advance(TurnState.REPLIED)
    turn.advance(TurnState.FINALIZING)
    turn.advance(TurnState.IDLE)
