import json

import pytest

from echomind.agents.engine import ConversationEngine
from echomind.api import service
from echomind.config.settings import settings
from echomind.domain.exceptions import ValidationError
from echomind.domain.models import Message
from echomind.infrastructure.storage.export import SearchQuery
from echomind.providers.transport import BufferedResponse


class StubByteStream:
    def __init__(self, chunks):
        self.status_code = 200
        self._chunks = chunks

    async def aiter_bytes(self):
        for chunk in self._chunks:
            yield chunk

    async def aread(self):
        return b"".join(self._chunks)

    async def aclose(self):
        pass


class StubTransport:
    def __init__(self, content):
        self.content = content
        self.streamed = 0

    async def send(self, wire, timeout=None):
        body = {"model": "gpt-3.5-turbo", "choices": [{"message": {"content": self.content}, "finish_reason": "stop"}]}
        return BufferedResponse(status_code=200, body=json.dumps(body).encode())

    async def open_stream(self, wire, timeout=None):
        self.streamed += 1
        frame = json.dumps({"delta": self.content}).encode()
        return StubByteStream([b"data: " + frame + b"\n\n", b"data: [DONE]\n\n"])


@pytest.fixture
def isolated(monkeypatch, tmp_path):
    monkeypatch.setattr(settings, "storage_root", str(tmp_path / "store"))
    monkeypatch.setattr(settings, "encrypt_history", False)
    monkeypatch.setattr(service, "_store", None)
    monkeypatch.setattr(service, "_engine", None)
    return tmp_path


@pytest.mark.asyncio
async def test_run_chat_and_session_management(isolated):
    store = service.get_default_store()
    engine = ConversationEngine(store=store, transport=StubTransport("pong"), settings=settings)
    service._engine = engine

    result = await service.run_chat("ping", session_id="demo")
    assert result["content"] == "pong"
    assert result["session_id"] == "demo"
    assert service.list_sessions() == ["demo"]

    stats = service.session_stats("demo")
    assert stats["total_messages"] == 2
    assert stats["messages_by_role"]["assistant"] == 1

    out = isolated / "demo.md"
    data = service.export_session("demo", "markdown", output=out)
    assert out.read_bytes() == data
    assert b"pong" in data

    hits = service.search_session("demo", SearchQuery(text="PONG"))
    assert [h["role"] for h in hits] == ["assistant"]
    assert hits[0]["meta"]["model"] == "gpt-3.5-turbo"

    service.clear_session("demo")
    assert service.list_sessions() == ["demo"]
    assert service.session_stats("demo")["total_messages"] == 0


def test_encrypted_store_requires_passphrase(isolated, monkeypatch):
    monkeypatch.setattr(settings, "encrypt_history", True)
    monkeypatch.setattr(settings, "history_passphrase", None)
    with pytest.raises(ValidationError) as ei:
        service.get_default_store()
    assert ei.value.code == "MISSING_PASSPHRASE"


def test_encrypted_store_reuses_salt(isolated, monkeypatch):
    monkeypatch.setattr(settings, "encrypt_history", True)
    monkeypatch.setattr(settings, "history_passphrase", "correct horse battery staple")
    store = service.get_default_store()
    assert store.encrypted
    store.append("s", Message(role="user", content="secret"))

    # 新进程：同一口令 + 同一 salt 可以解开历史
    monkeypatch.setattr(service, "_store", None)
    again = service.get_default_store()
    assert again.load("s").messages[0].content == "secret"
    assert (isolated / "store" / service.SALT_FILE).exists()


@pytest.mark.asyncio
async def test_run_chat_follows_stream_setting(isolated, monkeypatch):
    transport = StubTransport("streamed")
    service._engine = ConversationEngine(store=service.get_default_store(), transport=transport, settings=settings)

    monkeypatch.setattr(settings, "stream", True)
    result = await service.run_chat("ping", session_id="s")
    assert transport.streamed == 1
    assert result["content"] == "streamed"
    assert result["finish_reason"] == "stop"
    assert service.session_stats("s")["total_messages"] == 2

    await service.run_chat("ping", session_id="s", stream=False)
    assert transport.streamed == 1
    assert service.session_stats("s")["total_messages"] == 4
