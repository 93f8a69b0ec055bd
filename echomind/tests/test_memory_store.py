import json
from datetime import datetime, timezone

import pytest

from echomind.domain.exceptions import ValidationError
from echomind.domain.models import Attachment, Message
from echomind.infrastructure.storage.export import SearchQuery, compute_stats, export_state, search_messages
from echomind.infrastructure.storage.memory_store import MemoryConversationStore


def _seeded():
    store = MemoryConversationStore()
    store.extend(
        "s",
        [
            Message(role="user", content="hi", meta={"timestamp": "2024-05-01T10:00:00Z"}),
            Message(
                role="assistant",
                content="hello",
                meta={
                    "provider": "openai",
                    "model": "gpt-4",
                    "usage": {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5},
                    "timestamp": "2024-05-01T10:00:02Z",
                },
            ),
            Message(role="user", content="again", meta={"timestamp": "2024-05-01T10:01:00Z"}),
            Message(
                role="assistant",
                content="sure",
                meta={"provider": "claude", "model": "claude-3-haiku", "usage": {"prompt_tokens": 8, "completion_tokens": 1}},
            ),
        ],
    )
    return store


def test_memory_store_contract():
    store = MemoryConversationStore()
    assert store.load("x").is_empty
    store.append("x", Message(role="user", content="a"))
    loaded = store.load("x")
    loaded.messages.append(Message(role="user", content="not stored"))
    assert [m.content for m in store.load("x").messages] == ["a"]
    assert store.list_sessions() == ["x"]
    store.clear("x")
    assert store.load("x").is_empty
    assert store.list_sessions() == ["x"]


def test_memory_store_drops_attachment_bytes():
    store = MemoryConversationStore()
    store.append("x", Message(role="user", content="a", attachments=[Attachment("image/png", b"1234")]))
    msg = store.load("x").messages[0]
    assert msg.attachments is None
    assert msg.meta["attachments"][0]["size"] == 4


def test_export_formats():
    store = _seeded()
    data = json.loads(store.export("s", "json"))
    assert data["session_id"] == "s"
    assert len(data["messages"]) == 4

    md = store.export("s", "markdown").decode("utf-8")
    assert md.startswith("# Conversation s")
    assert "## Assistant (openai/gpt-4)" in md

    text = store.export("s", "text").decode("utf-8")
    assert "[2024-05-01T10:00:00Z] user: hi" in text.splitlines()


def test_export_unknown_format():
    with pytest.raises(ValidationError):
        export_state(_seeded().load("s"), "pdf")


def test_stats():
    stats = compute_stats(_seeded().load("s"))
    assert stats.total_messages == 4
    assert stats.messages_by_role == {"system": 0, "user": 2, "assistant": 2}
    assert stats.total_characters == len("hi") + len("hello") + len("again") + len("sure")
    assert stats.prompt_tokens == 11
    assert stats.completion_tokens == 3
    assert stats.total_tokens == 14
    assert dict(stats.providers) == {"openai": 1, "claude": 1}
    assert stats.first_activity.isoformat().startswith("2024-05-01T10:00:00")
    assert stats.last_activity.isoformat().startswith("2024-05-01T10:01:00")


def test_stats_empty():
    stats = compute_stats(MemoryConversationStore().load("none"))
    assert stats.total_messages == 0
    assert stats.first_activity is None


def test_search_by_text_and_role():
    state = _seeded().load("s")
    assert [m.content for m in search_messages(state, SearchQuery(text="AGAIN"))] == ["again"]
    assert [m.content for m in search_messages(state, SearchQuery(role="assistant"))] == ["hello", "sure"]
    assert search_messages(state, SearchQuery(text="missing")) == []


def test_search_by_origin_and_limit():
    state = _seeded().load("s")
    assert [m.content for m in search_messages(state, SearchQuery(provider="claude"))] == ["sure"]
    assert [m.content for m in search_messages(state, SearchQuery(model="gpt-4"))] == ["hello"]
    assert [m.content for m in search_messages(state, SearchQuery(limit=1))] == ["hi"]
    assert search_messages(state, SearchQuery(limit=0)) == []


def test_search_by_time_range():
    state = _seeded().load("s")
    query = SearchQuery(
        since=datetime(2024, 5, 1, 10, 0, 1, tzinfo=timezone.utc),
        until=datetime(2024, 5, 1, 10, 0, 30, tzinfo=timezone.utc),
    )
    assert [m.content for m in search_messages(state, query)] == ["hello"]
