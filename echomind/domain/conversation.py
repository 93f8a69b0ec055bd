from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from .models import ROLES, Message


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_iso(raw: str) -> datetime:
    return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))


@dataclass
class ConversationState:
    """某个会话的完整历史。

    只允许追加；clear 是唯一的截断操作。由 ConversationStore 独占持有。
    """

    session_id: str
    messages: List[Message] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_empty(self) -> bool:
        return not self.messages

    def append(self, message: Message) -> None:
        self.messages.append(message)
        self.updated_at = utcnow()

    def clear(self) -> None:
        self.messages = []
        self.updated_at = utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "messages": [_message_to_dict(m) for m in self.messages],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationState":
        messages = []
        for raw in data.get("messages") or []:
            role = raw.get("role")
            if role not in ROLES:
                raise ValueError(f"invalid role in stored message: {role!r}")
            messages.append(Message(role=role, content=raw.get("content") or "", meta=raw.get("meta") or {}))
        return cls(
            session_id=data["session_id"],
            messages=messages,
            created_at=_parse_iso(data["created_at"]),
            updated_at=_parse_iso(data["updated_at"]),
        )


def _message_to_dict(message: Message) -> Dict[str, Any]:
    meta = dict(message.meta)
    # 附件原始字节不落盘，只记录类型与大小
    if message.attachments:
        meta["attachments"] = [{"mime_type": a.mime_type, "size": a.size} for a in message.attachments]
    return {"role": message.role, "content": message.content, "meta": meta}


@dataclass
class ConversationStats:
    session_id: str
    total_messages: int
    messages_by_role: Dict[str, int]
    total_characters: int
    prompt_tokens: int
    completion_tokens: int
    providers: List[Tuple[str, int]]
    models: List[Tuple[str, int]]
    first_activity: Optional[datetime]
    last_activity: Optional[datetime]

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class ConversationStore(Protocol):
    def load(self, session_id: str) -> ConversationState:
        ...

    def append(self, session_id: str, message: Message) -> None:
        ...

    def extend(self, session_id: str, messages: Sequence[Message]) -> ConversationState:
        ...

    def clear(self, session_id: str) -> None:
        ...

    def export(self, session_id: str, fmt: str) -> bytes:
        ...

    def list_sessions(self) -> List[str]:
        ...
