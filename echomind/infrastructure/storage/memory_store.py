import threading
from typing import Dict, List, Sequence

from echomind.domain.conversation import ConversationState, utcnow
from echomind.domain.models import Message
from echomind.infrastructure.storage.export import export_state


def _snapshot(state: ConversationState) -> ConversationState:
    # 与文件存储一致：经过一次序列化，附件只保留类型与大小
    return ConversationState.from_dict(state.to_dict())


class MemoryConversationStore:
    """进程内会话存储，语义与 FileConversationStore 一致，不落盘。"""

    def __init__(self) -> None:
        self._sessions: Dict[str, ConversationState] = {}
        self._lock = threading.Lock()

    def load(self, session_id: str) -> ConversationState:
        with self._lock:
            state = self._sessions.get(session_id)
            if state is None:
                return ConversationState(session_id=session_id)
            return _snapshot(state)

    def append(self, session_id: str, message: Message) -> None:
        self.extend(session_id, [message])

    def extend(self, session_id: str, messages: Sequence[Message]) -> ConversationState:
        with self._lock:
            state = self._sessions.get(session_id) or ConversationState(session_id=session_id)
            state.messages.extend(messages)
            state.updated_at = utcnow()
            stored = _snapshot(state)
            self._sessions[session_id] = stored
            return _snapshot(stored)

    def clear(self, session_id: str) -> None:
        with self._lock:
            state = self._sessions.get(session_id) or ConversationState(session_id=session_id)
            state.clear()
            self._sessions[session_id] = _snapshot(state)

    def export(self, session_id: str, fmt: str) -> bytes:
        return export_state(self.load(session_id), fmt)

    def list_sessions(self) -> List[str]:
        with self._lock:
            return sorted(self._sessions)
