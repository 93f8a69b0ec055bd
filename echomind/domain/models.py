"""统一的对话与结果数据模型。

本模块定义了在不同 Provider 之间共享的标准数据结构：

- Attachment: 随消息发送的图片或文档（原始字节 + MIME 类型）。
- Message: 一条对话消息（system/user/assistant）。
- ChatRequest: 与厂商无关的一次完整请求。
- ChatDelta: 流式返回中的一个增量片段。
- ChatReply: 流式与非流式两条路径共同的最终结果。

所有 Provider 适配逻辑（translator / decoder）都只依赖这些模型，
并负责在各家 API 的 JSON 和这些模型之间做转换。
"""

import base64
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from echomind.domain.exceptions import ValidationError


# 消息角色，对应 OpenAI 风格的 role 字段
Role = Literal["system", "user", "assistant"]
ROLES = ("system", "user", "assistant")


@dataclass(frozen=True)
class Attachment:
    """一个多模态附件。

    data 保存原始字节，序列化为请求体时才做 base64 编码。
    """

    mime_type: str
    data: bytes = field(repr=False)

    @property
    def is_image(self) -> bool:
        return self.mime_type.lower().startswith("image/")

    @property
    def size(self) -> int:
        return len(self.data)

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    def to_data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.to_base64()}"


@dataclass
class Message:
    """一条对话消息。

    - role: 消息角色，system/user/assistant。
    - content: 纯文本内容，顺序即真实对话顺序。
    - attachments: 可选附件，仅对发送它的那一轮有效。
    - meta: 本地元数据（provider、model、usage 等），不会发给 Provider。
    """

    role: Role
    content: str
    attachments: Optional[List[Attachment]] = None
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ChatRequest:
    """一次完整的聊天请求。

    由 ConversationEngine 基于历史消息构建，构建完成后不可变。
    translator 负责把它转换成具体 Provider 的请求体。
    """

    provider_id: str
    model: str
    messages: List[Message]
    temperature: float = 0.7
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    system_prompt: Optional[str] = None
    attachments: List[Attachment] = field(default_factory=list)
    stream: bool = False

    def __post_init__(self) -> None:
        if not 0.0 <= self.temperature <= 2.0:
            raise ValidationError(
                code="INVALID_TEMPERATURE",
                message=f"temperature must be within [0, 2], got {self.temperature}",
            )
        if self.max_tokens is not None and self.max_tokens < 1:
            raise ValidationError(code="INVALID_MAX_TOKENS", message="max_tokens must be positive")


class FinishReason(str, Enum):
    """统一的结束原因。"""

    STOP = "stop"
    LENGTH = "length"
    CONTENT_FILTER = "content_filter"
    TOOL_CALLS = "tool_calls"
    ERROR = "error"
    INCOMPLETE = "incomplete"
    OTHER = "other"

    @classmethod
    def from_provider(cls, raw: Optional[str]) -> "FinishReason":
        """将各厂商的 finish/stop reason 映射为统一枚举。"""

        if not raw:
            return cls.STOP
        key = str(raw).strip().lower()
        return _FINISH_REASON_ALIASES.get(key, cls.OTHER)


_FINISH_REASON_ALIASES = {
    "stop": FinishReason.STOP,
    "end_turn": FinishReason.STOP,
    "stop_sequence": FinishReason.STOP,
    "complete": FinishReason.STOP,
    "eos": FinishReason.STOP,
    "length": FinishReason.LENGTH,
    "max_tokens": FinishReason.LENGTH,
    "model_length": FinishReason.LENGTH,
    "content_filter": FinishReason.CONTENT_FILTER,
    "safety": FinishReason.CONTENT_FILTER,
    "recitation": FinishReason.CONTENT_FILTER,
    "error_toxic": FinishReason.CONTENT_FILTER,
    "tool_calls": FinishReason.TOOL_CALLS,
    "tool_use": FinishReason.TOOL_CALLS,
    "function_call": FinishReason.TOOL_CALLS,
    "error": FinishReason.ERROR,
    "error_limit": FinishReason.ERROR,
    "incomplete": FinishReason.INCOMPLETE,
}


@dataclass(frozen=True)
class ChatDelta:
    """流式返回中的一个增量。

    同一次流式会话中所有 text_fragment 按顺序拼接即为完整回答。
    """

    text_fragment: str
    is_final: bool = False
    finish_reason: Optional[FinishReason] = None


@dataclass
class Usage:
    """Provider 返回的 token 统计信息（统一格式）。"""

    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def to_dict(self) -> Dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class ChatReply:
    """一次对话调用的最终结果。

    - content: 完整回答文本。
    - model_used: Provider 实际使用的模型名（响应中没有时回落到请求模型）。
    - usage: 可选的 token 使用统计。
    - latency: 从发出请求到结果完成的耗时（秒）。
    """

    content: str
    model_used: str
    usage: Optional[Usage] = None
    latency: float = 0.0
    provider_id: Optional[str] = None
    finish_reason: FinishReason = FinishReason.STOP

    @property
    def is_complete(self) -> bool:
        return self.finish_reason not in (FinishReason.INCOMPLETE, FinishReason.ERROR)
