"""响应解析层。

两条路径：

- decode_response: 解析完整响应体，得到统一的 ChatReply。
- StreamDecoder: 增量解析流式字节，按到达顺序产出 ChatDelta。

流式数据可能以任意大小的块到达，一个事件可能被切分在两个块之间。
帧解析器（SSE / NDJSON）负责缓存不完整的行，只有完整的帧才会交给
各厂商的事件解释函数。关键约束：

- 增量按到达顺序产出，拼接结果与分块方式无关；
- 空行、注释等保活帧直接跳过；
- 单个损坏的帧跳过并计数，不中断整个流；
- Provider 明确返回的错误对象立即中断并抛出 ProviderError；
- 连接在结束标记之前关闭时补一个最终增量：已见到结束原因则沿用，
  否则标记为 INCOMPLETE。
"""

import codecs
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from echomind.domain.exceptions import AuthError, ProviderError, SchemaError
from echomind.domain.models import ChatDelta, ChatReply, FinishReason, Usage
from echomind.infrastructure.logging.logger import logger
from echomind.providers.registry import ProviderProfile, RequestVariant, StreamVariant

# 厂商错误类型中可以视为“可重试”的那一部分，仅作为提示透出
RETRYABLE_ERROR_TYPES = {
    "rate_limit_error",
    "rate_limit_exceeded",
    "overloaded_error",
    "api_error",
    "server_error",
    "resource_exhausted",
    "unavailable",
    "internal",
    "timeout",
}

_STATUS_HINTS = {
    400: "Check your request format and model name.",
    401: "Check your API key is correct and has the right permissions.",
    403: "Your API key may not have access to this resource or may be expired.",
    404: "Check the endpoint URL and model name.",
    429: "Rate limit exceeded. Try again later or reduce request frequency.",
}


# ---- 错误识别 ----


def _error_from_payload(data: Any) -> Optional[Tuple[str, Optional[str]]]:
    """从响应 JSON 中识别显式错误，返回 (message, error_type)。"""

    if not isinstance(data, dict):
        return None
    err = data.get("error")
    if isinstance(err, dict):
        message = err.get("message") or json.dumps(err, ensure_ascii=False)
        etype = err.get("type") or err.get("status") or err.get("code")
        return str(message), str(etype) if etype is not None else None
    if isinstance(err, str) and err:
        return err, data.get("type") if isinstance(data.get("type"), str) else None
    if data.get("type") == "error":
        return str(data.get("message") or "unknown error"), None
    return None


def _is_retryable(status_code: int, error_type: Optional[str]) -> bool:
    if status_code == 429 or status_code >= 500:
        return True
    return bool(error_type) and str(error_type).lower() in RETRYABLE_ERROR_TYPES


def _raise_provider_error(
    profile: ProviderProfile,
    status_code: int,
    message: str,
    error_type: Optional[str] = None,
) -> None:
    if status_code in (401, 403):
        hint = _STATUS_HINTS[status_code]
        raise AuthError(f"{message}. {hint}", http_status=status_code, provider=profile.id)
    hint = _STATUS_HINTS.get(status_code)
    if hint is None and status_code >= 500:
        hint = "Server error. The API service may be down, try again later."
    text = f"{message}. {hint}" if hint else message
    raise ProviderError(
        text,
        retryable=_is_retryable(status_code, error_type),
        http_status=status_code if status_code >= 400 else 502,
        provider=profile.id,
        error_type=error_type,
    )


def check_error_response(body: bytes, profile: ProviderProfile, status_code: int) -> None:
    """非 2xx 响应统一转换为类型化错误。2xx 时直接返回。"""

    if status_code < 400:
        return
    text = body.decode("utf-8", errors="replace").strip()
    try:
        data = json.loads(text) if text else None
    except json.JSONDecodeError:
        data = None
    found = _error_from_payload(data)
    if found is None and isinstance(data, dict) and isinstance(data.get("message"), str):
        found = (data["message"], None)
    message, etype = found if found else (text or f"HTTP {status_code}", None)
    _raise_provider_error(profile, status_code, f"API request failed with status {status_code}: {message}", etype)


# ---- 非流式 ----


def decode_response(
    body: bytes,
    profile: ProviderProfile,
    status_code: int = 200,
    latency: float = 0.0,
    requested_model: Optional[str] = None,
) -> ChatReply:
    """将完整响应体解析为 ChatReply。

    Raises:
        AuthError: 401/403。
        ProviderError: 响应中携带显式错误，或其他非 2xx 状态。
        SchemaError: 响应不是 JSON，或缺少必需字段、内容为空。
    """

    check_error_response(body, profile, status_code)
    try:
        data = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise SchemaError(f"Failed to parse API response: {e}", provider=profile.id)
    found = _error_from_payload(data)
    if found is not None:
        _raise_provider_error(profile, status_code, found[0], found[1])
    if not isinstance(data, dict):
        raise SchemaError("Failed to parse API response: expected a JSON object", provider=profile.id)

    extractor = _EXTRACTORS[profile.request_variant]
    try:
        content, model, usage, finish = extractor(data, profile)
    except (KeyError, IndexError, TypeError, AttributeError) as e:
        raise SchemaError(f"Response is missing required field: {e}", provider=profile.id)
    if not content:
        raise SchemaError("No response received from API", code="EMPTY_RESPONSE", provider=profile.id)
    return ChatReply(
        content=content,
        model_used=model or requested_model or profile.default_model,
        usage=usage,
        latency=latency,
        provider_id=profile.id,
        finish_reason=FinishReason.from_provider(finish),
    )


def _join_text(value: Any) -> str:
    """兼容 content 为字符串或分段列表两种形式。"""

    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return "".join(p.get("text", "") for p in value if isinstance(p, dict))
    if value is None:
        return ""
    raise TypeError(f"unexpected content type {type(value).__name__}")


def _usage(prompt: Any, completion: Any) -> Optional[Usage]:
    if prompt is None and completion is None:
        return None
    return Usage(prompt_tokens=int(prompt or 0), completion_tokens=int(completion or 0))


def _extract_openai(data: Dict[str, Any], profile: ProviderProfile):
    choice = data["choices"][0]
    content = _join_text(choice["message"].get("content"))
    usage_raw = data.get("usage") or {}
    return (
        content,
        data.get("model"),
        _usage(usage_raw.get("prompt_tokens"), usage_raw.get("completion_tokens")),
        choice.get("finish_reason"),
    )


def _extract_anthropic(data: Dict[str, Any], profile: ProviderProfile):
    blocks = data["content"]
    content = "".join(b.get("text", "") for b in blocks if b.get("type") == "text")
    usage_raw = data.get("usage") or {}
    return (
        content,
        data.get("model"),
        _usage(usage_raw.get("input_tokens"), usage_raw.get("output_tokens")),
        data.get("stop_reason"),
    )


def _extract_gemini(data: Dict[str, Any], profile: ProviderProfile):
    candidates = data.get("candidates")
    if not candidates:
        block = (data.get("promptFeedback") or {}).get("blockReason")
        if block:
            raise ProviderError(f"Prompt blocked by provider: {block}", provider=profile.id)
        raise KeyError("candidates")
    candidate = candidates[0]
    parts = (candidate.get("content") or {}).get("parts") or []
    content = "".join(p.get("text", "") for p in parts)
    meta = data.get("usageMetadata") or {}
    return (
        content,
        data.get("modelVersion"),
        _usage(meta.get("promptTokenCount"), meta.get("candidatesTokenCount")),
        candidate.get("finishReason"),
    )


def _extract_cohere(data: Dict[str, Any], profile: ProviderProfile):
    billed = ((data.get("meta") or {}).get("billed_units")) or {}
    return (
        data["text"],
        None,
        _usage(billed.get("input_tokens"), billed.get("output_tokens")),
        data.get("finish_reason"),
    )


def _extract_ollama(data: Dict[str, Any], profile: ProviderProfile):
    return (
        data["message"].get("content") or "",
        data.get("model"),
        _usage(data.get("prompt_eval_count"), data.get("eval_count")),
        data.get("done_reason"),
    )


_EXTRACTORS: Dict[RequestVariant, Callable[[Dict[str, Any], ProviderProfile], tuple]] = {
    RequestVariant.OPENAI_MESSAGES: _extract_openai,
    RequestVariant.ANTHROPIC_MESSAGES: _extract_anthropic,
    RequestVariant.GEMINI_CONTENTS: _extract_gemini,
    RequestVariant.COHERE_PROMPT: _extract_cohere,
    RequestVariant.OLLAMA_CHAT: _extract_ollama,
}


# ---- 帧解析 ----


@dataclass(frozen=True)
class Frame:
    """一个完整的流式帧。SSE 帧带有可选的 event 名称。"""

    data: str
    event: Optional[str] = None


class _LineBuffer:
    """把任意切分的字节块还原为完整的文本行。

    使用增量 UTF-8 解码器，多字节字符被切分在两个块之间时也能正确拼接。
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes) -> List[str]:
        self._pending += self._decoder.decode(chunk)
        if "\n" not in self._pending:
            return []
        *lines, self._pending = self._pending.split("\n")
        return [line[:-1] if line.endswith("\r") else line for line in lines]

    def flush(self) -> List[str]:
        self._pending += self._decoder.decode(b"", final=True)
        rest, self._pending = self._pending, ""
        if not rest:
            return []
        return [rest[:-1] if rest.endswith("\r") else rest]


class SSEFrameParser:
    """text/event-stream 帧解析。

    空行结束一个事件；以冒号开头的行是注释（常用作保活）；
    一个事件中的多行 data 以换行拼接。
    """

    def __init__(self) -> None:
        self._lines = _LineBuffer()
        self._data: List[str] = []
        self._event: Optional[str] = None
        self.comments = 0

    def feed(self, chunk: bytes) -> List[Frame]:
        frames: List[Frame] = []
        for line in self._lines.feed(chunk):
            self._handle_line(line, frames)
        return frames

    def flush(self) -> List[Frame]:
        frames: List[Frame] = []
        for line in self._lines.flush():
            self._handle_line(line, frames)
        self._dispatch(frames)
        return frames

    def _handle_line(self, line: str, frames: List[Frame]) -> None:
        if not line:
            self._dispatch(frames)
            return
        if line.startswith(":"):
            self.comments += 1
            return
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "data":
            self._data.append(value)
        elif name == "event":
            self._event = value
        # id / retry 字段与本场景无关

    def _dispatch(self, frames: List[Frame]) -> None:
        if self._data:
            frames.append(Frame(data="\n".join(self._data), event=self._event))
        self._data = []
        self._event = None


class NDJSONFrameParser:
    """换行分隔的 JSON 帧解析（Ollama、Cohere）。"""

    def __init__(self) -> None:
        self._lines = _LineBuffer()

    def feed(self, chunk: bytes) -> List[Frame]:
        return [Frame(data=line) for line in self._lines.feed(chunk) if line.strip()]

    def flush(self) -> List[Frame]:
        return [Frame(data=line) for line in self._lines.flush() if line.strip()]


# ---- 各厂商事件解释 ----


@dataclass
class StreamEvent:
    """一帧解析后的语义内容。"""

    text: str = ""
    final: bool = False
    finish_reason: Optional[FinishReason] = None
    usage: Optional[Usage] = None
    model: Optional[str] = None


def _stream_error(profile: ProviderProfile, err: Any) -> ProviderError:
    if isinstance(err, dict):
        message = err.get("message") or json.dumps(err, ensure_ascii=False)
        etype = err.get("type") or err.get("status") or err.get("code")
    else:
        message, etype = str(err), None
    return ProviderError(
        f"Provider reported an error mid-stream: {message}",
        retryable=_is_retryable(200, str(etype) if etype is not None else None),
        provider=profile.id,
        error_type=etype,
    )


def _openai_event(profile: ProviderProfile, frame: Frame, obj: Dict[str, Any]) -> Optional[StreamEvent]:
    if obj.get("error"):
        raise _stream_error(profile, obj["error"])
    ev = StreamEvent(model=obj.get("model"))
    choices = obj.get("choices")
    if choices:
        choice = choices[0]
        delta = choice.get("delta") or {}
        if isinstance(delta, str):
            ev.text = delta
        else:
            ev.text = _join_text(delta.get("content"))
        if choice.get("finish_reason"):
            ev.finish_reason = FinishReason.from_provider(choice["finish_reason"])
    elif isinstance(obj.get("delta"), str):
        ev.text = obj["delta"]
    usage_raw = obj.get("usage")
    if usage_raw:
        ev.usage = _usage(usage_raw.get("prompt_tokens"), usage_raw.get("completion_tokens"))
    return ev


def _anthropic_event(profile: ProviderProfile, frame: Frame, obj: Dict[str, Any]) -> Optional[StreamEvent]:
    etype = obj.get("type") or frame.event
    if etype == "error":
        raise _stream_error(profile, obj.get("error") or obj)
    if etype == "ping":
        return None
    if etype == "message_start":
        message = obj["message"]
        usage_raw = message.get("usage") or {}
        return StreamEvent(model=message.get("model"), usage=_usage(usage_raw.get("input_tokens"), None))
    if etype == "content_block_delta":
        delta = obj["delta"]
        if delta.get("type") == "text_delta":
            return StreamEvent(text=delta.get("text") or "")
        return None
    if etype == "message_delta":
        usage_raw = obj.get("usage") or {}
        reason = (obj.get("delta") or {}).get("stop_reason")
        return StreamEvent(
            finish_reason=FinishReason.from_provider(reason) if reason else None,
            usage=_usage(None, usage_raw.get("output_tokens")),
        )
    if etype == "message_stop":
        return StreamEvent(final=True)
    return None


def _gemini_event(profile: ProviderProfile, frame: Frame, obj: Dict[str, Any]) -> Optional[StreamEvent]:
    if obj.get("error"):
        raise _stream_error(profile, obj["error"])
    candidates = obj.get("candidates")
    if not candidates:
        block = (obj.get("promptFeedback") or {}).get("blockReason")
        if block:
            raise ProviderError(f"Prompt blocked by provider: {block}", provider=profile.id)
        return None
    candidate = candidates[0]
    parts = (candidate.get("content") or {}).get("parts") or []
    ev = StreamEvent(text="".join(p.get("text", "") for p in parts), model=obj.get("modelVersion"))
    meta = obj.get("usageMetadata")
    if meta:
        ev.usage = _usage(meta.get("promptTokenCount"), meta.get("candidatesTokenCount"))
    if candidate.get("finishReason"):
        ev.finish_reason = FinishReason.from_provider(candidate["finishReason"])
        ev.final = True
    return ev


def _ollama_event(profile: ProviderProfile, frame: Frame, obj: Dict[str, Any]) -> Optional[StreamEvent]:
    if obj.get("error"):
        raise _stream_error(profile, obj["error"])
    message = obj.get("message") or {}
    ev = StreamEvent(text=message.get("content") or "", model=obj.get("model"))
    if obj.get("done"):
        ev.final = True
        ev.finish_reason = FinishReason.from_provider(obj.get("done_reason"))
        ev.usage = _usage(obj.get("prompt_eval_count"), obj.get("eval_count"))
    return ev


def _cohere_event(profile: ProviderProfile, frame: Frame, obj: Dict[str, Any]) -> Optional[StreamEvent]:
    etype = obj.get("event_type")
    if etype == "text-generation":
        return StreamEvent(text=obj.get("text") or "")
    if etype == "stream-end":
        reason = obj.get("finish_reason")
        if reason == "ERROR":
            raise _stream_error(profile, obj.get("error") or "generation failed")
        response = obj.get("response") or {}
        billed = (response.get("meta") or {}).get("billed_units") or {}
        return StreamEvent(
            final=True,
            finish_reason=FinishReason.from_provider(reason),
            usage=_usage(billed.get("input_tokens"), billed.get("output_tokens")),
        )
    if obj.get("error") or etype == "error":
        raise _stream_error(profile, obj.get("error") or obj)
    return None


_INTERPRETERS: Dict[StreamVariant, Callable[[ProviderProfile, Frame, Dict[str, Any]], Optional[StreamEvent]]] = {
    StreamVariant.OPENAI_SSE: _openai_event,
    StreamVariant.ANTHROPIC_SSE: _anthropic_event,
    StreamVariant.GEMINI_SSE: _gemini_event,
    StreamVariant.OLLAMA_NDJSON: _ollama_event,
    StreamVariant.COHERE_NDJSON: _cohere_event,
}


def _merge_usage(current: Optional[Usage], new: Optional[Usage]) -> Optional[Usage]:
    if new is None:
        return current
    if current is None:
        return Usage(new.prompt_tokens, new.completion_tokens)
    return Usage(
        prompt_tokens=new.prompt_tokens or current.prompt_tokens,
        completion_tokens=new.completion_tokens or current.completion_tokens,
    )


class StreamDecoder:
    """流式响应的增量解析器。

    调用方不断 feed 收到的字节块，拿到按顺序排列的 ChatDelta；
    连接关闭后调用 finish 冲刷缓冲区。解析本身是同步的纯 CPU 操作。
    """

    def __init__(self, profile: ProviderProfile, requested_model: Optional[str] = None):
        self.profile = profile
        if profile.stream_variant.framing == "ndjson":
            self._parser = NDJSONFrameParser()
        else:
            self._parser = SSEFrameParser()
        self._interpret = _INTERPRETERS[profile.stream_variant]
        self._parts: List[str] = []
        self._pending_reason: Optional[FinishReason] = None
        self.model: Optional[str] = requested_model
        self.usage: Optional[Usage] = None
        self.finished = False
        self.finish_reason: Optional[FinishReason] = None
        self.malformed_frames = 0
        self.ignored_frames = 0

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def feed(self, chunk: bytes) -> List[ChatDelta]:
        if self.finished or not chunk:
            return []
        return self._process(self._parser.feed(chunk))

    def finish(self) -> List[ChatDelta]:
        """连接已关闭：冲刷残留帧并补一个终止增量。

        已经收到带结束原因的帧时按该原因结束；否则视为被截断，标记 INCOMPLETE。
        """

        if self.finished:
            return []
        deltas = self._process(self._parser.flush())
        if self.finished:
            return deltas
        self.finished = True
        if self._pending_reason is not None:
            self.finish_reason = self._pending_reason
        else:
            self.finish_reason = FinishReason.INCOMPLETE
            logger.warning(
                "Stream closed without end marker",
                extra={"extra": {"provider": self.profile.id, "received_chars": len(self.text)}},
            )
        deltas.append(ChatDelta(text_fragment="", is_final=True, finish_reason=self.finish_reason))
        return deltas

    def _process(self, frames: List[Frame]) -> List[ChatDelta]:
        deltas: List[ChatDelta] = []
        for frame in frames:
            if self.finished:
                self.ignored_frames += 1
                continue
            event = self._decode_frame(frame)
            if event is None:
                continue
            if event.model:
                self.model = event.model
            self.usage = _merge_usage(self.usage, event.usage)
            if event.finish_reason is not None:
                self._pending_reason = event.finish_reason
            if event.text:
                self._parts.append(event.text)
                deltas.append(ChatDelta(text_fragment=event.text))
            if event.final:
                self.finished = True
                self.finish_reason = self._pending_reason or FinishReason.STOP
                deltas.append(ChatDelta(text_fragment="", is_final=True, finish_reason=self.finish_reason))
        return deltas

    def _decode_frame(self, frame: Frame) -> Optional[StreamEvent]:
        data = frame.data.strip()
        if not data:
            return None
        if data == "[DONE]" and self.profile.stream_variant is StreamVariant.OPENAI_SSE:
            return StreamEvent(final=True)
        try:
            obj = json.loads(data)
            if not isinstance(obj, dict):
                raise TypeError(f"expected a JSON object, got {type(obj).__name__}")
            return self._interpret(self.profile, frame, obj)
        except (json.JSONDecodeError, KeyError, IndexError, TypeError, AttributeError) as e:
            self.malformed_frames += 1
            logger.log(
                logging.WARNING,
                "Skipped malformed stream frame",
                extra={
                    "extra": {
                        "provider": self.profile.id,
                        "error": str(e),
                        "frame_bytes": len(data),
                        "malformed_frames": self.malformed_frames,
                    }
                },
            )
            return None
