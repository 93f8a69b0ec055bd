"""请求转换层。

把与厂商无关的 ChatRequest 转换成具体 Provider 的 HTTP 请求：

1. 发送前做能力检查（流式、温度范围、top_k、附件类型），不满足时抛 CapabilityError。
2. 按 ProviderProfile.request_variant 选择一种请求体格式并序列化为 JSON。
3. 按 auth_scheme 把凭据写进请求头（从不写进请求体，也从不写进日志）。

新增一种厂商格式时，在 RequestVariant 中加一个值并在 _BUILDERS 中注册即可。
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from echomind.domain.exceptions import AuthError, CapabilityError, ValidationError
from echomind.domain.models import Attachment, ChatRequest, Message
from echomind.infrastructure.logging.logger import logger
from echomind.providers.registry import ProviderProfile, RequestVariant

# Anthropic 要求必须给出 max_tokens
ANTHROPIC_DEFAULT_MAX_TOKENS = 1024


@dataclass(frozen=True)
class WireRequest:
    """一次待发送的 HTTP 请求。

    headers 中含有凭据，因此不参与 repr。
    """

    url: str
    body: bytes = field(repr=False)
    headers: Dict[str, str] = field(repr=False, default_factory=dict)
    method: str = "POST"
    stream: bool = False

    def json(self) -> Dict[str, Any]:
        return json.loads(self.body.decode("utf-8"))


def translate(request: ChatRequest, profile: ProviderProfile, api_key: Optional[str] = None) -> WireRequest:
    """将 ChatRequest 转成目标 Provider 的 WireRequest。"""

    if not request.messages:
        raise ValidationError(code="EMPTY_MESSAGES", message="ChatRequest.messages must not be empty")
    if profile.requires_key and not api_key:
        raise AuthError(
            f"API key required for provider '{profile.id}'. "
            f"Set it in config or use ECHOMIND_API_KEY environment variable.",
            code="MISSING_API_KEY",
            provider=profile.id,
        )
    _check_capabilities(request, profile)

    model = request.model or profile.default_model
    messages = _effective_messages(request)
    builder = _BUILDERS[profile.request_variant]
    payload = builder(request, model, messages)
    body = json.dumps(payload, ensure_ascii=False, separators=(",", ":")).encode("utf-8")

    headers = {"Content-Type": "application/json"}
    if request.stream:
        headers["Accept"] = "application/x-ndjson" if profile.stream_variant.framing == "ndjson" else "text/event-stream"
    else:
        headers["Accept"] = "application/json"
    headers.update(profile.extra_headers)
    profile.auth_scheme.apply(headers, api_key)

    url = _build_url(profile, model, request.stream)
    logger.log(
        logging.DEBUG,
        "Translated request",
        extra={
            "extra": {
                "provider": profile.id,
                "variant": profile.request_variant.value,
                "model": model,
                "message_count": len(messages),
                "attachment_count": sum(len(m.attachments or []) for m in messages),
                "body_bytes": len(body),
                "stream": request.stream,
            }
        },
    )
    return WireRequest(url=url, body=body, headers=headers, stream=request.stream)


def _check_capabilities(request: ChatRequest, profile: ProviderProfile) -> None:
    if request.stream and not profile.supports_streaming:
        raise CapabilityError(f"Provider '{profile.id}' does not support streaming", provider=profile.id)
    if request.temperature > profile.max_temperature:
        raise CapabilityError(
            f"temperature {request.temperature} exceeds the maximum {profile.max_temperature} "
            f"supported by '{profile.id}'",
            provider=profile.id,
        )
    if request.top_k is not None and not profile.supports_top_k:
        raise CapabilityError(f"Provider '{profile.id}' does not support top_k", provider=profile.id)

    attachments: List[Attachment] = list(request.attachments)
    for m in request.messages:
        attachments.extend(m.attachments or [])
    if not attachments:
        return
    if not profile.supports_attachments:
        raise CapabilityError(
            f"Provider '{profile.id}' does not accept images or documents",
            provider=profile.id,
        )
    for att in attachments:
        if not profile.accepts_mime(att.mime_type):
            raise CapabilityError(
                f"Provider '{profile.id}' does not accept attachments of type {att.mime_type}",
                provider=profile.id,
            )


def _effective_messages(request: ChatRequest) -> List[Message]:
    """返回实际发送的消息列表：请求级附件挂到最后一条 user 消息上。"""

    messages = list(request.messages)
    if not request.attachments:
        return messages
    for idx in range(len(messages) - 1, -1, -1):
        if messages[idx].role == "user":
            m = messages[idx]
            messages[idx] = Message(
                role=m.role,
                content=m.content,
                attachments=list(m.attachments or []) + list(request.attachments),
                meta=m.meta,
            )
            return messages
    raise ValidationError(code="NO_USER_MESSAGE", message="attachments require a user message")


def _system_text(request: ChatRequest, messages: List[Message]) -> Optional[str]:
    parts = []
    if request.system_prompt:
        parts.append(request.system_prompt)
    parts.extend(m.content for m in messages if m.role == "system" and m.content)
    return "\n\n".join(parts) or None


def _build_url(profile: ProviderProfile, model: str, stream: bool) -> str:
    if profile.request_variant is RequestVariant.GEMINI_CONTENTS:
        base = profile.base_url.rstrip("/")
        if stream:
            return f"{base}/{model}:streamGenerateContent?alt=sse"
        return f"{base}/{model}:generateContent"
    return profile.base_url


# ---- 各格式的请求体构造 ----


def _openai_payload(request: ChatRequest, model: str, messages: List[Message]) -> Dict[str, Any]:
    msgs: List[Dict[str, Any]] = []
    if request.system_prompt:
        msgs.append({"role": "system", "content": request.system_prompt})
    for m in messages:
        if m.attachments:
            parts: List[Dict[str, Any]] = [{"type": "text", "text": m.content}]
            for att in m.attachments:
                parts.append({"type": "image_url", "image_url": {"url": att.to_data_url()}})
            msgs.append({"role": m.role, "content": parts})
        else:
            msgs.append({"role": m.role, "content": m.content})
    payload: Dict[str, Any] = {
        "model": model,
        "messages": msgs,
        "temperature": request.temperature,
        "stream": request.stream,
    }
    if request.max_tokens is not None:
        payload["max_tokens"] = request.max_tokens
    if request.top_p is not None:
        payload["top_p"] = request.top_p
    if request.top_k is not None:
        payload["top_k"] = request.top_k
    return payload


def _anthropic_payload(request: ChatRequest, model: str, messages: List[Message]) -> Dict[str, Any]:
    msgs: List[Dict[str, Any]] = []
    for m in messages:
        if m.role == "system":
            continue
        if m.attachments:
            blocks: List[Dict[str, Any]] = []
            for att in m.attachments:
                blocks.append(
                    {
                        "type": "image" if att.is_image else "document",
                        "source": {"type": "base64", "media_type": att.mime_type, "data": att.to_base64()},
                    }
                )
            blocks.append({"type": "text", "text": m.content})
            msgs.append({"role": m.role, "content": blocks})
        else:
            msgs.append({"role": m.role, "content": m.content})
    payload: Dict[str, Any] = {
        "model": model,
        "messages": msgs,
        "max_tokens": request.max_tokens or ANTHROPIC_DEFAULT_MAX_TOKENS,
        "temperature": request.temperature,
        "stream": request.stream,
    }
    system = _system_text(request, messages)
    if system:
        payload["system"] = system
    if request.top_p is not None:
        payload["top_p"] = request.top_p
    if request.top_k is not None:
        payload["top_k"] = request.top_k
    return payload


def _gemini_payload(request: ChatRequest, model: str, messages: List[Message]) -> Dict[str, Any]:
    contents: List[Dict[str, Any]] = []
    for m in messages:
        if m.role == "system":
            continue
        parts: List[Dict[str, Any]] = []
        if m.content:
            parts.append({"text": m.content})
        for att in m.attachments or []:
            parts.append({"inline_data": {"mime_type": att.mime_type, "data": att.to_base64()}})
        contents.append({"role": "model" if m.role == "assistant" else "user", "parts": parts})
    generation: Dict[str, Any] = {"temperature": request.temperature}
    if request.max_tokens is not None:
        generation["maxOutputTokens"] = request.max_tokens
    if request.top_p is not None:
        generation["topP"] = request.top_p
    if request.top_k is not None:
        generation["topK"] = request.top_k
    payload: Dict[str, Any] = {"contents": contents, "generationConfig": generation}
    system = _system_text(request, messages)
    if system:
        payload["systemInstruction"] = {"parts": [{"text": system}]}
    return payload


def _cohere_payload(request: ChatRequest, model: str, messages: List[Message]) -> Dict[str, Any]:
    dialog = [m for m in messages if m.role != "system"]
    if not dialog or dialog[-1].role != "user":
        raise ValidationError(code="NO_USER_MESSAGE", message="the last message must come from the user")
    history = [
        {"role": "USER" if m.role == "user" else "CHATBOT", "message": m.content}
        for m in dialog[:-1]
    ]
    payload: Dict[str, Any] = {
        "message": dialog[-1].content,
        "model": model,
        "temperature": request.temperature,
        "stream": request.stream,
    }
    if history:
        payload["chat_history"] = history
    system = _system_text(request, messages)
    if system:
        payload["preamble"] = system
    if request.max_tokens is not None:
        payload["max_tokens"] = request.max_tokens
    if request.top_p is not None:
        payload["p"] = request.top_p
    if request.top_k is not None:
        payload["k"] = request.top_k
    return payload


def _ollama_payload(request: ChatRequest, model: str, messages: List[Message]) -> Dict[str, Any]:
    msgs: List[Dict[str, Any]] = []
    if request.system_prompt:
        msgs.append({"role": "system", "content": request.system_prompt})
    for m in messages:
        item: Dict[str, Any] = {"role": m.role, "content": m.content}
        if m.attachments:
            item["images"] = [att.to_base64() for att in m.attachments]
        msgs.append(item)
    options: Dict[str, Any] = {"temperature": request.temperature}
    if request.max_tokens is not None:
        options["num_predict"] = request.max_tokens
    if request.top_p is not None:
        options["top_p"] = request.top_p
    if request.top_k is not None:
        options["top_k"] = request.top_k
    # Ollama 默认是流式，非流式请求必须显式关闭
    return {"model": model, "messages": msgs, "stream": request.stream, "options": options}


_BUILDERS: Dict[RequestVariant, Callable[[ChatRequest, str, List[Message]], Dict[str, Any]]] = {
    RequestVariant.OPENAI_MESSAGES: _openai_payload,
    RequestVariant.ANTHROPIC_MESSAGES: _anthropic_payload,
    RequestVariant.GEMINI_CONTENTS: _gemini_payload,
    RequestVariant.COHERE_PROMPT: _cohere_payload,
    RequestVariant.OLLAMA_CHAT: _ollama_payload,
}
