"""Provider 配置表。

每个 Provider 由一个不可变的 ProviderProfile 描述：endpoint、认证方式、
请求体格式（RequestVariant）与流式帧格式（StreamVariant）。

格式是一个封闭集合，translator / decoder 通过对枚举做分派来选择实现，
而不是在运行时加载插件，这样所有支持的线协议都可以逐一测试。
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, List, Mapping, Optional, Tuple

import httpx

from echomind.domain.exceptions import ValidationError


class AuthKind(str, Enum):
    NONE = "none"
    BEARER = "bearer"
    HEADER = "header"


@dataclass(frozen=True)
class AuthScheme:
    """认证方式：无认证、Bearer 头或自定义头。"""

    kind: AuthKind
    header_name: Optional[str] = None

    @classmethod
    def none(cls) -> "AuthScheme":
        return cls(AuthKind.NONE)

    @classmethod
    def bearer(cls) -> "AuthScheme":
        return cls(AuthKind.BEARER, "Authorization")

    @classmethod
    def header(cls, name: str) -> "AuthScheme":
        return cls(AuthKind.HEADER, name)

    def apply(self, headers: Dict[str, str], api_key: Optional[str]) -> None:
        if self.kind is AuthKind.NONE or not api_key:
            return
        if self.kind is AuthKind.BEARER:
            headers["Authorization"] = f"Bearer {api_key}"
        else:
            headers[self.header_name or "Authorization"] = api_key


class RequestVariant(str, Enum):
    OPENAI_MESSAGES = "openai_messages"
    ANTHROPIC_MESSAGES = "anthropic_messages"
    GEMINI_CONTENTS = "gemini_contents"
    COHERE_PROMPT = "cohere_prompt"
    OLLAMA_CHAT = "ollama_chat"


class StreamVariant(str, Enum):
    OPENAI_SSE = "openai_sse"
    ANTHROPIC_SSE = "anthropic_sse"
    GEMINI_SSE = "gemini_sse"
    OLLAMA_NDJSON = "ollama_ndjson"
    COHERE_NDJSON = "cohere_ndjson"

    @property
    def framing(self) -> str:
        return "ndjson" if self.value.endswith("_ndjson") else "sse"


@dataclass(frozen=True)
class ProviderProfile:
    """单个 Provider 的静态描述。"""

    id: str
    base_url: str
    auth_scheme: AuthScheme
    request_variant: RequestVariant
    stream_variant: StreamVariant
    requires_key: bool
    default_model: str
    max_temperature: float = 2.0
    supports_streaming: bool = True
    supports_top_k: bool = False
    # 允许作为附件发送的 MIME 前缀；空元组表示不支持多模态
    attachment_mime_prefixes: Tuple[str, ...] = ()
    extra_headers: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        try:
            url = httpx.URL(self.base_url)
        except (httpx.InvalidURL, TypeError) as e:
            raise ValidationError(code="INVALID_ENDPOINT", message=f"{self.base_url!r}: {e}")
        if url.scheme not in ("http", "https") or not url.host:
            raise ValidationError(
                code="INVALID_ENDPOINT",
                message=f"base_url must be an absolute http(s) URL: {self.base_url!r}",
            )

    @property
    def supports_attachments(self) -> bool:
        return bool(self.attachment_mime_prefixes)

    def accepts_mime(self, mime_type: str) -> bool:
        mime = mime_type.lower()
        return any(mime.startswith(prefix) for prefix in self.attachment_mime_prefixes)


_OPENAI_IMAGES = ("image/png", "image/jpeg", "image/gif", "image/webp")

CHAT_PROFILE = ProviderProfile(
    id="chat",
    base_url="https://ch.at/v1/chat/completions",
    auth_scheme=AuthScheme.none(),
    request_variant=RequestVariant.OPENAI_MESSAGES,
    stream_variant=StreamVariant.OPENAI_SSE,
    requires_key=False,
    default_model="gpt-3.5-turbo",
)

CHATANYWHERE_PROFILE = ProviderProfile(
    id="chatanywhere",
    base_url="https://api.chatanywhere.tech/v1/chat/completions",
    auth_scheme=AuthScheme.bearer(),
    request_variant=RequestVariant.OPENAI_MESSAGES,
    stream_variant=StreamVariant.OPENAI_SSE,
    requires_key=True,
    default_model="gpt-3.5-turbo",
    attachment_mime_prefixes=_OPENAI_IMAGES,
)

OPENAI_PROFILE = ProviderProfile(
    id="openai",
    base_url="https://api.openai.com/v1/chat/completions",
    auth_scheme=AuthScheme.bearer(),
    request_variant=RequestVariant.OPENAI_MESSAGES,
    stream_variant=StreamVariant.OPENAI_SSE,
    requires_key=True,
    default_model="gpt-4o-mini",
    attachment_mime_prefixes=_OPENAI_IMAGES,
)

CLAUDE_PROFILE = ProviderProfile(
    id="claude",
    base_url="https://api.anthropic.com/v1/messages",
    auth_scheme=AuthScheme.header("x-api-key"),
    request_variant=RequestVariant.ANTHROPIC_MESSAGES,
    stream_variant=StreamVariant.ANTHROPIC_SSE,
    requires_key=True,
    default_model="claude-3-5-sonnet-latest",
    max_temperature=1.0,
    supports_top_k=True,
    attachment_mime_prefixes=_OPENAI_IMAGES + ("application/pdf",),
    extra_headers={"anthropic-version": "2023-06-01"},
)

OLLAMA_PROFILE = ProviderProfile(
    id="ollama",
    base_url="http://localhost:11434/api/chat",
    auth_scheme=AuthScheme.none(),
    request_variant=RequestVariant.OLLAMA_CHAT,
    stream_variant=StreamVariant.OLLAMA_NDJSON,
    requires_key=False,
    default_model="llama3",
    supports_top_k=True,
    attachment_mime_prefixes=("image/",),
)

GROK_PROFILE = ProviderProfile(
    id="grok",
    base_url="https://api.x.ai/v1/chat/completions",
    auth_scheme=AuthScheme.bearer(),
    request_variant=RequestVariant.OPENAI_MESSAGES,
    stream_variant=StreamVariant.OPENAI_SSE,
    requires_key=True,
    default_model="grok-2-latest",
    attachment_mime_prefixes=("image/png", "image/jpeg"),
)

MISTRAL_PROFILE = ProviderProfile(
    id="mistral",
    base_url="https://api.mistral.ai/v1/chat/completions",
    auth_scheme=AuthScheme.bearer(),
    request_variant=RequestVariant.OPENAI_MESSAGES,
    stream_variant=StreamVariant.OPENAI_SSE,
    requires_key=True,
    default_model="mistral-small-latest",
    max_temperature=1.5,
)

COHERE_PROFILE = ProviderProfile(
    id="cohere",
    base_url="https://api.cohere.ai/v1/chat",
    auth_scheme=AuthScheme.bearer(),
    request_variant=RequestVariant.COHERE_PROMPT,
    stream_variant=StreamVariant.COHERE_NDJSON,
    requires_key=True,
    default_model="command",
    max_temperature=1.0,
    supports_top_k=True,
)

GEMINI_PROFILE = ProviderProfile(
    id="gemini",
    base_url="https://generativelanguage.googleapis.com/v1beta/models",
    auth_scheme=AuthScheme.header("x-goog-api-key"),
    request_variant=RequestVariant.GEMINI_CONTENTS,
    stream_variant=StreamVariant.GEMINI_SSE,
    requires_key=True,
    default_model="gemini-1.5-flash",
    supports_top_k=True,
    attachment_mime_prefixes=("image/", "application/pdf", "audio/", "text/"),
)


PROVIDER_REGISTRY: Mapping[str, ProviderProfile] = {
    p.id: p
    for p in (
        CHAT_PROFILE,
        CHATANYWHERE_PROFILE,
        OPENAI_PROFILE,
        CLAUDE_PROFILE,
        OLLAMA_PROFILE,
        GROK_PROFILE,
        MISTRAL_PROFILE,
        COHERE_PROFILE,
        GEMINI_PROFILE,
    )
}


def custom_profile(url: str, base: Optional[ProviderProfile] = None) -> ProviderProfile:
    """用户自定义 endpoint。

    传入 base 时沿用其请求/流式格式，只替换 URL；否则按 OpenAI 兼容接口处理。
    """

    if base is not None:
        return replace(base, base_url=url)
    return ProviderProfile(
        id="custom",
        base_url=url,
        auth_scheme=AuthScheme.bearer(),
        request_variant=RequestVariant.OPENAI_MESSAGES,
        stream_variant=StreamVariant.OPENAI_SSE,
        requires_key=False,
        default_model="gpt-3.5-turbo",
        attachment_mime_prefixes=_OPENAI_IMAGES,
    )


def get_provider_profile(name: str, endpoint: Optional[str] = None) -> ProviderProfile:
    """根据名称获取 ProviderProfile，名称不区分大小写。

    以 http 开头的名称视为自定义 endpoint；endpoint 参数用于覆盖内置 URL。
    """

    key = (name or "").strip()
    if key.lower().startswith("http"):
        return custom_profile(key)
    profile = PROVIDER_REGISTRY.get(key.lower())
    if profile is None:
        supported = ", ".join(PROVIDER_REGISTRY)
        raise ValidationError(
            code="INVALID_PROVIDER",
            message=f"Unknown provider: {name!r}. Supported providers: {supported}, or a custom URL",
        )
    if endpoint:
        return custom_profile(endpoint, base=profile)
    return profile


def list_providers() -> List[str]:
    return list(PROVIDER_REGISTRY)


def resolve_compare_target(target: str, default_provider: str) -> Tuple[str, str]:
    """把比较模式下的目标字符串解析为 (provider, model)。

    - "gpt-4" -> ("openai", "gpt-4")
    - "claude-3-opus" -> ("claude", "claude-3-opus")
    - "ollama/llama2" -> ("ollama", "llama2")
    - 其他 -> (default_provider, target)
    """

    name = target.strip()
    if not name:
        raise ValidationError(code="INVALID_TARGET", message="empty comparison target")
    lowered = name.lower()
    if lowered.startswith("gpt"):
        return "openai", name
    if lowered.startswith("claude"):
        return "claude", name
    if lowered.startswith("gemini"):
        return "gemini", name
    if "/" in name and not lowered.startswith("http"):
        provider, _, model = name.partition("/")
        return provider.lower(), model or name
    return default_provider, name
