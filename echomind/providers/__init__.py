"""LLM Provider 集成层。

该包下的模块负责：
- 维护 Provider 配置表 (registry)。
- 把统一请求转换为各厂商的 HTTP 请求 (translator)。
- 解析完整响应与流式事件 (decoder / stream)。
- 发送 HTTP 请求 (transport)，以及非流式回复缓存 (cache)。
"""

from echomind.providers.registry import (
    PROVIDER_REGISTRY,
    ProviderProfile,
    get_provider_profile,
    list_providers,
)
from echomind.providers.translator import WireRequest, translate
from echomind.providers.decoder import StreamDecoder, decode_response
from echomind.providers.transport import HttpxTransport, Transport
from echomind.providers.stream import StreamSession

__all__ = [
    "PROVIDER_REGISTRY",
    "ProviderProfile",
    "get_provider_profile",
    "list_providers",
    "WireRequest",
    "translate",
    "StreamDecoder",
    "decode_response",
    "HttpxTransport",
    "Transport",
    "StreamSession",
]
