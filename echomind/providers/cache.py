"""非流式回复缓存。

相同的请求（provider、endpoint、模型、消息与采样参数都一致）在 TTL 内直接复用
上一次的 ChatReply。容量有上限，超出时淘汰最久未使用的条目。
流式请求和带附件的请求不走缓存。
"""

import hashlib
import json
import time
from collections import OrderedDict
from dataclasses import replace
from typing import Callable, Optional, Tuple

from echomind.domain.models import ChatReply, ChatRequest


class ReplyCache:
    def __init__(
        self,
        max_entries: int = 100,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[float, ChatReply]]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def cacheable(request: ChatRequest) -> bool:
        if request.stream or request.attachments:
            return False
        return not any(m.attachments for m in request.messages)

    @staticmethod
    def fingerprint(request: ChatRequest, url: str = "") -> str:
        material = {
            "provider": request.provider_id,
            "url": url,
            "model": request.model,
            "messages": [[m.role, m.content] for m in request.messages],
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
            "top_p": request.top_p,
            "top_k": request.top_k,
            "system": request.system_prompt,
        }
        raw = json.dumps(material, ensure_ascii=False, sort_keys=True).encode("utf-8")
        return hashlib.sha256(raw).hexdigest()

    def get(self, key: str) -> Optional[ChatReply]:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        stored_at, reply = entry
        if self.ttl_seconds and self._clock() - stored_at > self.ttl_seconds:
            del self._entries[key]
            self.misses += 1
            return None
        self._entries.move_to_end(key)
        self.hits += 1
        return replace(reply)

    def put(self, key: str, reply: ChatReply) -> None:
        if self.ttl_seconds <= 0:
            return
        self._entries[key] = (self._clock(), replace(reply))
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
