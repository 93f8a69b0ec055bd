"""对话引擎核心模块。

ConversationEngine 负责一轮对话的完整流程：

1. 从 ConversationStore 读取历史，裁剪到最大上下文长度；
2. 构造 ChatRequest，经 translator 转换为 WireRequest；
3. 通过 Transport 发送，非流式走 decode_response，流式走 StreamSession；
4. 只有拿到完整回答后，才把 user + assistant 两条消息一次性写回存储。

任何失败（网络、超时、解析错误、取消、流提前结束）都不会写入存储，
因此存储中的历史永远不会出现“有问无答”的半轮对话。
同一会话的多轮请求由 asyncio.Lock 串行化。
"""

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence, Tuple
from uuid import uuid4

from echomind.config.settings import Settings
from echomind.config.settings import settings as default_settings
from echomind.domain.conversation import ConversationStore, _iso, utcnow
from echomind.domain.exceptions import BusinessError, RequestTimeoutError, ValidationError
from echomind.domain.models import Attachment, ChatDelta, ChatReply, ChatRequest, Message
from echomind.infrastructure.logging.logger import logger
from echomind.providers.cache import ReplyCache
from echomind.providers.decoder import decode_response
from echomind.providers.registry import ProviderProfile, get_provider_profile, resolve_compare_target
from echomind.providers.stream import StreamSession
from echomind.providers.translator import WireRequest, translate
from echomind.providers.transport import Transport


class TurnState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    REPLIED = "replied"


_TRANSITIONS = {
    TurnState.IDLE: {TurnState.SENDING},
    TurnState.SENDING: {TurnState.STREAMING, TurnState.REPLIED, TurnState.IDLE},
    TurnState.STREAMING: {TurnState.FINALIZING, TurnState.IDLE},
    TurnState.FINALIZING: {TurnState.IDLE},
    TurnState.REPLIED: {TurnState.IDLE},
}


class Turn:
    """单轮对话的状态机。非法迁移抛 RuntimeError。"""

    def __init__(self, session_id: Optional[str] = None):
        self.session_id = session_id
        self.state = TurnState.IDLE

    def advance(self, new: TurnState) -> None:
        if new not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"illegal turn transition {self.state.value} -> {new.value}")
        self.state = new

    def reset(self) -> None:
        if self.state is not TurnState.IDLE:
            self.advance(TurnState.IDLE)


@dataclass
class ChatOptions:
    """单次请求的采样参数，未指定的字段使用配置中的默认值。"""

    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    system_prompt: Optional[str] = None


@dataclass
class CompareResult:
    provider_id: str
    model: str
    reply: Optional[ChatReply] = None
    error: Optional[BusinessError] = None
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.reply is not None


class ConversationEngine:
    def __init__(
        self,
        store: ConversationStore,
        transport: Transport,
        settings: Optional[Settings] = None,
        api_keys: Optional[Mapping[str, str]] = None,
        cache: Optional[ReplyCache] = None,
    ):
        self._store = store
        self._transport = transport
        self._settings = settings or default_settings
        self._api_keys = {k.lower(): v for k, v in (api_keys or {}).items() if v}
        self._cache = cache
        self._session_locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._turns: Dict[str, Turn] = {}

    @property
    def store(self) -> ConversationStore:
        return self._store

    @property
    def cache(self) -> Optional[ReplyCache]:
        return self._cache

    def turn_state(self, session_id: str) -> TurnState:
        turn = self._turns.get(session_id)
        return turn.state if turn else TurnState.IDLE

    # ---- 非流式 ----

    async def send(
        self,
        prompt: str,
        *,
        session_id: Optional[str] = None,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        attachments: Sequence[Attachment] = (),
        options: Optional[ChatOptions] = None,
        timeout: Optional[float] = None,
    ) -> ChatReply:
        """执行一轮非流式对话。session_id 为空时不读写历史。"""

        profile = self._profile(provider)
        timeout = timeout if timeout is not None else self._settings.http_timeout
        log_ctx: Dict[str, Any] = {
            "trace_id": f"tr-{uuid4().hex}",
            "session_id": session_id,
            "provider": profile.id,
            "stream": False,
        }
        async with self._session_lock(session_id):
            turn = self._begin(session_id)
            try:
                request, user_msg = await self._build_request(
                    prompt, session_id, profile, model, attachments, options, stream=False
                )
                wire = translate(request, profile, self._api_key(profile))
                turn.advance(TurnState.SENDING)
                reply = await self._exchange(request, wire, profile, timeout, log_ctx)
                turn.advance(TurnState.REPLIED)
                if session_id:
                    await self._commit(session_id, user_msg, reply, log_ctx)
                return reply
            except BaseException as e:
                self._log(logging.WARNING, "Turn failed; nothing persisted", log_ctx, error_type=type(e).__name__)
                raise
            finally:
                self._end(turn)

    async def _exchange(
        self,
        request: ChatRequest,
        wire: WireRequest,
        profile: ProviderProfile,
        timeout: Optional[float],
        log_ctx: Dict[str, Any],
    ) -> ChatReply:
        cache_key = None
        if self._cache is not None and ReplyCache.cacheable(request):
            cache_key = ReplyCache.fingerprint(request, wire.url)
            cached = self._cache.get(cache_key)
            if cached is not None:
                self._log(logging.INFO, "Reply served from cache", log_ctx)
                return cached

        start = time.perf_counter()
        try:
            response = await asyncio.wait_for(self._transport.send(wire, timeout), timeout)
        except asyncio.TimeoutError:
            raise RequestTimeoutError(
                f"Request timed out after {timeout}s",
                timeout=timeout,
                provider=profile.id,
            )
        latency = time.perf_counter() - start
        reply = decode_response(
            response.body,
            profile,
            status_code=response.status_code,
            latency=latency,
            requested_model=request.model,
        )
        usage = reply.usage.to_dict() if reply.usage else {}
        self._log(
            logging.INFO,
            "Provider replied",
            log_ctx,
            model=reply.model_used,
            latency_ms=int(latency * 1000),
            finish_reason=reply.finish_reason.value,
            **usage,
        )
        if cache_key is not None:
            self._cache.put(cache_key, reply)
        return reply

    # ---- 流式 ----

    def stream(
        self,
        prompt: str,
        *,
        session_id: Optional[str] = None,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        attachments: Sequence[Attachment] = (),
        options: Optional[ChatOptions] = None,
        timeout: Optional[float] = None,
    ) -> "StreamTurn":
        """发起一轮流式对话，返回可异步迭代的 StreamTurn。

        请求在第一次迭代时才真正发出。
        """

        return StreamTurn(
            self,
            prompt,
            session_id=session_id,
            provider=provider,
            model=model,
            attachments=attachments,
            options=options,
            timeout=timeout,
        )

    async def _stream_turn(
        self,
        handle: "StreamTurn",
        prompt: str,
        session_id: Optional[str],
        provider: Optional[str],
        model: Optional[str],
        attachments: Sequence[Attachment],
        options: Optional[ChatOptions],
        timeout: Optional[float],
    ) -> AsyncIterator[ChatDelta]:
        profile = self._profile(provider)
        timeout = timeout if timeout is not None else self._settings.http_timeout
        log_ctx: Dict[str, Any] = {
            "trace_id": f"tr-{uuid4().hex}",
            "session_id": session_id,
            "provider": profile.id,
            "stream": True,
        }
        async with self._session_lock(session_id):
            turn = self._begin(session_id)
            handle.turn = turn
            completed = False
            try:
                request, user_msg = await self._build_request(
                    prompt, session_id, profile, model, attachments, options, stream=True
                )
                wire = translate(request, profile, self._api_key(profile))
                turn.advance(TurnState.SENDING)
                session = await StreamSession.open(
                    self._transport, wire, profile, timeout=timeout, requested_model=request.model
                )
                turn.advance(TurnState.STREAMING)
                async with session:
                    async for delta in session:
                        if delta.is_final:
                            # 先落盘再交出最终增量，调用方见到 is_final 后退出也不丢失本轮
                            turn.advance(TurnState.FINALIZING)
                            await self._settle(session.reply, session_id, user_msg, log_ctx, handle)
                            completed = True
                        yield delta
                if not completed:
                    await self._settle(session.reply, session_id, user_msg, log_ctx, handle)
                    completed = True
            finally:
                if not completed:
                    self._log(logging.WARNING, "Stream turn aborted; nothing persisted", log_ctx)
                self._end(turn)

    async def _settle(
        self,
        reply: Optional[ChatReply],
        session_id: Optional[str],
        user_msg: Message,
        log_ctx: Dict[str, Any],
        handle: "StreamTurn",
    ) -> None:
        handle.reply = reply
        if reply is not None and reply.is_complete:
            if session_id:
                await self._commit(session_id, user_msg, reply, log_ctx)
            return
        self._log(
            logging.WARNING,
            "Stream ended early; turn not persisted",
            log_ctx,
            received_chars=len(reply.content) if reply else 0,
        )

    # ---- 多模型比较 ----

    async def compare_iter(
        self,
        prompt: str,
        targets: Sequence[str],
        *,
        timeout: Optional[float] = None,
        options: Optional[ChatOptions] = None,
    ) -> AsyncIterator[CompareResult]:
        """并发向多个模型发送同一问题，按完成顺序产出结果。不写入历史。"""

        if not targets:
            raise ValidationError(code="INVALID_TARGET", message="at least one comparison target is required")

        async def run_one(target: str) -> CompareResult:
            start = time.perf_counter()
            provider_id, model = self._settings.default_provider, target
            try:
                provider_id, model = resolve_compare_target(target, self._settings.default_provider)
                reply = await self.send(prompt, provider=provider_id, model=model, options=options, timeout=timeout)
                return CompareResult(provider_id, model, reply=reply, elapsed=time.perf_counter() - start)
            except BusinessError as e:
                return CompareResult(provider_id, model, error=e, elapsed=time.perf_counter() - start)

        tasks = [asyncio.ensure_future(run_one(t)) for t in targets]
        try:
            for fut in asyncio.as_completed(tasks):
                yield await fut
        finally:
            for t in tasks:
                if not t.done():
                    t.cancel()

    async def compare(
        self,
        prompt: str,
        targets: Sequence[str],
        *,
        timeout: Optional[float] = None,
        options: Optional[ChatOptions] = None,
    ) -> List[CompareResult]:
        return [r async for r in self.compare_iter(prompt, targets, timeout=timeout, options=options)]

    # ---- 内部工具 ----

    def _profile(self, provider: Optional[str]) -> ProviderProfile:
        if provider:
            return get_provider_profile(provider)
        return get_provider_profile(self._settings.default_provider, self._settings.endpoint)

    def _api_key(self, profile: ProviderProfile) -> Optional[str]:
        return self._api_keys.get(profile.id) or self._settings.api_key_for(profile.id)

    def _resolve_model(self, profile: ProviderProfile, model: Optional[str]) -> str:
        if model:
            return model
        if profile.id == get_provider_profile(self._settings.default_provider).id:
            return self._settings.default_model
        return profile.default_model

    async def _build_request(
        self,
        prompt: str,
        session_id: Optional[str],
        profile: ProviderProfile,
        model: Optional[str],
        attachments: Sequence[Attachment],
        options: Optional[ChatOptions],
        stream: bool,
    ) -> Tuple[ChatRequest, Message]:
        if not (prompt and prompt.strip()) and not attachments:
            raise ValidationError(code="EMPTY_PROMPT", message="prompt must not be empty")
        history: List[Message] = []
        if session_id:
            state = await asyncio.to_thread(self._store.load, session_id)
            max_context = self._settings.max_context_messages
            history = state.messages[-max_context:]
        user_msg = Message(
            role="user",
            content=prompt,
            attachments=list(attachments) or None,
            meta={"timestamp": _iso(utcnow())},
        )
        opts = options or ChatOptions()
        s = self._settings
        request = ChatRequest(
            provider_id=profile.id,
            model=self._resolve_model(profile, model),
            messages=history + [user_msg],
            temperature=opts.temperature if opts.temperature is not None else s.temperature,
            max_tokens=opts.max_tokens if opts.max_tokens is not None else s.max_tokens,
            top_p=opts.top_p if opts.top_p is not None else s.top_p,
            top_k=opts.top_k if opts.top_k is not None else s.top_k,
            system_prompt=opts.system_prompt if opts.system_prompt is not None else s.system_prompt,
            stream=stream,
        )
        return request, user_msg

    async def _commit(self, session_id: str, user_msg: Message, reply: ChatReply, log_ctx: Dict[str, Any]) -> None:
        assistant_msg = Message(
            role="assistant",
            content=reply.content,
            meta={
                "provider": reply.provider_id,
                "model": reply.model_used,
                "usage": reply.usage.to_dict() if reply.usage else None,
                "latency": round(reply.latency, 3),
                "finish_reason": reply.finish_reason.value,
                "timestamp": _iso(utcnow()),
            },
        )
        await asyncio.to_thread(self._store.extend, session_id, [user_msg, assistant_msg])
        self._log(logging.INFO, "Committed turn", log_ctx, chars=len(reply.content))

    @contextlib.asynccontextmanager
    async def _session_lock(self, session_id: Optional[str]) -> AsyncIterator[None]:
        """同一会话的轮次串行执行；没有使用者时移除该会话的锁。"""

        if not session_id:
            yield
            return
        lock = self._session_locks.get(session_id)
        if lock is None:
            lock = self._session_locks[session_id] = asyncio.Lock()
        self._lock_users[session_id] = self._lock_users.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[session_id] -= 1
            if not self._lock_users[session_id]:
                del self._lock_users[session_id]
                del self._session_locks[session_id]

    def _begin(self, session_id: Optional[str]) -> Turn:
        turn = Turn(session_id)
        if session_id:
            self._turns[session_id] = turn
        return turn

    def _end(self, turn: Turn) -> None:
        turn.reset()
        if turn.session_id and self._turns.get(turn.session_id) is turn:
            del self._turns[turn.session_id]

    async def aclose(self) -> None:
        closer = getattr(self._transport, "aclose", None)
        if closer is not None:
            await closer()

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})


class StreamTurn:
    """一轮流式对话的句柄。

    既可以 ``async for delta in turn`` 直接遍历，也可以配合 ``async with``
    使用以确保提前退出时连接被关闭。只能遍历一次。
    """

    def __init__(self, engine: ConversationEngine, prompt: str, **kwargs: Any):
        self._engine = engine
        self._prompt = prompt
        self._kwargs = kwargs
        self._gen: Optional[AsyncIterator[ChatDelta]] = None
        self.turn: Optional[Turn] = None
        self.reply: Optional[ChatReply] = None

    @property
    def state(self) -> TurnState:
        return self.turn.state if self.turn else TurnState.IDLE

    def __aiter__(self) -> AsyncIterator[ChatDelta]:
        if self._gen is not None:
            raise RuntimeError("StreamTurn can only be iterated once")
        self._gen = self._engine._stream_turn(
            self,
            self._prompt,
            self._kwargs.get("session_id"),
            self._kwargs.get("provider"),
            self._kwargs.get("model"),
            self._kwargs.get("attachments", ()),
            self._kwargs.get("options"),
            self._kwargs.get("timeout"),
        )
        return self._gen

    async def collect(self) -> ChatReply:
        async for _ in self:
            pass
        if self.reply is None:
            raise RuntimeError("stream finished without a reply")
        return self.reply

    async def aclose(self) -> None:
        if self._gen is not None:
            await self._gen.aclose()

    async def __aenter__(self) -> "StreamTurn":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()
