"""流式会话。

StreamSession 把 Transport 的字节流与 StreamDecoder 串起来，对外表现为一个
只能遍历一次的 ChatDelta 异步迭代器：

    async with await StreamSession.open(transport, wire, profile, timeout=30) as session:
        async for delta in session:
            print(delta.text_fragment, end="")
    reply = session.reply

超时按单次读取计算：两次数据到达之间超过 timeout 秒即抛出 RequestTimeoutError。
无论正常结束、出错还是被取消，底层 HTTP 响应都会被关闭。
"""

import asyncio
import time
from typing import AsyncIterator, Optional

from echomind.domain.exceptions import RequestTimeoutError
from echomind.domain.models import ChatDelta, ChatReply, FinishReason
from echomind.infrastructure.logging.logger import logger
from echomind.providers.decoder import StreamDecoder, check_error_response
from echomind.providers.registry import ProviderProfile
from echomind.providers.transport import ByteStream, Transport
from echomind.providers.translator import WireRequest


async def _next_chunk(chunks: AsyncIterator[bytes]) -> Optional[bytes]:
    try:
        return await chunks.__anext__()
    except StopAsyncIteration:
        return None


class StreamSession:
    def __init__(
        self,
        stream: ByteStream,
        profile: ProviderProfile,
        decoder: Optional[StreamDecoder] = None,
        timeout: Optional[float] = None,
        requested_model: Optional[str] = None,
        started_at: Optional[float] = None,
    ):
        self._stream = stream
        self._profile = profile
        self._decoder = decoder or StreamDecoder(profile, requested_model)
        self._timeout = timeout
        self._requested_model = requested_model
        self._started_at = started_at if started_at is not None else time.perf_counter()
        self._iterated = False
        self._closed = False
        self.reply: Optional[ChatReply] = None

    @classmethod
    async def open(
        cls,
        transport: Transport,
        wire: WireRequest,
        profile: ProviderProfile,
        timeout: Optional[float] = None,
        requested_model: Optional[str] = None,
    ) -> "StreamSession":
        """发起流式请求。非 2xx 状态在这里就读完错误体并抛出类型化异常。"""

        started = time.perf_counter()
        opening = transport.open_stream(wire, timeout)
        try:
            stream = await (asyncio.wait_for(opening, timeout) if timeout is not None else opening)
        except asyncio.TimeoutError:
            raise RequestTimeoutError(
                f"Timed out after {timeout}s waiting for the stream to open",
                timeout=timeout,
                provider=profile.id,
            )
        if stream.status_code >= 400:
            try:
                body = await stream.aread()
            finally:
                await stream.aclose()
            check_error_response(body, profile, stream.status_code)
        return cls(stream, profile, timeout=timeout, requested_model=requested_model, started_at=started)

    @property
    def finish_reason(self) -> Optional[FinishReason]:
        return self._decoder.finish_reason

    @property
    def malformed_frames(self) -> int:
        return self._decoder.malformed_frames

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> AsyncIterator[ChatDelta]:
        if self._iterated:
            raise RuntimeError("StreamSession can only be iterated once")
        self._iterated = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ChatDelta]:
        chunks = self._stream.aiter_bytes().__aiter__()
        try:
            while not self._decoder.finished:
                chunk = await self._read(chunks)
                if chunk is None:
                    break
                for delta in self._decoder.feed(chunk):
                    if delta.is_final:
                        self._finalize()
                    yield delta
            for delta in self._decoder.finish():
                if delta.is_final:
                    self._finalize()
                yield delta
        finally:
            await self.aclose()

    async def _read(self, chunks: AsyncIterator[bytes]) -> Optional[bytes]:
        if self._timeout is None:
            return await _next_chunk(chunks)
        try:
            return await asyncio.wait_for(_next_chunk(chunks), self._timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Stream read timed out",
                extra={"extra": {"provider": self._profile.id, "timeout": self._timeout}},
            )
            raise RequestTimeoutError(
                f"No data received for {self._timeout}s",
                timeout=self._timeout,
                provider=self._profile.id,
            )

    def _finalize(self) -> None:
        d = self._decoder
        self.reply = ChatReply(
            content=d.text,
            model_used=d.model or self._requested_model or self._profile.default_model,
            usage=d.usage,
            latency=time.perf_counter() - self._started_at,
            provider_id=self._profile.id,
            finish_reason=d.finish_reason or FinishReason.STOP,
        )
        logger.info(
            "Stream finished",
            extra={
                "extra": {
                    "provider": self._profile.id,
                    "finish_reason": self.reply.finish_reason.value,
                    "chars": len(self.reply.content),
                    "malformed_frames": d.malformed_frames,
                    "latency_ms": int(self.reply.latency * 1000),
                }
            },
        )

    async def collect(self) -> ChatReply:
        """读完整个流并返回最终结果。"""

        async for _ in self:
            pass
        assert self.reply is not None
        return self.reply

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._stream.aclose()

    async def __aenter__(self) -> "StreamSession":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()
