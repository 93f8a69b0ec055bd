"""HTTP 传输层。

Engine 与 StreamSession 只依赖 Transport 协议，因此测试时可以注入任何
实现了 send / open_stream 的对象。默认实现 HttpxTransport 基于一个共享的
httpx.AsyncClient；连接、读取失败与超时统一转换为 TransportError /
RequestTimeoutError。
"""

import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, Optional, Protocol

import httpx

from echomind.config.settings import settings
from echomind.domain.exceptions import RequestTimeoutError, TransportError
from echomind.infrastructure.logging.logger import logger
from echomind.providers.translator import WireRequest


@dataclass
class BufferedResponse:
    """完整读取后的响应。"""

    status_code: int
    body: bytes = field(repr=False)
    headers: Dict[str, str] = field(default_factory=dict, repr=False)


class ByteStream(Protocol):
    """一个正在读取中的流式响应。"""

    status_code: int

    def aiter_bytes(self) -> AsyncIterator[bytes]:
        ...

    async def aread(self) -> bytes:
        ...

    async def aclose(self) -> None:
        ...


class Transport(Protocol):
    async def send(self, wire: WireRequest, timeout: Optional[float] = None) -> BufferedResponse:
        ...

    async def open_stream(self, wire: WireRequest, timeout: Optional[float] = None) -> ByteStream:
        ...


def _translate_httpx_error(e: httpx.HTTPError, url: str, timeout: Optional[float]) -> TransportError:
    if isinstance(e, httpx.TimeoutException):
        return RequestTimeoutError(f"Request to {url} timed out: {e}", timeout=timeout)
    return TransportError(f"Network error while calling {url}: {e}")


class HttpxByteStream:
    """httpx.Response 的薄包装，读取过程中的网络错误同样转换为领域异常。"""

    def __init__(self, response: httpx.Response, url: str, timeout: Optional[float] = None):
        self._response = response
        self._url = url
        self._timeout = timeout
        self._closed = False

    @property
    def status_code(self) -> int:
        return self._response.status_code

    async def aiter_bytes(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._response.aiter_bytes():
                yield chunk
        except httpx.HTTPError as e:
            raise _translate_httpx_error(e, self._url, self._timeout) from e

    async def aread(self) -> bytes:
        try:
            return await self._response.aread()
        except httpx.HTTPError as e:
            raise _translate_httpx_error(e, self._url, self._timeout) from e

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._response.aclose()


class HttpxTransport:
    """基于 httpx.AsyncClient 的 Transport 实现。

    client 可以由外部注入（例如测试中使用 httpx.MockTransport），
    此时 aclose 不会关闭外部传入的 client。
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
        user_agent: Optional[str] = None,
    ):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout or settings.http_timeout,
            headers={"User-Agent": user_agent or settings.user_agent},
            trust_env=False,
        )

    def _build(self, wire: WireRequest, timeout: Optional[float]) -> httpx.Request:
        return self._client.build_request(
            wire.method,
            wire.url,
            content=wire.body,
            headers=wire.headers,
            timeout=httpx.Timeout(timeout) if timeout is not None else httpx.USE_CLIENT_DEFAULT,
        )

    async def send(self, wire: WireRequest, timeout: Optional[float] = None) -> BufferedResponse:
        request = self._build(wire, timeout)
        start = time.perf_counter()
        try:
            response = await self._client.send(request)
        except httpx.HTTPError as e:
            logger.warning(
                "HTTP request failed",
                extra={"extra": {"url": wire.url, "error_type": type(e).__name__}},
            )
            raise _translate_httpx_error(e, wire.url, timeout) from e
        logger.info(
            "HTTP request completed",
            extra={
                "extra": {
                    "url": wire.url,
                    "status_code": response.status_code,
                    "elapsed_ms": int((time.perf_counter() - start) * 1000),
                    "response_bytes": len(response.content),
                }
            },
        )
        return BufferedResponse(
            status_code=response.status_code,
            body=response.content,
            headers=dict(response.headers),
        )

    async def open_stream(self, wire: WireRequest, timeout: Optional[float] = None) -> HttpxByteStream:
        request = self._build(wire, timeout)
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            logger.warning(
                "HTTP stream open failed",
                extra={"extra": {"url": wire.url, "error_type": type(e).__name__}},
            )
            raise _translate_httpx_error(e, wire.url, timeout) from e
        logger.info(
            "HTTP stream opened",
            extra={"extra": {"url": wire.url, "status_code": response.status_code}},
        )
        return HttpxByteStream(response, wire.url, timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "HttpxTransport":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()
