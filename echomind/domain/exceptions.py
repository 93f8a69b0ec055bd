"""统一业务异常模型。

所有跨模块抛出的业务级错误都继承自 BusinessError，
CLI / REPL 层只需按 code 做统一捕获与用户提示。

分类：
- CapabilityError: 目标 Provider 不支持请求的特性，发送前检测，不重试。
- AuthError: 凭据缺失或无效，不重试。
- TransportError / RequestTimeoutError: 网络与超时，由调用方决定是否重试。
- SchemaError / ProviderError: 响应体格式错误或 Provider 明确返回的错误。
- AuthenticationError: 解密标签校验失败，永不返回部分明文。
- ConcurrencyError: 会话文件锁竞争，内部有限退避后仍失败时抛出。
- StoreError: 会话文件读写失败。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 provider、session_id 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)

    @property
    def provider(self):
        return self.extra.get("provider")

    def __str__(self) -> str:
        provider = self.extra.get("provider")
        if provider:
            return f"[{provider}] {self.message}"
        return self.message


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


class CapabilityError(BusinessError):
    """请求的特性（图片、流式、温度范围等）不被目标 Provider 支持。"""

    def __init__(self, message: str, code: str = "CAPABILITY_ERROR", **extra):
        super().__init__(code=code, message=message, http_status=400, **extra)


class AuthError(BusinessError):
    """API Key 缺失或被 Provider 拒绝。"""

    def __init__(self, message: str, code: str = "AUTH_ERROR", http_status: int = 401, **extra):
        super().__init__(code=code, message=message, http_status=http_status, **extra)


class TransportError(BusinessError):
    """网络层错误，例如连接失败、读流中断等。"""

    def __init__(self, message: str, code: str = "NETWORK_ERROR", **extra):
        super().__init__(code=code, message=message, http_status=503, **extra)


class RequestTimeoutError(TransportError):
    """请求超过调用方给定的超时时间。"""

    def __init__(self, message: str, timeout: float | None = None, **extra):
        super().__init__(message=message, code="TIMEOUT", timeout=timeout, **extra)
        self.http_status = 504


class SchemaError(BusinessError):
    """Provider 响应缺少必需字段或无法解析。"""

    def __init__(self, message: str, code: str = "SCHEMA_ERROR", **extra):
        super().__init__(code=code, message=message, http_status=502, **extra)


class ProviderError(BusinessError):
    """Provider 明确返回的错误。

    retryable 仅作为提示透出，是否重试由调用方决定。
    """

    def __init__(
        self,
        message: str,
        retryable: bool = False,
        http_status: int = 502,
        code: str = "PROVIDER_ERROR",
        **extra,
    ):
        super().__init__(code=code, message=message, http_status=http_status, **extra)
        self.retryable = retryable


class AuthenticationError(BusinessError):
    """密文认证标签不匹配（密钥错误或数据被篡改）。"""

    def __init__(self, message: str = "Decryption failed: authentication tag mismatch", **extra):
        super().__init__(code="AUTHENTICATION_FAILED", message=message, http_status=400, **extra)


class ConcurrencyError(BusinessError):
    """会话文件被其他写者占用。"""

    def __init__(self, message: str, **extra):
        super().__init__(code="SESSION_LOCKED", message=message, http_status=409, **extra)


class StoreError(BusinessError):
    """会话存储读写失败。"""
