"""对外 API 服务模块。

提供简化的函数接口供 CLI / REPL 层调用。对话相关函数是协程，
会话管理（导出、统计、清空、列表）是普通函数。
"""

import os
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from echomind.agents.engine import ChatOptions, CompareResult, ConversationEngine
from echomind.config.settings import settings
from echomind.domain.conversation import _iso, _message_to_dict
from echomind.domain.exceptions import ValidationError
from echomind.domain.models import Attachment, ChatDelta, ChatReply
from echomind.infrastructure.logging.logger import logger
from echomind.infrastructure.security.sealing import derive_key
from echomind.infrastructure.storage.export import SearchQuery, compute_stats, search_messages
from echomind.infrastructure.storage.file_store import FileConversationStore
from echomind.providers.cache import ReplyCache
from echomind.providers.transport import HttpxTransport

SALT_FILE = "history.salt"
SALT_SIZE = 16

_store: Optional[FileConversationStore] = None
_engine: Optional[ConversationEngine] = None


def _history_key(root: Path) -> Optional[bytes]:
    """开启加密时，由口令和存储目录下的 salt 派生密钥。"""

    if not settings.encrypt_history:
        return None
    if not settings.history_passphrase:
        raise ValidationError(
            code="MISSING_PASSPHRASE",
            message="encrypt_history is enabled but history_passphrase is not set",
        )
    root.mkdir(parents=True, exist_ok=True)
    salt_path = root / SALT_FILE
    if not salt_path.exists():
        salt_path.write_bytes(os.urandom(SALT_SIZE))
    return derive_key(settings.history_passphrase, salt_path.read_bytes())


def get_default_store() -> FileConversationStore:
    """获取默认的会话存储（单例）。"""
    global _store
    if _store is None:
        root = Path(settings.storage_root).resolve()
        _store = FileConversationStore(root=root, key=_history_key(root))
    return _store


def get_default_engine() -> ConversationEngine:
    """获取默认的对话引擎实例（单例）。"""
    global _engine
    if _engine is None:
        cache = None
        if settings.cache_ttl_seconds > 0:
            cache = ReplyCache(max_entries=settings.cache_max_entries, ttl_seconds=settings.cache_ttl_seconds)
        _engine = ConversationEngine(
            store=get_default_store(),
            transport=HttpxTransport(),
            settings=settings,
            cache=cache,
        )
    return _engine


async def shutdown() -> None:
    """关闭默认引擎持有的 HTTP 连接。"""
    global _engine
    if _engine is not None:
        await _engine.aclose()
        _engine = None


def _reply_to_dict(reply: ChatReply) -> Dict[str, Any]:
    return {
        "content": reply.content,
        "provider": reply.provider_id,
        "model": reply.model_used,
        "usage": reply.usage.to_dict() if reply.usage else None,
        "latency": reply.latency,
        "finish_reason": reply.finish_reason.value,
    }


async def run_chat(
    user_input: str,
    session_id: Optional[str] = None,
    provider: Optional[str] = None,
    model: Optional[str] = None,
    attachments: Sequence[Attachment] = (),
    options: Optional[ChatOptions] = None,
    timeout: Optional[float] = None,
    stream: Optional[bool] = None,
) -> Dict[str, Any]:
    """运行一轮对话并返回完整结果。

    Args:
        user_input: 用户输入内容
        session_id: 会话ID（可选，不提供则不读写历史）
        provider: Provider 名称或自定义 URL（可选，默认取配置）
        model: 模型名（可选）
        attachments: 图片或文档附件
        options: 采样参数覆盖
        timeout: 超时秒数
        stream: 是否走流式接口收集回答（可选，默认取配置 stream）

    Returns:
        包含会话ID、回答内容、模型与使用统计的字典

    Raises:
        各种 domain.exceptions 中定义的异常
    """
    use_stream = settings.stream if stream is None else stream
    engine = get_default_engine()
    kwargs = dict(
        session_id=session_id,
        provider=provider,
        model=model,
        attachments=attachments,
        options=options,
        timeout=timeout,
    )
    try:
        if use_stream:
            async with engine.stream(user_input, **kwargs) as turn:
                reply = await turn.collect()
        else:
            reply = await engine.send(user_input, **kwargs)
    except Exception as e:
        logger.error(
            f"Chat failed: {e}",
            extra={"extra": {"session_id": session_id, "stream": use_stream, "error": str(e)}},
        )
        raise
    result = _reply_to_dict(reply)
    result["session_id"] = session_id
    return result


async def run_chat_stream(
    user_input: str,
    session_id: Optional[str] = None,
    provider: Optional[str] = None,
    model: Optional[str] = None,
    attachments: Sequence[Attachment] = (),
    options: Optional[ChatOptions] = None,
    timeout: Optional[float] = None,
) -> AsyncIterator[ChatDelta]:
    """运行一轮流式对话，按到达顺序产出 ChatDelta。"""
    async with get_default_engine().stream(
        user_input,
        session_id=session_id,
        provider=provider,
        model=model,
        attachments=attachments,
        options=options,
        timeout=timeout,
    ) as turn:
        async for delta in turn:
            yield delta


def _compare_to_dict(result: CompareResult) -> Dict[str, Any]:
    item: Dict[str, Any] = {
        "provider": result.provider_id,
        "model": result.model,
        "elapsed": result.elapsed,
        "ok": result.ok,
    }
    if result.reply is not None:
        item.update(_reply_to_dict(result.reply))
    if result.error is not None:
        item["error"] = {"code": result.error.code, "message": str(result.error)}
    return item


async def run_compare(
    user_input: str,
    targets: Sequence[str],
    options: Optional[ChatOptions] = None,
    timeout: Optional[float] = None,
) -> List[Dict[str, Any]]:
    """向多个模型发送同一问题，按完成顺序返回结果。"""
    results = await get_default_engine().compare(user_input, targets, options=options, timeout=timeout)
    return [_compare_to_dict(r) for r in results]


def export_session(session_id: str, fmt: str = "markdown", output: str | Path | None = None) -> bytes:
    """导出会话历史；给出 output 时同时写入文件。"""
    data = get_default_store().export(session_id, fmt)
    if output is not None:
        Path(output).write_bytes(data)
        logger.info("Exported session", extra={"extra": {"session_id": session_id, "format": fmt, "bytes": len(data)}})
    return data


def session_stats(session_id: str) -> Dict[str, Any]:
    stats = compute_stats(get_default_store().load(session_id))
    return {
        "session_id": stats.session_id,
        "total_messages": stats.total_messages,
        "messages_by_role": stats.messages_by_role,
        "total_characters": stats.total_characters,
        "prompt_tokens": stats.prompt_tokens,
        "completion_tokens": stats.completion_tokens,
        "total_tokens": stats.total_tokens,
        "providers": stats.providers,
        "models": stats.models,
        "first_activity": _iso(stats.first_activity) if stats.first_activity else None,
        "last_activity": _iso(stats.last_activity) if stats.last_activity else None,
    }


def search_session(session_id: str, query: SearchQuery) -> List[Dict[str, Any]]:
    """在单个会话的历史中检索消息。"""
    matches = search_messages(get_default_store().load(session_id), query)
    return [_message_to_dict(m) for m in matches]


def clear_session(session_id: str) -> None:
    get_default_store().clear(session_id)


def list_sessions() -> List[str]:
    return get_default_store().list_sessions()
