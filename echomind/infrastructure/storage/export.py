"""会话导出、统计与检索。"""

import json
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from echomind.domain.conversation import ConversationState, ConversationStats, _iso, _parse_iso
from echomind.domain.exceptions import ValidationError
from echomind.domain.models import Message

SUPPORTED_FORMATS = ("json", "markdown", "text")

_ROLE_TITLES = {"system": "System", "user": "User", "assistant": "Assistant"}


def export_state(state: ConversationState, fmt: str) -> bytes:
    """把会话导出为 json / markdown / text，返回 UTF-8 字节。"""

    key = (fmt or "").strip().lower()
    if key == "md":
        key = "markdown"
    if key == "txt":
        key = "text"
    if key == "json":
        text = json.dumps(state.to_dict(), ensure_ascii=False, indent=2)
    elif key == "markdown":
        text = _to_markdown(state)
    elif key == "text":
        text = _to_text(state)
    else:
        raise ValidationError(
            code="INVALID_EXPORT_FORMAT",
            message=f"Unsupported export format: {fmt!r}. Supported: {', '.join(SUPPORTED_FORMATS)}",
        )
    return text.encode("utf-8")


def _origin(meta: dict) -> str:
    provider, model = meta.get("provider"), meta.get("model")
    if provider and model:
        return f"{provider}/{model}"
    return provider or model or ""


def _to_markdown(state: ConversationState) -> str:
    lines = [
        f"# Conversation {state.session_id}",
        "",
        f"- Created: {_iso(state.created_at)}",
        f"- Updated: {_iso(state.updated_at)}",
        f"- Messages: {len(state.messages)}",
        "",
    ]
    for m in state.messages:
        title = _ROLE_TITLES.get(m.role, m.role)
        origin = _origin(m.meta) if m.role == "assistant" else ""
        lines.append(f"## {title} ({origin})" if origin else f"## {title}")
        lines.append("")
        lines.append(m.content)
        for att in m.meta.get("attachments") or []:
            lines.append(f"_Attachment: {att.get('mime_type')} ({att.get('size')} bytes)_")
        lines.append("")
    return "\n".join(lines)


def _to_text(state: ConversationState) -> str:
    lines: List[str] = []
    for m in state.messages:
        ts = m.meta.get("timestamp")
        prefix = f"[{ts}] " if ts else ""
        lines.append(f"{prefix}{m.role}: {m.content}")
    return "\n".join(lines) + ("\n" if lines else "")


def compute_stats(state: ConversationState) -> ConversationStats:
    by_role = Counter(m.role for m in state.messages)
    providers: Counter = Counter()
    models: Counter = Counter()
    prompt_tokens = completion_tokens = 0
    stamps: List[datetime] = []
    for m in state.messages:
        meta = m.meta or {}
        if m.role == "assistant":
            if meta.get("provider"):
                providers[meta["provider"]] += 1
            if meta.get("model"):
                models[meta["model"]] += 1
            usage = meta.get("usage") or {}
            prompt_tokens += int(usage.get("prompt_tokens") or 0)
            completion_tokens += int(usage.get("completion_tokens") or 0)
        ts = _safe_parse(meta.get("timestamp"))
        if ts is not None:
            stamps.append(ts)

    first: Optional[datetime] = None
    last: Optional[datetime] = None
    if state.messages:
        first = min(stamps) if stamps else state.created_at
        last = max(stamps) if stamps else state.updated_at

    return ConversationStats(
        session_id=state.session_id,
        total_messages=len(state.messages),
        messages_by_role={role: by_role.get(role, 0) for role in ("system", "user", "assistant")},
        total_characters=sum(len(m.content) for m in state.messages),
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        providers=providers.most_common(),
        models=models.most_common(),
        first_activity=first,
        last_activity=last,
    )


def _safe_parse(raw) -> Optional[datetime]:
    if not raw:
        return None
    try:
        return _parse_iso(raw)
    except ValueError:
        return None


@dataclass
class SearchQuery:
    """历史检索条件，所有条件同时满足才算命中。"""

    text: str = ""
    role: Optional[str] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    limit: Optional[int] = None


def search_messages(state: ConversationState, query: SearchQuery) -> List[Message]:
    """按文本（不区分大小写）、角色、来源与时间范围检索消息，保持原有顺序。"""

    needle = query.text.lower()
    results: List[Message] = []
    for m in state.messages:
        if query.limit is not None and len(results) >= query.limit:
            break
        meta = m.meta or {}
        if needle and needle not in m.content.lower():
            continue
        if query.role and m.role != query.role:
            continue
        if query.provider and meta.get("provider") != query.provider:
            continue
        if query.model and meta.get("model") != query.model:
            continue
        if query.since or query.until:
            ts = _safe_parse(meta.get("timestamp"))
            # 没有时间戳的消息不参与时间范围检索
            if ts is None:
                continue
            if query.since and ts < query.since:
                continue
            if query.until and ts > query.until:
                continue
        results.append(m)
    return results
