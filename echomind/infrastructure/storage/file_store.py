import contextlib
import os
import re
import threading
import time
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence
from uuid import uuid4

from echomind.config.settings import settings
from echomind.domain.conversation import ConversationState, utcnow
from echomind.domain.exceptions import BusinessError, ConcurrencyError, StoreError, ValidationError
from echomind.domain.models import Message
from echomind.infrastructure.logging.logger import logger
from echomind.infrastructure.storage.codec import decode_state, encode_state
from echomind.infrastructure.storage.export import export_state

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9._-]{1,128}$")
SESSION_SUFFIX = ".session"


class FileConversationStore:
    """每个会话一个文件：<root>/sessions/<session_id>.session。

    写入先落到同目录的临时文件，fsync 后用 os.replace 原子替换，
    任何一步失败都保留旧文件。同一会话同时只允许一个写者：
    进程内用 threading.Lock，跨进程用 O_EXCL 创建的锁文件。
    """

    def __init__(
        self,
        root: str | Path | None = None,
        key: Optional[bytes] = None,
        lock_timeout: Optional[float] = None,
        stale_lock_seconds: Optional[float] = None,
    ):
        self._root = Path(root or settings.storage_root).resolve()
        self._sessions_root = self._root / "sessions"
        self._sessions_root.mkdir(parents=True, exist_ok=True)
        self._key = key
        self._lock_timeout = lock_timeout if lock_timeout is not None else settings.lock_timeout
        self._stale_lock_seconds = stale_lock_seconds if stale_lock_seconds is not None else settings.stale_lock_seconds
        self._locks: Dict[str, threading.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._locks_guard = threading.Lock()

    @property
    def root(self) -> Path:
        return self._root

    @property
    def encrypted(self) -> bool:
        return self._key is not None

    def session_path(self, session_id: str) -> Path:
        if not _SESSION_ID_RE.match(session_id or "") or session_id in (".", ".."):
            raise ValidationError(code="INVALID_SESSION_ID", message=f"invalid session id: {session_id!r}")
        return self._sessions_root / f"{session_id}{SESSION_SUFFIX}"

    def load(self, session_id: str) -> ConversationState:
        path = self.session_path(session_id)
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            return ConversationState(session_id=session_id)
        except OSError as e:
            raise StoreError(code="STORE_READ_ERROR", message=str(e), session_id=session_id)
        return decode_state(raw, self._key, session_id=session_id)

    def append(self, session_id: str, message: Message) -> None:
        self.extend(session_id, [message])

    def extend(self, session_id: str, messages: Sequence[Message]) -> ConversationState:
        path = self.session_path(session_id)
        with self._session_lock(session_id, path):
            state = self.load(session_id)
            for m in messages:
                state.messages.append(m)
            state.updated_at = utcnow()
            self._write(path, state)
        logger.info(
            "Persisted conversation turn",
            extra={
                "extra": {
                    "session_id": session_id,
                    "added": len(messages),
                    "total_messages": len(state.messages),
                    "encrypted": self.encrypted,
                }
            },
        )
        return state

    def clear(self, session_id: str) -> None:
        """截断为空会话。文件本身保留，删除文件由外部完成。"""

        path = self.session_path(session_id)
        with self._session_lock(session_id, path):
            state = self.load(session_id)
            state.clear()
            self._write(path, state)
        logger.info("Cleared conversation", extra={"extra": {"session_id": session_id}})

    def export(self, session_id: str, fmt: str) -> bytes:
        return export_state(self.load(session_id), fmt)

    def list_sessions(self) -> List[str]:
        return sorted(p.name[: -len(SESSION_SUFFIX)] for p in self._sessions_root.glob(f"*{SESSION_SUFFIX}"))

    def _write(self, path: Path, state: ConversationState) -> None:
        data = encode_state(state, self._key)
        tmp_path = path.with_name(f".{path.name}.{uuid4().hex}.tmp")
        try:
            with open(tmp_path, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except OSError as e:
            raise StoreError(code="STORE_WRITE_ERROR", message=str(e), session_id=state.session_id)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

    # ---- 锁 ----

    @contextlib.contextmanager
    def _session_lock(self, session_id: str, path: Path) -> Iterator[None]:
        with self._locks_guard:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = self._locks[session_id] = threading.Lock()
            self._lock_users[session_id] = self._lock_users.get(session_id, 0) + 1
        try:
            with _SessionLock(
                lock,
                path.with_name(path.name + ".lock"),
                session_id,
                self._lock_timeout,
                self._stale_lock_seconds,
            ):
                yield
        finally:
            with self._locks_guard:
                self._lock_users[session_id] -= 1
                if not self._lock_users[session_id]:
                    del self._lock_users[session_id]
                    del self._locks[session_id]


class _SessionLock:
    """进程内锁 + 锁文件。竞争时指数退避，超过 timeout 抛出 ConcurrencyError。"""

    _INITIAL_DELAY = 0.01
    _MAX_DELAY = 0.25

    def __init__(self, thread_lock: threading.Lock, lock_path: Path, session_id: str, timeout: float, stale_after: float):
        self._thread_lock = thread_lock
        self._lock_path = lock_path
        self._session_id = session_id
        self._timeout = timeout
        self._stale_after = stale_after

    def __enter__(self) -> "_SessionLock":
        deadline = time.monotonic() + self._timeout
        if not self._thread_lock.acquire(timeout=self._timeout):
            raise ConcurrencyError(f"Session {self._session_id!r} is busy in this process", session_id=self._session_id)
        try:
            self._acquire_file(deadline)
        except BusinessError:
            self._thread_lock.release()
            raise
        return self

    def __exit__(self, *exc) -> None:
        try:
            self._lock_path.unlink()
        except FileNotFoundError:
            pass
        finally:
            self._thread_lock.release()

    def _acquire_file(self, deadline: float) -> None:
        delay = self._INITIAL_DELAY
        attempts = 0
        while True:
            attempts += 1
            try:
                fd = os.open(self._lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                if self._break_if_stale():
                    continue
                if time.monotonic() + delay > deadline:
                    logger.warning(
                        "Session lock contention",
                        extra={"extra": {"session_id": self._session_id, "attempts": attempts}},
                    )
                    raise ConcurrencyError(
                        f"Session {self._session_id!r} is locked by another writer",
                        session_id=self._session_id,
                        attempts=attempts,
                    )
                time.sleep(delay)
                delay = min(delay * 2, self._MAX_DELAY)
                continue
            except OSError as e:
                raise StoreError(code="STORE_WRITE_ERROR", message=f"cannot create lock file: {e}", session_id=self._session_id)
            with os.fdopen(fd, "w") as f:
                f.write(str(os.getpid()))
            return

    def _break_if_stale(self) -> bool:
        """移除过期锁文件。返回 True 表示应立即重试获取。

        先把锁文件原子地改名到一个唯一路径，再核对它仍是刚才判定过期的那个文件
        （inode 与 mtime 一致）。多个写者同时判定过期时只有一个能改名成功；
        若改名拿到的是别人刚创建的新锁，则原样放回。
        """

        try:
            seen = self._lock_path.stat()
        except FileNotFoundError:
            # 持有者刚好释放
            return True
        age = time.time() - seen.st_mtime
        if age < self._stale_after:
            return False
        aside = self._lock_path.with_name(f"{self._lock_path.name}.{uuid4().hex}.stale")
        try:
            os.rename(self._lock_path, aside)
        except FileNotFoundError:
            return True
        try:
            taken = aside.stat()
            if (taken.st_ino, taken.st_mtime_ns) != (seen.st_ino, seen.st_mtime_ns):
                self._restore(aside)
                return False
        finally:
            if aside.exists():
                aside.unlink()
        logger.warning(
            "Removed stale session lock",
            extra={"extra": {"session_id": self._session_id, "age_seconds": round(age, 1)}},
        )
        return True

    def _restore(self, aside: Path) -> None:
        # os.link 不覆盖已存在的锁文件
        try:
            os.link(aside, self._lock_path)
        except FileExistsError:
            logger.warning(
                "Session lock replaced while breaking a stale lock",
                extra={"extra": {"session_id": self._session_id}},
            )
