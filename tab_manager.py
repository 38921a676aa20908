"""
tab_manager.py - 标签页管理

同一个浏览器实例内按标签页借用/归还，规则与实例池一致：
- 第一个标签页直接接管用户已经打开的当前页（page.latest_tab）
- 不够用时 page.new_tab() 新开（打开用户标签页所在的站点），上限 max_tabs
- 标签页可归属一个 session_id，close_session 整组关闭
- 空闲超时回收（保留 min_tabs 个，接管的用户标签页不会被关闭）
"""

import time
import uuid
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from cancellation import CancellationToken
from core_config import BrowserConstants, PoolExhaustedError, WorkflowCancelledError, get_logger


logger = get_logger('browser.tab')


@dataclass
class TabSession:
    tab: Any
    session_id: Optional[str] = None
    adopted: bool = False
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    created_at: float = field(default_factory=time.time)
    last_used: float = field(default_factory=time.time)


class TabManager:
    """标签页管理器"""

    def __init__(self, page, max_tabs: int = None, min_tabs: int = None,
                 idle_timeout: float = None, acquire_timeout: float = None):
        self.page = page
        self.max_tabs = max_tabs or BrowserConstants.get('TAB_MAX_TABS')
        self.min_tabs = min_tabs if min_tabs is not None else BrowserConstants.get('TAB_MIN_TABS')
        self.idle_timeout = idle_timeout if idle_timeout is not None else BrowserConstants.get('TAB_IDLE_TIMEOUT')
        self.acquire_timeout = acquire_timeout if acquire_timeout is not None else BrowserConstants.get('TAB_ACQUIRE_TIMEOUT')

        self._cond = threading.Condition()
        self._idle: Dict[str, TabSession] = {}
        self._active: Dict[str, TabSession] = {}

    def _is_tab_valid(self, tab) -> bool:
        try:
            _ = tab.url
            return True
        except Exception:
            return False

    def _close_tab(self, session: TabSession):
        if session.adopted:
            return
        try:
            session.tab.close()
        except Exception as e:
            logger.debug(f"[Tab] 关闭标签页 {session.id} 失败: {e}")

    def _home_url(self) -> Optional[str]:
        """接管的用户标签页所在网址，新标签页直接打开同一个站点"""
        for session in list(self._active.values()) + list(self._idle.values()):
            if not session.adopted:
                continue
            try:
                url = session.tab.url or ""
            except Exception:
                return None
            return url if url.startswith(("http://", "https://")) else None
        return None

    def _open_tab(self) -> TabSession:
        if not self._idle and not self._active:
            return TabSession(tab=self.page.latest_tab, adopted=True)
        url = self._home_url()
        return TabSession(tab=self.page.new_tab(url) if url else self.page.new_tab())

    def _pick_idle(self, session_id: Optional[str]) -> Optional[TabSession]:
        candidates = list(self._idle.values())
        if session_id:
            same = [s for s in candidates if s.session_id == session_id]
            free = [s for s in candidates if s.session_id is None]
            candidates = same or free or candidates

        for session in sorted(candidates, key=lambda s: s.last_used, reverse=True):
            del self._idle[session.id]
            if self._is_tab_valid(session.tab):
                return session
            logger.debug(f"[Tab] 标签页 {session.id} 已失效，丢弃")
        return None

    # ================= 借出 / 归还 =================

    def acquire(self, session_id: str = None, timeout: float = None,
                token: CancellationToken = None) -> TabSession:
        if timeout is None:
            timeout = self.acquire_timeout
        deadline = time.time() + timeout

        with self._cond:
            while True:
                session = self._pick_idle(session_id)
                if session is None and len(self._idle) + len(self._active) < self.max_tabs:
                    session = self._open_tab()
                    logger.info(f"[Tab] 新标签页 {session.id} "
                                f"({len(self._idle) + len(self._active) + 1}/{self.max_tabs})")

                if session is not None:
                    if session_id:
                        session.session_id = session_id
                    session.last_used = time.time()
                    self._active[session.id] = session
                    return session

                if token is not None and token.is_cancelled():
                    raise WorkflowCancelledError("等待标签页时请求已取消")

                remaining = deadline - time.time()
                if remaining <= 0:
                    raise PoolExhaustedError(f"等待空闲标签页超时（{timeout}s，上限 {self.max_tabs}）")
                self._cond.wait(min(remaining, 0.1))

    def release(self, tab_id: str):
        with self._cond:
            session = self._active.pop(tab_id, None)
            if session is None:
                return
            session.last_used = time.time()
            self._idle[tab_id] = session
            self._cond.notify()

    # ================= 回收 =================

    def cleanup_idle(self) -> int:
        now = time.time()
        closed: List[TabSession] = []

        with self._cond:
            expired = sorted(
                (s for s in self._idle.values()
                 if not s.adopted and now - s.last_used > self.idle_timeout),
                key=lambda s: s.last_used
            )
            for session in expired:
                if len(self._idle) + len(self._active) <= self.min_tabs:
                    break
                del self._idle[session.id]
                closed.append(session)

        for session in closed:
            self._close_tab(session)
            logger.info(f"[Tab] 回收空闲标签页 {session.id}")
        return len(closed)

    def close_session(self, session_id: str) -> int:
        """关闭属于某个会话的全部空闲标签页；使用中的只解除归属"""
        closed: List[TabSession] = []
        with self._cond:
            for session in list(self._idle.values()):
                if session.session_id == session_id:
                    del self._idle[session.id]
                    closed.append(session)
            for session in self._active.values():
                if session.session_id == session_id:
                    session.session_id = None
            self._cond.notify_all()

        for session in closed:
            self._close_tab(session)
        # 接管的用户标签页不关闭，回到空闲集合
        with self._cond:
            for session in closed:
                if session.adopted:
                    session.session_id = None
                    self._idle[session.id] = session

        logger.info(f"[Tab] 会话 {session_id} 已关闭 {len(closed)} 个标签页")
        return len(closed)

    def close_all(self):
        with self._cond:
            sessions = list(self._idle.values()) + list(self._active.values())
            self._idle.clear()
            self._active.clear()
            self._cond.notify_all()
        for session in sessions:
            self._close_tab(session)

    def get_status(self) -> Dict[str, Any]:
        with self._cond:
            return {
                "max_tabs": self.max_tabs,
                "idle": len(self._idle),
                "active": len(self._active),
                "tabs": [
                    {
                        "id": s.id,
                        "session_id": s.session_id,
                        "state": "active" if s.id in self._active else "idle",
                        "adopted": s.adopted,
                        "last_used": s.last_used,
                    }
                    for s in list(self._active.values()) + list(self._idle.values())
                ],
            }
