"""
request_manager.py - 请求生命周期管理

一个浏览器会话同一时间只服务一个请求：
- 新请求到来时取消正在执行（以及仍在排队）的请求，"后到者优先"
- 闸门是真正的 threading.Lock，等待时按 100ms 分段并检查取消/超时
- 状态机：pending -> running -> completed | cancelled
- 最近请求的历史记录（有界 FIFO）
"""

import time
import uuid
import asyncio
import threading
from collections import deque
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from cancellation import CancellationToken
from core_config import BrowserConstants, get_logger


logger = get_logger('browser.request')


class RequestStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RequestContext:
    """单个请求的上下文"""

    def __init__(self, request_id: str = None):
        self.request_id = request_id or uuid.uuid4().hex[:12]
        self.status = RequestStatus.PENDING
        self.created_at = time.time()
        self.started_at: Optional[float] = None
        self.completed_at: Optional[float] = None
        self.cancel_reason: Optional[str] = None
        self.error: Optional[str] = None
        self.token = CancellationToken()
        self._stop_checker: Optional[Callable[[], bool]] = None
        self._lock = threading.Lock()

    def start(self):
        with self._lock:
            if self.status == RequestStatus.PENDING:
                self.status = RequestStatus.RUNNING
                self.started_at = time.time()

    def cancel(self, reason: str = "cancelled"):
        with self._lock:
            if self.status in (RequestStatus.COMPLETED, RequestStatus.CANCELLED):
                return
            self.status = RequestStatus.CANCELLED
            self.cancel_reason = reason
            self.completed_at = time.time()
        self.token.cancel(reason)
        logger.info(f"[{self.request_id}] 请求已取消: {reason}")

    request_cancel = cancel

    def complete(self):
        with self._lock:
            if self.status == RequestStatus.CANCELLED:
                return
            self.status = RequestStatus.COMPLETED
            self.completed_at = time.time()

    mark_completed = complete

    def mark_failed(self, error: str):
        self.error = error
        self.complete()

    def set_stop_checker(self, checker: Optional[Callable[[], bool]]):
        """附加外部停止条件（例如客户端断开）"""
        self._stop_checker = checker

    def should_stop(self) -> bool:
        if self.token.is_cancelled():
            return True
        if self._stop_checker is not None:
            try:
                return bool(self._stop_checker())
            except Exception:
                return False
        return False

    def is_cancelled(self) -> bool:
        return self.status == RequestStatus.CANCELLED

    def duration(self) -> float:
        start = self.started_at or self.created_at
        end = self.completed_at or time.time()
        return round(end - start, 3)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "status": self.status.value,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "cancel_reason": self.cancel_reason,
            "error": self.error,
            "duration": self.duration(),
        }


class RequestManager:
    """请求管理器（单会话闸门）"""

    def __init__(self, history_size: int = None, poll_interval: float = None):
        self._gate = threading.Lock()
        self._state_lock = threading.Lock()
        self._current: Optional[RequestContext] = None
        self._waiting: Dict[str, RequestContext] = {}
        self._poll_interval = poll_interval or BrowserConstants.get('REQUEST_POLL_INTERVAL')
        self._history: deque = deque(
            maxlen=history_size or BrowserConstants.get('REQUEST_HISTORY_MAX')
        )
        self._total_requests = 0
        self._total_cancelled = 0

    def create_request(self) -> RequestContext:
        ctx = RequestContext()
        logger.debug(f"[{ctx.request_id}] 请求已创建")
        return ctx

    # ================= 闸门 =================

    def acquire(self, ctx: RequestContext, timeout: float = None) -> bool:
        """获取执行权

        先取消正在执行和仍在排队的请求（superseded），再等待闸门。

        Returns:
            True 表示已获得执行权（ctx 进入 running）；
            超时或自身被取消时返回 False
        """
        if timeout is None:
            timeout = BrowserConstants.get('REQUEST_ACQUIRE_TIMEOUT')

        with self._state_lock:
            self._total_requests += 1
            if self._current is not None and self._current is not ctx:
                logger.info(f"[{ctx.request_id}] 新请求到来，取消当前请求 {self._current.request_id}")
                self._current.cancel("superseded")
            for waiting in list(self._waiting.values()):
                waiting.cancel("superseded")
            self._waiting[ctx.request_id] = ctx

        deadline = time.time() + timeout
        acquired = False
        try:
            while not ctx.should_stop():
                remaining = deadline - time.time()
                if remaining <= 0:
                    break
                if self._gate.acquire(timeout=min(self._poll_interval, remaining)):
                    acquired = True
                    break
        finally:
            if not acquired:
                with self._state_lock:
                    self._waiting.pop(ctx.request_id, None)

        if not acquired:
            if not ctx.should_stop():
                logger.warning(f"[{ctx.request_id}] 等待执行权超时 ({timeout}s)")
                ctx.cancel("acquire_timeout")
            self._record(ctx, success=False)
            return False

        # 出队与登记为 current 在同一临界区：后来者要么在排队表里、要么在 current 上找到它
        with self._state_lock:
            self._waiting.pop(ctx.request_id, None)
            published = not (ctx.is_cancelled() or ctx.token.is_cancelled())
            if published:
                self._current = ctx
                ctx.start()

        if not published:
            # 拿到锁的瞬间已被后来者取消
            self._gate.release()
            self._record(ctx, success=False)
            return False

        logger.info(f"[{ctx.request_id}] 获得执行权")
        return True

    def release(self, ctx: RequestContext, success: bool = True):
        if ctx.status != RequestStatus.CANCELLED:
            ctx.complete()

        with self._state_lock:
            if self._current is not ctx:
                logger.debug(f"[{ctx.request_id}] 非当前请求，忽略 release")
                return
            self._current = None

        self._record(ctx, success)
        self._gate.release()
        logger.info(f"[{ctx.request_id}] 释放执行权 ({ctx.status.value}, {ctx.duration()}s)")

    def _record(self, ctx: RequestContext, success: bool):
        with self._state_lock:
            if ctx.status == RequestStatus.CANCELLED:
                self._total_cancelled += 1
            self._history.append({
                "request_id": ctx.request_id,
                "status": ctx.status.value,
                "duration": ctx.duration(),
                "cancel_reason": ctx.cancel_reason,
                "success": bool(success) and ctx.status == RequestStatus.COMPLETED,
                "created_at": ctx.created_at,
            })

    # ================= 管理操作 =================

    def cancel_current(self, reason: str = "manual_cancel") -> bool:
        with self._state_lock:
            current = self._current
        if current is None:
            return False
        current.cancel(reason)
        return True

    def force_release(self) -> bool:
        """强制释放闸门（调试用，卡死时使用）"""
        with self._state_lock:
            current = self._current
            self._current = None

        if current is not None:
            current.cancel("force_release")
            self._record(current, success=False)

        if self._gate.locked():
            self._gate.release()
            logger.warning("闸门已被强制释放")
            return True
        return current is not None

    def is_locked(self) -> bool:
        return self._gate.locked()

    def get_current_request_id(self) -> Optional[str]:
        with self._state_lock:
            return self._current.request_id if self._current else None

    def get_history(self) -> List[Dict[str, Any]]:
        with self._state_lock:
            return list(self._history)

    def clear_history(self):
        with self._state_lock:
            self._history.clear()

    def get_stats(self) -> Dict[str, Any]:
        with self._state_lock:
            return {
                "total_requests": self._total_requests,
                "total_cancelled": self._total_cancelled,
                "waiting": len(self._waiting),
                "history_size": len(self._history),
            }

    def get_status(self) -> Dict[str, Any]:
        with self._state_lock:
            current = self._current.to_dict() if self._current else None
            recent = list(self._history)[-10:]
        return {
            "is_locked": self.is_locked(),
            "current_request": current,
            "recent_requests": recent,
            "stats": self.get_stats(),
        }


async def watch_client_disconnect(request, ctx: RequestContext,
                                  check_interval: float = 0.5):
    """客户端断开时取消请求（FastAPI Request.is_disconnected）"""
    try:
        while ctx.status in (RequestStatus.PENDING, RequestStatus.RUNNING):
            if await request.is_disconnected():
                logger.info(f"[{ctx.request_id}] 客户端已断开")
                ctx.cancel("client_disconnected")
                return
            await asyncio.sleep(check_interval)
    except asyncio.CancelledError:
        pass
