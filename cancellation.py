"""
cancellation.py - 协作式取消令牌

所有会"等待"的地方（WAIT 步骤、监听轮询、分块输入间隔、隐身延迟、排队等锁）
都通过 CancellationToken.sleep 睡眠，醒来时重新检查取消状态。
"""

import threading
from typing import Callable, Optional


class CancellationToken:
    """取消令牌

    可以主动 cancel()，也可以挂一个外部检查器（例如 RequestContext.should_stop），
    两者任一为真即视为已取消。
    """

    POLL_STEP = 0.1

    def __init__(self, checker: Optional[Callable[[], bool]] = None):
        self._event = threading.Event()
        self._checker = checker
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled"):
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def is_cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._checker is not None:
            try:
                return bool(self._checker())
            except Exception:
                return False
        return False

    def __call__(self) -> bool:
        return self.is_cancelled()

    def sleep(self, seconds: float, step: float = None) -> bool:
        """分段睡眠

        Returns:
            True 表示睡满了，False 表示中途被取消
        """
        step = step or self.POLL_STEP
        remaining = max(0.0, float(seconds or 0))

        while remaining > 0:
            if self.is_cancelled():
                return False
            chunk = min(step, remaining)
            self._event.wait(chunk)
            remaining -= chunk

        return not self.is_cancelled()
