"""
browser_pool.py - 浏览器实例池

实例按需创建（不超过 max_instances），用完归还到空闲集合，
空闲超时后回收（保留 min_instances 个）。调用方只借用句柄，不负责关闭。
"""

import time
import uuid
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from cancellation import CancellationToken
from core_config import BrowserConstants, PoolExhaustedError, WorkflowCancelledError, get_logger


logger = get_logger('browser.pool')


@dataclass
class PoolInstance:
    handle: Any
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    created_at: float = field(default_factory=time.time)
    last_used: float = field(default_factory=time.time)

    def idle_seconds(self, now: float = None) -> float:
        return (now or time.time()) - self.last_used


class BrowserPool:
    """浏览器实例池"""

    def __init__(self, factory: Callable[[], Any],
                 disposer: Optional[Callable[[Any], None]] = None,
                 max_instances: int = None,
                 min_instances: int = None,
                 idle_timeout: float = None,
                 acquire_timeout: float = None):
        self._factory = factory
        self._disposer = disposer
        self.max_instances = max_instances or BrowserConstants.get('POOL_MAX_INSTANCES')
        self.min_instances = min_instances if min_instances is not None else BrowserConstants.get('POOL_MIN_INSTANCES')
        self.idle_timeout = idle_timeout if idle_timeout is not None else BrowserConstants.get('POOL_IDLE_TIMEOUT')
        self.acquire_timeout = acquire_timeout if acquire_timeout is not None else BrowserConstants.get('POOL_ACQUIRE_TIMEOUT')

        self._cond = threading.Condition()
        self._idle: Dict[str, PoolInstance] = {}
        self._active: Dict[str, PoolInstance] = {}
        self._creating = 0
        self._closed = False

        self._sweeper: Optional[threading.Thread] = None
        self._sweep_stop = threading.Event()
        self._sweep_hooks: List[Callable[[], Any]] = []

    @property
    def size(self) -> int:
        return len(self._idle) + len(self._active) + self._creating

    # ================= 借出 / 归还 =================

    def acquire(self, timeout: float = None,
                token: CancellationToken = None) -> PoolInstance:
        if timeout is None:
            timeout = self.acquire_timeout
        deadline = time.time() + timeout

        with self._cond:
            while True:
                if self._closed:
                    raise PoolExhaustedError("实例池已关闭")

                if self._idle:
                    # 优先复用最近用过的实例
                    instance = max(self._idle.values(), key=lambda i: i.last_used)
                    del self._idle[instance.id]
                    instance.last_used = time.time()
                    self._active[instance.id] = instance
                    return instance

                if self.size < self.max_instances:
                    self._creating += 1
                    break

                if token is not None and token.is_cancelled():
                    raise WorkflowCancelledError("等待实例时请求已取消")

                remaining = deadline - time.time()
                if remaining <= 0:
                    raise PoolExhaustedError(
                        f"等待浏览器实例超时（{timeout}s，上限 {self.max_instances}）"
                    )
                self._cond.wait(min(remaining, 0.1))

        # 创建在锁外进行，_creating 占住名额
        try:
            handle = self._factory()
        except Exception:
            with self._cond:
                self._creating -= 1
                self._cond.notify()
            raise

        instance = PoolInstance(handle=handle)
        with self._cond:
            self._creating -= 1
            self._active[instance.id] = instance
        logger.info(f"[Pool] 新建实例 {instance.id} ({self.size}/{self.max_instances})")
        return instance

    def release(self, instance_id: str):
        with self._cond:
            instance = self._active.pop(instance_id, None)
            if instance is None:
                logger.debug(f"[Pool] 未知或已归还的实例: {instance_id}")
                return
            instance.last_used = time.time()
            self._idle[instance_id] = instance
            self._cond.notify()

    # ================= 回收 =================

    def _dispose(self, instance: PoolInstance):
        if self._disposer is None:
            return
        try:
            self._disposer(instance.handle)
        except Exception as e:
            logger.warning(f"[Pool] 关闭实例 {instance.id} 失败: {e}")

    def cleanup_idle(self) -> int:
        """回收空闲超时的实例（保留 min_instances 个）"""
        now = time.time()
        evicted: List[PoolInstance] = []

        with self._cond:
            expired = sorted(
                (i for i in self._idle.values() if i.idle_seconds(now) > self.idle_timeout),
                key=lambda i: i.last_used
            )
            for instance in expired:
                if len(self._idle) + len(self._active) <= self.min_instances:
                    break
                del self._idle[instance.id]
                evicted.append(instance)

        for instance in evicted:
            self._dispose(instance)
            logger.info(f"[Pool] 回收空闲实例 {instance.id}")

        return len(evicted)

    def add_sweep_hook(self, hook: Callable[[], Any]):
        """每轮实例回收之后调用（标签页回收挂在这里）"""
        self._sweep_hooks.append(hook)

    def sweep(self):
        try:
            self.cleanup_idle()
        except Exception as e:
            logger.error(f"[Pool] 空闲回收异常: {e}")
        for hook in list(self._sweep_hooks):
            try:
                hook()
            except Exception as e:
                logger.error(f"[Pool] 回收钩子异常: {e}")

    def _sweep_loop(self, interval: float):
        while not self._sweep_stop.wait(interval):
            self.sweep()

    def start_cleanup(self, interval: float = None):
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        interval = interval or BrowserConstants.get('POOL_SWEEP_INTERVAL')
        self._sweep_stop.clear()
        self._sweeper = threading.Thread(
            target=self._sweep_loop, args=(interval,),
            name="browser-pool-sweeper", daemon=True
        )
        self._sweeper.start()

    def stop_cleanup(self):
        self._sweep_stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=2)
            self._sweeper = None

    def close_all(self):
        self.stop_cleanup()
        with self._cond:
            self._closed = True
            instances = list(self._idle.values()) + list(self._active.values())
            self._idle.clear()
            self._active.clear()
            self._cond.notify_all()

        for instance in instances:
            self._dispose(instance)
        logger.info(f"[Pool] 已关闭 {len(instances)} 个实例")

    def instance_ids(self) -> List[str]:
        with self._cond:
            return list(self._idle) + list(self._active)

    def get_status(self) -> Dict[str, Any]:
        with self._cond:
            return {
                "max_instances": self.max_instances,
                "min_instances": self.min_instances,
                "idle": len(self._idle),
                "active": len(self._active),
                "total": len(self._idle) + len(self._active),
                "instances": [
                    {
                        "id": i.id,
                        "state": "active" if i.id in self._active else "idle",
                        "created_at": i.created_at,
                        "last_used": i.last_used,
                    }
                    for i in list(self._active.values()) + list(self._idle.values())
                ],
            }
