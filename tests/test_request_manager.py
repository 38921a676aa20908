import asyncio
import threading
import time

from request_manager import RequestContext, RequestManager, RequestStatus, watch_client_disconnect


def _hold_until_cancelled(manager, ctx, started):
    """模拟执行中的请求：直到被取消才释放执行权"""
    assert manager.acquire(ctx, timeout=1)
    started.set()
    while not ctx.should_stop():
        time.sleep(0.01)
    manager.release(ctx, success=False)


class TestRequestContext:

    def test_lifecycle(self):
        ctx = RequestContext()
        assert ctx.status == RequestStatus.PENDING

        ctx.start()
        assert ctx.status == RequestStatus.RUNNING
        assert ctx.started_at is not None

        ctx.complete()
        assert ctx.status == RequestStatus.COMPLETED
        assert not ctx.should_stop()

    def test_cancel_sets_token(self):
        ctx = RequestContext()
        ctx.cancel("superseded")

        assert ctx.status == RequestStatus.CANCELLED
        assert ctx.cancel_reason == "superseded"
        assert ctx.token.is_cancelled()
        assert ctx.should_stop()

        # 已取消的请求不会被标记为完成
        ctx.complete()
        assert ctx.status == RequestStatus.CANCELLED

    def test_external_stop_checker(self):
        ctx = RequestContext()
        flag = {"stop": False}
        ctx.set_stop_checker(lambda: flag["stop"])

        assert not ctx.should_stop()
        flag["stop"] = True
        assert ctx.should_stop()

    def test_mark_failed_records_error(self):
        ctx = RequestContext()
        ctx.start()
        ctx.mark_failed("boom")
        assert ctx.error == "boom"
        assert ctx.status == RequestStatus.COMPLETED


class TestRequestManager:

    def test_acquire_and_release(self):
        manager = RequestManager()
        ctx = manager.create_request()

        assert manager.acquire(ctx, timeout=1)
        assert ctx.status == RequestStatus.RUNNING
        assert manager.is_locked()
        assert manager.get_current_request_id() == ctx.request_id

        manager.release(ctx, success=True)

        assert not manager.is_locked()
        assert ctx.status == RequestStatus.COMPLETED
        record = manager.get_history()[-1]
        assert record["request_id"] == ctx.request_id
        assert record["status"] == "completed"
        assert record["success"] is True

    def test_new_request_supersedes_running_one(self):
        manager = RequestManager()
        first = manager.create_request()
        started = threading.Event()
        holder = threading.Thread(target=_hold_until_cancelled, args=(manager, first, started))
        holder.start()
        assert started.wait(1)

        second = manager.create_request()
        assert manager.acquire(second, timeout=2)

        assert first.status == RequestStatus.CANCELLED
        assert first.cancel_reason == "superseded"
        assert second.status == RequestStatus.RUNNING

        manager.release(second)
        holder.join(1)

        statuses = {r["request_id"]: r["status"] for r in manager.get_history()}
        assert statuses[first.request_id] == "cancelled"
        assert statuses[second.request_id] == "completed"

    def test_acquire_times_out_when_holder_never_releases(self):
        manager = RequestManager()
        stuck = manager.create_request()
        assert manager.acquire(stuck, timeout=1)

        waiting = manager.create_request()
        start = time.time()
        assert manager.acquire(waiting, timeout=0.3) is False

        assert time.time() - start < 1.5
        assert waiting.status == RequestStatus.CANCELLED
        assert waiting.cancel_reason == "acquire_timeout"
        assert stuck.cancel_reason == "superseded"

        manager.force_release()
        assert not manager.is_locked()

    def test_waiting_request_is_superseded_by_newer_one(self):
        manager = RequestManager()
        stuck = manager.create_request()
        assert manager.acquire(stuck, timeout=1)

        older = manager.create_request()
        result = {}
        waiter = threading.Thread(target=lambda: result.update(ok=manager.acquire(older, timeout=2)))
        waiter.start()
        time.sleep(0.1)

        newer = manager.create_request()
        threading.Thread(target=manager.acquire, args=(newer, 0.3)).start()
        waiter.join(2)

        assert result["ok"] is False
        assert older.cancel_reason == "superseded"
        manager.force_release()

    def test_newcomer_during_handover_supersedes_new_holder(self):
        manager = RequestManager(poll_interval=0.01)
        first, second = RequestContext(), RequestContext()
        result = {}

        class HandoverGate:
            """拿到锁之后、登记为 current 之前，让后来者插进来"""

            def __init__(self):
                self._lock = threading.Lock()
                self.fired = False

            def acquire(self, timeout=-1):
                ok = self._lock.acquire(timeout=timeout)
                if ok and not self.fired:
                    self.fired = True
                    newcomer = threading.Thread(
                        target=lambda: result.update(second=manager.acquire(second, timeout=2)))
                    newcomer.start()
                    result["thread"] = newcomer
                    deadline = time.time() + 1
                    while second.request_id not in manager._waiting and time.time() < deadline:
                        time.sleep(0.005)
                return ok

            def release(self):
                self._lock.release()

            def locked(self):
                return self._lock.locked()

        manager._gate = HandoverGate()

        assert manager.acquire(first, timeout=1) is False
        result["thread"].join(2)

        assert first.status == RequestStatus.CANCELLED
        assert first.cancel_reason == "superseded"
        assert result["second"] is True
        assert second.status == RequestStatus.RUNNING
        assert manager.get_current_request_id() == second.request_id

        manager.release(second)
        assert not manager.is_locked()

    def test_history_is_bounded(self):
        manager = RequestManager(history_size=3)
        for _ in range(5):
            ctx = manager.create_request()
            assert manager.acquire(ctx, timeout=1)
            manager.release(ctx)

        assert len(manager.get_history()) == 3

        manager.clear_history()
        assert manager.get_history() == []

    def test_release_keeps_cancelled_status(self):
        manager = RequestManager()
        ctx = manager.create_request()
        assert manager.acquire(ctx, timeout=1)

        assert manager.cancel_current("manual_cancel")
        manager.release(ctx)

        assert ctx.status == RequestStatus.CANCELLED
        assert manager.get_history()[-1]["cancel_reason"] == "manual_cancel"
        assert manager.get_history()[-1]["success"] is False

    def test_cancel_current_without_request(self):
        assert RequestManager().cancel_current() is False

    def test_status_snapshot(self):
        manager = RequestManager()
        ctx = manager.create_request()
        manager.acquire(ctx, timeout=1)

        status = manager.get_status()
        assert status["is_locked"] is True
        assert status["current_request"]["request_id"] == ctx.request_id
        assert status["stats"]["total_requests"] == 1

        manager.release(ctx)


def test_watch_client_disconnect_cancels_request():
    class DisconnectedRequest:
        async def is_disconnected(self):
            return True

    ctx = RequestContext()
    ctx.start()
    asyncio.run(watch_client_disconnect(DisconnectedRequest(), ctx, check_interval=0.01))

    assert ctx.status == RequestStatus.CANCELLED
    assert ctx.cancel_reason == "client_disconnected"
