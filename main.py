"""
main.py - FastAPI 主入口

职责：
- HTTP 服务启动
- 路由定义
- 中间件配置
- 集成 RequestManager 进行并发控制（后到者优先）
"""

import os
import json
import time
import queue
import asyncio
import logging
import threading
from typing import Any, Callable, Dict, Iterator, Optional
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from browser_core import BrowserCore
from browser_pool import BrowserPool
from config_engine import ConfigEngine
from core_config import SSEFormatter
from data_models import ChatCompletionRequest, ModelInfo, ModelsResponse
from request_manager import RequestContext, RequestManager, RequestStatus, watch_client_disconnect


# ================= 环境变量配置 =================

class AppConfig:
    """应用配置"""
    HOST = os.getenv("APP_HOST", "127.0.0.1")
    PORT = int(os.getenv("APP_PORT", "8199"))
    DEBUG = os.getenv("APP_DEBUG", "false").lower() == "true"

    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")
    CORS_ENABLED = os.getenv("CORS_ENABLED", "true").lower() == "true"

    AUTH_ENABLED = os.getenv("AUTH_ENABLED", "false").lower() == "true"
    AUTH_TOKEN = os.getenv("AUTH_TOKEN", "")

    BROWSER_PORT = int(os.getenv("BROWSER_PORT", "9222"))
    # 空白标签页自动打开的站点（域名）
    DEFAULT_SITE = os.getenv("DEFAULT_SITE", "")

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    MODEL_ID = "web-browser"
    VERSION = "2.0.0"


# ================= 日志配置 =================

logging.basicConfig(
    level=getattr(logging, AppConfig.LOG_LEVEL, logging.INFO),
    format='[%(asctime)s] %(levelname)s [%(name)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)

logger = logging.getLogger('main')


# ================= 认证 =================

async def verify_auth(authorization: Optional[str] = Header(None)) -> bool:
    if not AppConfig.AUTH_ENABLED:
        return True

    if not AppConfig.AUTH_TOKEN:
        raise HTTPException(status_code=500, detail="服务配置错误")

    if not authorization:
        raise HTTPException(
            status_code=401,
            detail="未提供认证令牌",
            headers={"WWW-Authenticate": "Bearer"}
        )

    token = authorization.replace("Bearer ", "").strip()

    if token != AppConfig.AUTH_TOKEN:
        raise HTTPException(
            status_code=401,
            detail="认证令牌无效",
            headers={"WWW-Authenticate": "Bearer"}
        )

    return True


# ================= 请求生命周期 =================

_SENTINEL = object()


def _release_when_acquired(manager: RequestManager, ctx: RequestContext):
    """协程已被取消、acquire 线程随后才拿到执行权时，由回调归还闸门"""
    def callback(future):
        if future.cancelled() or future.exception() is not None:
            return
        if future.result():
            logger.info(f"请求 [{ctx.request_id}] 协程已取消，归还迟到的执行权")
            manager.release(ctx, success=False)
    return callback


async def _run_with_lifecycle(request: Request, ctx: RequestContext,
                              produce: Callable[[], Iterator[str]]):
    """
    获取执行权 -> 工作线程执行同步生成器 -> 队列转发

    Yields:
        生成器产出的字符串；获取执行权失败时产出 (reason,) 元组
    """
    manager: RequestManager = request.app.state.request_manager

    disconnect_task = None
    worker_thread = None
    chunk_queue: queue.Queue = queue.Queue(maxsize=100)
    acquired = False

    try:
        acquire_task = asyncio.ensure_future(asyncio.to_thread(manager.acquire, ctx))
        try:
            acquired = await asyncio.shield(acquire_task)
        except asyncio.CancelledError:
            ctx.cancel("coroutine_cancelled")
            acquire_task.add_done_callback(_release_when_acquired(manager, ctx))
            raise

        if not acquired:
            reason = ctx.cancel_reason or "acquire_failed"
            logger.warning(f"请求 [{ctx.request_id}] 未获得执行权: {reason}")
            yield (reason,)
            return

        disconnect_task = asyncio.create_task(
            watch_client_disconnect(request, ctx, check_interval=0.3)
        )

        def put(item) -> bool:
            while True:
                try:
                    chunk_queue.put(item, timeout=0.5)
                    return True
                except queue.Full:
                    if ctx.should_stop():
                        return False

        def worker():
            try:
                for chunk in produce():
                    if not put(chunk):
                        break
            except Exception as e:
                logger.error(f"请求 [{ctx.request_id}] 工作线程异常: {e}")
                ctx.mark_failed(str(e))
            finally:
                put(_SENTINEL)

        worker_thread = threading.Thread(target=worker, daemon=True)
        worker_thread.start()
        logger.info(f"请求 [{ctx.request_id}] 正在执行工作流...")

        while True:
            try:
                chunk = await asyncio.to_thread(chunk_queue.get, timeout=0.5)
            except queue.Empty:
                if not worker_thread.is_alive() and chunk_queue.empty():
                    break
                continue

            if chunk is _SENTINEL:
                break
            yield chunk

        if ctx.status == RequestStatus.RUNNING:
            ctx.mark_completed()

    except asyncio.CancelledError:
        ctx.cancel("coroutine_cancelled")
        raise

    finally:
        if worker_thread and worker_thread.is_alive():
            ctx.cancel("cleanup")
            await asyncio.to_thread(worker_thread.join, 2.0)
            if worker_thread.is_alive():
                logger.warning(f"请求 [{ctx.request_id}] 工作线程未能及时结束")

        if disconnect_task:
            disconnect_task.cancel()
            try:
                await disconnect_task
            except asyncio.CancelledError:
                pass

        if acquired:
            manager.release(ctx, success=(ctx.status == RequestStatus.COMPLETED and not ctx.error))

        logger.info(f"请求 [{ctx.request_id}] 结束 (状态: {ctx.status.value})")


async def _stream_response(request: Request, body: ChatCompletionRequest, ctx: RequestContext):
    core: BrowserCore = request.app.state.browser

    def produce():
        return core.execute_workflow(body.plain_messages(), stream=True, stop_checker=ctx.should_stop,
                                     session_id=body.session_id, model=body.model)

    async for item in _run_with_lifecycle(request, ctx, produce):
        if isinstance(item, tuple):
            formatter = SSEFormatter(body.model)
            yield formatter.pack_error(f"服务繁忙: {item[0]}", "busy", item[0])
            yield formatter.pack_finish()
            return
        yield item


async def _non_stream_response(request: Request, body: ChatCompletionRequest,
                               ctx: RequestContext) -> JSONResponse:
    core: BrowserCore = request.app.state.browser

    def produce():
        return core.execute_workflow(body.plain_messages(), stream=False, stop_checker=ctx.should_stop,
                                     session_id=body.session_id, model=body.model)

    result: Optional[str] = None
    async for item in _run_with_lifecycle(request, ctx, produce):
        if isinstance(item, tuple):
            return JSONResponse(
                content=SSEFormatter.pack_error_json(f"服务繁忙: {item[0]}", "busy", item[0]),
                status_code=503
            )
        result = item

    if result is None:
        return JSONResponse(
            content=SSEFormatter.pack_error_json("请求已取消", "cancelled", "cancelled"),
            status_code=499
        )

    data = json.loads(result)
    if "error" in data:
        return JSONResponse(content=data, status_code=500)
    return JSONResponse(content=data)


# ================= 应用工厂 =================

def create_app(browser: BrowserCore = None,
               request_manager: RequestManager = None,
               config_engine: ConfigEngine = None) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("=" * 60)
        logger.info("Universal Web-to-API 服务启动中...")
        logger.info(f"监听地址: http://{AppConfig.HOST}:{AppConfig.PORT}")
        logger.info(f"认证: {'启用' if AppConfig.AUTH_ENABLED else '禁用'}")
        logger.info(f"浏览器端口: {AppConfig.BROWSER_PORT}")
        logger.info("=" * 60)

        engine = config_engine or ConfigEngine()
        core = browser or BrowserCore(engine, port=AppConfig.BROWSER_PORT,
                                      default_site=AppConfig.DEFAULT_SITE or None)
        app.state.config_engine = engine
        app.state.browser = core
        app.state.request_manager = request_manager or RequestManager()

        if isinstance(core.pool, BrowserPool):
            core.pool.start_cleanup()

        yield

        logger.info("服务正在关闭...")
        core.close()
        logger.info("服务已停止")

    app = FastAPI(
        title="Universal Web-to-API",
        description="将任意 AI Web 界面转换为 OpenAI 兼容 API",
        version=AppConfig.VERSION,
        docs_url="/docs" if AppConfig.DEBUG else None,
        redoc_url="/redoc" if AppConfig.DEBUG else None,
        lifespan=lifespan
    )

    if AppConfig.CORS_ENABLED:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=AppConfig.CORS_ORIGINS,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    # ================= 核心 API =================

    @app.post("/v1/chat/completions")
    async def chat_completions(request: Request, body: ChatCompletionRequest,
                               authenticated: bool = Depends(verify_auth)):
        """OpenAI 兼容的聊天补全接口"""
        ctx = request.app.state.request_manager.create_request()
        logger.info(f"请求 [{ctx.request_id}] 开始 (stream={body.stream})")

        if body.stream:
            return StreamingResponse(
                _stream_response(request, body, ctx),
                media_type="text/event-stream",
                headers={
                    "Cache-Control": "no-cache",
                    "Connection": "keep-alive",
                    "X-Accel-Buffering": "no"
                }
            )
        return await _non_stream_response(request, body, ctx)

    @app.get("/v1/models", response_model=ModelsResponse)
    async def list_models(authenticated: bool = Depends(verify_auth)):
        return ModelsResponse(data=[ModelInfo(id=AppConfig.MODEL_ID, created=int(time.time()))])

    @app.get("/health")
    async def health_check(request: Request):
        core: BrowserCore = request.app.state.browser
        try:
            browser_health = await asyncio.to_thread(core.health_check)
        except Exception as e:
            browser_health = {"connected": False, "error": str(e)}

        response: Dict[str, Any] = {
            "service": "healthy",
            "version": AppConfig.VERSION,
            "browser": browser_health,
            "request_manager": request.app.state.request_manager.get_status(),
            "config": {
                "sites_loaded": len(request.app.state.config_engine.sites),
                "auth_enabled": AppConfig.AUTH_ENABLED
            },
            "timestamp": int(time.time())
        }

        status_code = 200 if browser_health.get("connected") else 503
        return JSONResponse(content=response, status_code=status_code)

    # ================= 配置管理 API =================

    @app.get("/api/config/{domain}")
    async def get_site_config(domain: str, request: Request,
                              authenticated: bool = Depends(verify_auth)):
        engine: ConfigEngine = request.app.state.config_engine
        if domain not in engine.list_sites():
            raise HTTPException(status_code=404, detail=f"配置不存在: {domain}")
        return engine.get_site_config(domain)

    @app.delete("/api/config/{domain}")
    async def delete_site_config(domain: str, request: Request,
                                 authenticated: bool = Depends(verify_auth)):
        engine: ConfigEngine = request.app.state.config_engine
        if not engine.delete_site_config(domain):
            raise HTTPException(status_code=404, detail=f"配置不存在: {domain}")
        return {"status": "success", "message": f"已删除配置: {domain}"}

    # ================= 会话 API =================

    @app.delete("/api/sessions/{session_id}")
    async def close_session(session_id: str, request: Request,
                            authenticated: bool = Depends(verify_auth)):
        """关闭某个会话占用的标签页"""
        core: BrowserCore = request.app.state.browser
        closed = await asyncio.to_thread(core.close_session, session_id)
        return {"session_id": session_id, "closed_tabs": closed}

    # ================= 调试 API =================

    @app.get("/api/debug/request-status")
    async def request_status(request: Request, authenticated: bool = Depends(verify_auth)):
        """查看请求管理器状态"""
        return request.app.state.request_manager.get_status()

    @app.post("/api/debug/force-release")
    async def force_release(request: Request, authenticated: bool = Depends(verify_auth)):
        """强制释放闸门（紧急情况）"""
        if not AppConfig.DEBUG:
            raise HTTPException(status_code=403, detail="调试功能未启用")

        manager: RequestManager = request.app.state.request_manager
        was_locked = manager.is_locked()
        released = manager.force_release()
        logger.warning(f"手动解锁: was={was_locked}, released={released}")
        return {"was_locked": was_locked, "released": released, "is_now_locked": manager.is_locked()}

    @app.post("/api/debug/cancel-current")
    async def cancel_current(request: Request, authenticated: bool = Depends(verify_auth)):
        """取消当前正在执行的请求"""
        manager: RequestManager = request.app.state.request_manager
        current_id = manager.get_current_request_id()

        if not current_id:
            return {"cancelled": False, "message": "没有正在执行的请求"}

        return {"cancelled": manager.cancel_current("manual_cancel"), "request_id": current_id}

    @app.get("/")
    async def root():
        return {
            "service": "Universal Web-to-API",
            "version": AppConfig.VERSION,
            "endpoints": {
                "chat": "/v1/chat/completions",
                "models": "/v1/models",
                "health": "/health"
            }
        }

    # ================= 异常处理 =================

    @app.exception_handler(404)
    async def not_found_handler(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=404,
            content={"error": {"message": getattr(exc, "detail", None) or "接口不存在",
                               "path": str(request.url.path)}}
        )

    @app.exception_handler(500)
    async def internal_error_handler(request: Request, exc: Exception):
        logger.error(f"内部错误: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": {"message": "服务器内部错误"}}
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=AppConfig.HOST,
        port=AppConfig.PORT,
        log_level=AppConfig.LOG_LEVEL.lower(),
        access_log=False
    )
