"""
browser_core.py - 浏览器自动化核心

职责：
- 连接浏览器（DrissionPage，接管已开启调试端口的 Chrome）
- 从实例池借浏览器、从标签页管理器借标签页
- 按站点配置驱动 WorkflowExecutor，产出 SSE 字符串
- 所有失败在这里转换为恰好一个错误单元，随后恰好一个结束标记
"""

import json
import threading
from typing import Any, Callable, Dict, Generator, List, Optional
from urllib.parse import urlparse

from DrissionPage import ChromiumPage

from browser_pool import BrowserPool, PoolInstance
from cancellation import CancellationToken
from config_engine import ConfigEngine
from core_config import (
    BrowserConnectionError,
    BrowserConstants,
    BrowserError,
    ConfigurationError,
    MessageValidator,
    PageNotReadyError,
    PoolExhaustedError,
    SSEFormatter,
    WorkflowCancelledError,
    WorkflowError,
    get_logger,
)
from extractors import get_extractor
from stream_monitor import StreamSettings
from tab_manager import TabManager
from workflow_executor import WorkflowExecutor


logger = get_logger('browser')


STREAM_ACTIONS = ("STREAM_WAIT", "STREAM_OUTPUT")
BLANK_URLS = ("about:blank", "chrome://newtab/")


def connect_chromium(port: int = None) -> ChromiumPage:
    """连接本机调试端口上的浏览器（实例池的工厂函数）"""
    port = port or BrowserConstants.get('DEFAULT_PORT')
    try:
        logger.debug(f"连接浏览器 127.0.0.1:{port}")
        page = ChromiumPage(addr_or_opts=f"127.0.0.1:{port}")
    except Exception as e:
        raise BrowserConnectionError(f"无法连接到浏览器 (端口: {port}): {e}") from e
    logger.info("浏览器连接成功")
    return page


def domain_of(url: str) -> str:
    try:
        return urlparse(url or "").netloc
    except ValueError:
        return ""


class BrowserCore:
    """浏览器核心

    依赖全部由外部注入：配置引擎、实例池、可选的 cookie 存储
    （需提供 load_cookies(domain) / save_cookies(domain, cookies)）。
    """

    def __init__(self, config_engine: ConfigEngine,
                 pool: BrowserPool = None,
                 port: int = None,
                 cookie_store: Any = None,
                 default_site: str = None):
        self.port = port or BrowserConstants.get('DEFAULT_PORT')
        self.config_engine = config_engine
        self.pool = pool or BrowserPool(factory=lambda: connect_chromium(self.port))
        self.cookie_store = cookie_store
        self.default_site = default_site

        self._tab_managers: Dict[str, TabManager] = {}
        self._tab_lock = threading.Lock()
        self._should_stop_checker: Callable[[], bool] = lambda: False

        # 标签页回收跟随实例池的回收线程
        self.pool.add_sweep_hook(self.cleanup_tabs)

    def set_stop_checker(self, checker: Optional[Callable[[], bool]]):
        """设置默认停止检查器（execute_workflow 未显式传入时使用）"""
        self._should_stop_checker = checker or (lambda: False)

    def _tab_manager_for(self, instance: PoolInstance) -> TabManager:
        with self._tab_lock:
            manager = self._tab_managers.get(instance.id)
            if manager is None:
                manager = TabManager(instance.handle)
                self._tab_managers[instance.id] = manager
            return manager

    # ================= 标签页生命周期 =================

    def cleanup_tabs(self) -> Dict[str, int]:
        """回收空闲标签页；实例已被池回收的，连同其标签页管理器一起丢弃"""
        alive = set(self.pool.instance_ids())
        with self._tab_lock:
            stale = [i for i in self._tab_managers if i not in alive]
            dropped = [self._tab_managers.pop(i) for i in stale]
            managers = list(self._tab_managers.values())

        for manager in dropped:
            manager.close_all()
        if stale:
            logger.info(f"[Tab] 丢弃已回收实例的标签页管理器: {stale}")

        closed = sum(manager.cleanup_idle() for manager in managers)
        return {"closed_tabs": closed, "dropped_managers": len(dropped)}

    def close_session(self, session_id: str) -> int:
        """关闭某个会话在所有实例上的标签页"""
        with self._tab_lock:
            managers = list(self._tab_managers.values())
        return sum(manager.close_session(session_id) for manager in managers)

    # ================= 健康检查 =================

    def health_check(self) -> Dict[str, Any]:
        result = {
            "status": "unhealthy",
            "connected": False,
            "port": self.port,
            "busy": False,
            "tab_url": None,
            "tab_title": None,
            "pool": None,
            "error": None
        }

        try:
            instance = self.pool.acquire(timeout=0)
        except PoolExhaustedError:
            # 实例都在执行请求，连接本身是好的
            result.update(status="healthy", connected=True, busy=True)
            result["pool"] = self.pool.get_status()
            return result
        except BrowserError as e:
            result["error"] = e.message
            return result

        try:
            tab = instance.handle.latest_tab
            if not tab:
                result["error"] = "无可用标签页"
            else:
                result["status"] = "healthy"
                result["connected"] = True
                result["tab_url"] = tab.url
                result["tab_title"] = tab.title
        except Exception as e:
            result["error"] = str(e)
        finally:
            self.pool.release(instance.id)

        result["pool"] = self.pool.get_status()
        return result

    # ================= 工作流入口 =================

    def execute_workflow(self, messages: List[Dict],
                         stream: bool = True,
                         stop_checker: Callable[[], bool] = None,
                         session_id: str = None,
                         model: str = None) -> Generator[str, None, None]:
        """工作流执行入口

        stream=True 时产出 SSE 字符串；否则只产出一个 JSON 字符串。
        model 原样写回每个 chunk 和非流式响应。
        """
        formatter = SSEFormatter(model) if model else SSEFormatter()

        is_valid, error_msg, sanitized_messages = MessageValidator.validate(messages)
        if not is_valid:
            if stream:
                yield formatter.pack_error(
                    f"无效请求: {error_msg}",
                    error_type="invalid_request_error",
                    code="invalid_messages"
                )
                yield formatter.pack_finish()
            else:
                yield json.dumps(SSEFormatter.pack_error_json(
                    f"无效请求: {error_msg}",
                    error_type="invalid_request_error",
                    code="invalid_messages"
                ), ensure_ascii=False)
            return

        token = CancellationToken(stop_checker or self._should_stop_checker)

        if stream:
            yield from self._execute_workflow_stream(sanitized_messages, token, formatter, session_id)
        else:
            yield from self._execute_workflow_non_stream(sanitized_messages, token, formatter, session_id)

    def _execute_workflow_stream(self, messages: List[Dict],
                                 token: CancellationToken,
                                 formatter: SSEFormatter,
                                 session_id: str = None) -> Generator[str, None, None]:
        error: Optional[BrowserError] = None

        try:
            for chunk in self._run(messages, token, formatter, session_id):
                # 结束标记统一在最后发送
                if SSEFormatter.is_finish(chunk):
                    continue
                yield chunk
        except WorkflowCancelledError as e:
            logger.info(f"工作流已取消: {e.message}")
        except BrowserError as e:
            logger.error(f"工作流失败 [{e.code}]: {e.message}")
            error = e
        except Exception as e:
            logger.error(f"工作流异常: {e}")
            error = WorkflowError(f"执行中断: {e}")

        if error is not None:
            yield formatter.pack_exception(error)
        yield formatter.pack_finish()

    def _execute_workflow_non_stream(self, messages: List[Dict],
                                     token: CancellationToken,
                                     formatter: SSEFormatter,
                                     session_id: str = None) -> Generator[str, None, None]:
        collected_content = []
        error_data = None

        for chunk in self._execute_workflow_stream(messages, token, formatter, session_id):
            for data in SSEFormatter.parse(chunk):
                if "error" in data:
                    error_data = error_data or data
                    continue
                choices = data.get("choices") or []
                if choices:
                    content = choices[0].get("delta", {}).get("content", "")
                    if content:
                        collected_content.append(content)

        if error_data:
            yield json.dumps(error_data, ensure_ascii=False)
        else:
            response = formatter.pack_non_stream("".join(collected_content))
            yield json.dumps(response, ensure_ascii=False)

    # ================= 执行 =================

    def _run(self, messages: List[Dict], token: CancellationToken,
             formatter: SSEFormatter, session_id: str = None) -> Generator[str, None, None]:
        """借出实例和标签页执行工作流，失败直接抛异常"""
        if token.is_cancelled():
            raise WorkflowCancelledError("请求已取消")

        instance = self.pool.acquire(token=token)
        tab_manager = self._tab_manager_for(instance)
        tab_session = None

        try:
            tab_session = tab_manager.acquire(session_id=session_id, token=token)
            tab = tab_session.tab

            self._open_default_site(tab)
            domain = self._check_page_status(tab)
            logger.debug(f"域名: {domain}")

            site_config = self.config_engine.get_site_config(domain)
            if not site_config:
                raise ConfigurationError(f"配置加载失败: {domain}")

            self._restore_cookies(tab, domain)
            yield from self._run_steps(tab, site_config, messages, token, formatter)
            self._persist_cookies(tab, domain)

        finally:
            if tab_session is not None:
                tab_manager.release(tab_session.id)
            self.pool.release(instance.id)

    def _run_steps(self, tab, site_config: Dict[str, Any], messages: List[Dict],
                   token: CancellationToken,
                   formatter: SSEFormatter) -> Generator[str, None, None]:
        selectors = site_config.get("selectors") or {}
        workflow = site_config.get("workflow") or []
        fallbacks = selectors.get("fallbacks")

        executor = WorkflowExecutor(
            tab,
            stealth_mode=bool(site_config.get("stealth", False)),
            token=token,
            formatter=formatter,
            extractor=get_extractor(site_config.get("extractor_id")),
            stream_settings=StreamSettings.from_constants(site_config.get("stream_config")),
            fallbacks=fallbacks if isinstance(fallbacks, dict) else None,
            indicator_selector=selectors.get("generating_indicator"),
        )

        context = {"prompt": MessageValidator.build_prompt(messages)}

        # 发送之前记录回复区域基线
        for step in workflow:
            if step.get("action") in STREAM_ACTIONS:
                stream_selector = selectors.get(step.get("target", ""))
                if stream_selector:
                    executor.prepare_stream(stream_selector)
                break

        for step in workflow:
            if token.is_cancelled():
                logger.info("工作流被用户中断")
                return

            action = step.get("action", "")
            target_key = step.get("target", "")
            optional = bool(step.get("optional", False))
            param_value = step.get("value")

            selector = selectors.get(target_key) or ""

            if not selector and action not in ("WAIT", "KEY_PRESS"):
                if optional:
                    logger.debug(f"可选步骤缺少选择器，跳过: {action} -> {target_key}")
                    continue
                raise ConfigurationError(f"缺少配置: {target_key}", code="missing_selector")

            yield from executor.execute_step(
                action=action,
                selector=selector,
                target_key=target_key,
                value=param_value,
                optional=optional,
                context=context
            )

    def _open_default_site(self, tab):
        """空白标签页（例如刚新开的）先打开默认站点"""
        if not self.default_site:
            return
        try:
            url = tab.url or ""
        except Exception:
            return
        if url and url not in BLANK_URLS:
            return

        site_config = self.config_engine.get_site_config(self.default_site) or {}
        target = site_config.get("url") or f"https://{self.default_site}"
        logger.info(f"空白标签页，打开默认站点: {target}")
        try:
            tab.get(target)
        except Exception as e:
            raise PageNotReadyError(f"页面未就绪: 打开 {target} 失败: {e}") from e

    def _check_page_status(self, tab) -> str:
        """检查页面状态，返回域名"""
        try:
            url = tab.url or ""
        except Exception as e:
            raise BrowserConnectionError(f"标签页不可用: {e}") from e

        if not url or url in BLANK_URLS:
            raise PageNotReadyError("页面未就绪: 请先打开目标AI网站")

        for indicator in ("chrome-error://", "about:neterror"):
            if indicator in url:
                raise PageNotReadyError("页面未就绪: 页面加载错误")

        domain = domain_of(url)
        if not domain:
            raise PageNotReadyError(f"页面未就绪: 无法解析页面URL {url}")

        try:
            title = (tab.title or "").lower()
        except Exception:
            title = ""
        for keyword in ("404", "not found", "无法访问", "refused"):
            if keyword in title:
                logger.warning(f"页面可能存在问题: {title}")
                break

        return domain

    # ================= Cookie =================

    def _restore_cookies(self, tab, domain: str):
        if self.cookie_store is None:
            return
        try:
            cookies = self.cookie_store.load_cookies(domain)
            if cookies:
                tab.set.cookies(cookies)
                logger.debug(f"已恢复 {len(cookies)} 个 cookie: {domain}")
        except Exception as e:
            logger.warning(f"恢复 cookie 失败: {e}")

    def _persist_cookies(self, tab, domain: str):
        if self.cookie_store is None:
            return
        try:
            self.cookie_store.save_cookies(domain, list(tab.cookies()))
        except Exception as e:
            logger.warning(f"保存 cookie 失败: {e}")

    def close(self):
        logger.info("关闭浏览器连接")
        for manager in self._tab_managers.values():
            manager.close_all()
        self._tab_managers.clear()
        self.pool.close_all()
