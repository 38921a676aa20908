"""
workflow_executor.py - 工作流执行器

按站点配置的 workflow 逐步操作页面：
- WAIT         等待（可被取消）
- KEY_PRESS    按键
- CLICK        点击（send_btn 找不到时回退为 Enter）
- FILL_INPUT   清空 -> 分块输入 -> 物理激活 -> 回读校验
- STREAM_WAIT  流式监听，唯一会产出 chunk 的步骤
"""

import re
import random
from typing import Any, Dict, Generator, List, Optional

from DrissionPage.common import Keys

from cancellation import CancellationToken
from core_config import (
    BrowserConstants,
    BrowserError,
    ElementNotFoundError,
    InputMismatchError,
    SSEFormatter,
    WorkflowError,
    get_logger,
)
from element_finder import ElementFinder
from extractors import BaseExtractor
from stream_monitor import StreamMonitor, StreamSettings


logger = get_logger('browser.workflow')


READ_INPUT_JS = """
    if (this.value !== undefined && this.value !== null) { return this.value; }
    return this.innerText || this.textContent || '';
"""

IS_RICH_EDITOR_JS = "return !!this.isContentEditable;"


def normalize_for_compare(text: str) -> str:
    if not text:
        return ""
    text = text.replace('\r\n', '\n').replace('\r', '\n')
    text = re.sub(r'\n{3,}', '\n\n', text)
    return text.strip()


def _strip_whitespace(text: str) -> str:
    return re.sub(r'\s+', '', text or '')


class WorkflowExecutor:
    """工作流执行器（一个请求一个实例）"""

    def __init__(self, tab, stealth_mode: bool = False,
                 token: CancellationToken = None,
                 formatter: SSEFormatter = None,
                 extractor: BaseExtractor = None,
                 stream_settings: StreamSettings = None,
                 fallbacks: Dict[str, List[str]] = None,
                 indicator_selector: str = None):
        self.tab = tab
        self.stealth_mode = stealth_mode
        self.token = token or CancellationToken()
        self.formatter = formatter or SSEFormatter()
        self.extractor = extractor
        self.stream_settings = stream_settings
        self.indicator_selector = indicator_selector
        self.finder = ElementFinder(tab, fallbacks)

        self._monitor: Optional[StreamMonitor] = None
        self.final_text = ""

    def _check_cancelled(self) -> bool:
        return self.token.is_cancelled()

    def _smart_delay(self, min_sec: float = None, max_sec: float = None):
        """隐身模式下的随机延迟（可被取消中断）"""
        if not self.stealth_mode:
            return

        min_sec = min_sec if min_sec is not None else BrowserConstants.get('STEALTH_DELAY_MIN')
        max_sec = max_sec if max_sec is not None else BrowserConstants.get('STEALTH_DELAY_MAX')
        self.token.sleep(random.uniform(min_sec, max_sec))

    # ================= 步骤分发 =================

    def execute_step(self, action: str, selector: str,
                     target_key: str, value: str = None,
                     optional: bool = False,
                     context: Dict[str, Any] = None) -> Generator[str, None, None]:
        """执行单个步骤

        可选步骤失败只记日志；必选步骤失败抛 BrowserError 子类，
        非 BrowserError 的异常包装为 WorkflowError。
        """
        if self._check_cancelled():
            logger.debug(f"步骤 {action} 跳过（已取消）")
            return

        logger.debug(f"执行: {action} -> {target_key}")

        try:
            if action == "WAIT":
                wait_time = float(value) if value not in (None, "") else 0.5
                self.token.sleep(wait_time)

            elif action == "KEY_PRESS":
                self._execute_keypress(target_key or value)

            elif action == "CLICK":
                self._execute_click(selector, target_key, optional)

            elif action == "FILL_INPUT":
                prompt = (context or {}).get("prompt", "")
                self._execute_fill(selector, prompt, target_key, optional)

            elif action in ("STREAM_WAIT", "STREAM_OUTPUT"):
                user_input = (context or {}).get("prompt", "")
                yield from self._execute_stream(selector, user_input)

            else:
                logger.warning(f"未知动作: {action}")

        except BrowserError as e:
            if optional:
                logger.warning(f"可选步骤失败，已跳过 [{action}]: {e}")
                return
            raise

        except Exception as e:
            if optional:
                logger.warning(f"可选步骤失败，已跳过 [{action}]: {e}")
                return
            logger.error(f"步骤执行失败 [{action}]: {e}")
            raise WorkflowError(f"步骤执行失败 [{action}]: {e}") from e

    # ================= 按键 / 点击 =================

    def _execute_keypress(self, key: str):
        if self._check_cancelled():
            return
        self.tab.actions.key_down(key).key_up(key)
        self._smart_delay()

    def _execute_click(self, selector: str, target_key: str, optional: bool):
        if self._check_cancelled():
            return

        ele = self.finder.find_with_fallback(selector, target_key)

        if not ele:
            if target_key == "send_btn":
                logger.info("发送按钮未找到，改用 Enter 发送")
                self._execute_keypress("Enter")
                return
            if optional:
                logger.debug(f"可选点击目标未找到: {target_key}")
                return
            raise ElementNotFoundError(f"点击目标未找到: {target_key} ({selector})")

        try:
            if self.stealth_mode:
                try:
                    self.tab.actions.move_to(ele)
                    self._smart_delay(0.1, 0.25)
                except Exception as e:
                    logger.debug(f"鼠标移动失败: {e}")

            if self._check_cancelled():
                return

            ele.click()
            self._smart_delay(
                BrowserConstants.get('ACTION_DELAY_MIN'),
                BrowserConstants.get('ACTION_DELAY_MAX')
            )

        except Exception as click_err:
            if target_key != "send_btn":
                raise
            logger.debug(f"点击异常，改用 Enter: {click_err}")
            self._execute_keypress("Enter")

    # ================= 输入 =================

    def _execute_fill(self, selector: str, text: str,
                      target_key: str, optional: bool):
        if self._check_cancelled():
            return

        ele = self.finder.find_with_fallback(selector, target_key)
        if not ele:
            if optional:
                return
            raise ElementNotFoundError(f"找不到输入框: {target_key}")

        if self.stealth_mode:
            try:
                self.tab.actions.move_to(ele)
                self._smart_delay(0.1, 0.2)
                ele.click()
                self._smart_delay(0.15, 0.25)
            except Exception as e:
                logger.debug(f"隐身点击输入框失败: {e}")

        logger.info_sensitive("[Fill] 开始输入", text)

        self._clear_input(ele)
        if not self._type_text(ele, text):
            return
        self._activate_input(ele)
        self._verify_and_fix(ele, text)

    def _clear_input(self, ele):
        try:
            ele.focus()
        except Exception as e:
            logger.debug(f"focus 失败: {e}")

        try:
            ele.clear()
        except Exception as e:
            logger.debug(f"clear 失败: {e}")

        # 富文本编辑器上 clear() 不一定生效，补一次全选删除
        try:
            self.tab.actions.key_down(Keys.CTRL).key_down('a').key_up('a').key_up(Keys.CTRL)
            self.tab.actions.key_down('Backspace').key_up('Backspace')
        except Exception as e:
            logger.debug(f"全选删除失败: {e}")

    def _type_text(self, ele, text: str) -> bool:
        """分块输入

        Returns:
            False 表示中途被取消
        """
        chunk_size = int(BrowserConstants.get('INPUT_CHUNK_SIZE'))

        if len(text) <= chunk_size:
            ele.input(text)
            return not self._check_cancelled()

        pause = BrowserConstants.get('INPUT_CHUNK_PAUSE')
        total = (len(text) + chunk_size - 1) // chunk_size
        logger.info(f"[Fill] 长文本分 {total} 块输入")

        for index in range(total):
            if self._check_cancelled():
                logger.info(f"[Fill] 输入被取消 ({index}/{total})")
                return False
            ele.input(text[index * chunk_size:(index + 1) * chunk_size])
            if index < total - 1 and not self.token.sleep(pause):
                logger.info(f"[Fill] 输入被取消 ({index + 1}/{total})")
                return False

        return True

    def _activate_input(self, ele):
        """空格 + 退格，触发站点的输入事件监听"""
        try:
            ele.input(' ')
            self.tab.actions.key_down('Backspace').key_up('Backspace')
        except Exception as e:
            logger.debug(f"物理激活失败: {e}")

    def _read_input(self, ele) -> Optional[str]:
        try:
            value = ele.run_js(READ_INPUT_JS)
            if value is not None:
                return str(value)
        except Exception as e:
            logger.debug(f"读取输入框失败: {e}")

        try:
            return str(ele.text or '')
        except Exception:
            return None

    def _is_rich_editor(self, ele) -> bool:
        try:
            return bool(ele.run_js(IS_RICH_EDITOR_JS))
        except Exception:
            return False

    def _input_matches(self, expected: str, actual: Optional[str], rich: bool) -> bool:
        if actual is None:
            return False
        if actual == expected:
            return True
        if normalize_for_compare(actual) == normalize_for_compare(expected):
            return True
        return rich and _strip_whitespace(actual) == _strip_whitespace(expected)

    def _verify_and_fix(self, ele, text: str):
        attempts = int(BrowserConstants.get('INPUT_VERIFY_ATTEMPTS'))
        rich = self._is_rich_editor(ele)

        for attempt in range(1, attempts + 1):
            if self._check_cancelled():
                return

            actual = self._read_input(ele)
            if self._input_matches(text, actual, rich):
                if attempt > 1:
                    logger.info(f"[Fill] 第 {attempt} 次校验通过")
                return

            logger.warning(
                f"[Fill] 输入校验失败 ({attempt}/{attempts}): "
                f"期望 {len(text)} 字符，实际 {len(actual or '')} 字符"
            )

            if attempt < attempts:
                self._clear_input(ele)
                if not self._type_text(ele, text):
                    return
                self._activate_input(ele)

        raise InputMismatchError(f"输入框内容校验失败（已尝试 {attempts} 次）")

    # ================= 流式监听 =================

    def _new_monitor(self) -> StreamMonitor:
        return StreamMonitor(
            self.finder,
            self.formatter,
            self.token,
            extractor=self.extractor,
            settings=self.stream_settings,
            indicator_selector=self.indicator_selector,
        )

    def prepare_stream(self, selector: str):
        """在输入/发送之前记录回复区域的 instant baseline"""
        self._monitor = self._new_monitor()
        self._monitor.capture_baseline(selector)

    def _execute_stream(self, selector: str, user_input: str) -> Generator[str, None, None]:
        monitor = self._monitor or self._new_monitor()
        self._monitor = None

        yield from monitor.monitor(selector, user_input=user_input)
        self.final_text = monitor.final_text
