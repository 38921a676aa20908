"""
stream_monitor.py - 流式监听

页面没有"生成结束"事件，只能反复给回复区域拍快照，从快照的形状推断：
开始 -> 增长 -> 稳定 -> 结束。

阶段：
0. instant baseline：动手之前记录回复区域的组数和最后一组文本长度
1. 等待用户消息上屏：组数和长度连续 N 次不变，记为 active_turn_baseline_len；
   组数比 instant baseline 多 2 个及以上视为 AI 秒回
2. 增量输出：每一轮与"期望边界"比较，只发送新增的尾巴
3. 结束判定：稳定计数达到阈值后开始计静默时间，静默超时即结束
4. 无论正常结束、取消还是超时，最后都发送 finish 标记
"""

import time
from dataclasses import dataclass, fields
from typing import Any, Dict, Generator, List, Optional, Tuple

from cancellation import CancellationToken
from core_config import BrowserConstants, SSEFormatter, StreamTimeoutError, get_logger
from element_finder import ElementFinder
from extractors import BaseExtractor, get_extractor


logger = get_logger('browser.stream')


# ================= 监听参数 =================

@dataclass
class StreamSettings:
    check_interval_min: float = 0.1
    check_interval_max: float = 1.0
    check_interval_default: float = 0.3
    silence_threshold: float = 6.0
    stable_count_threshold: int = 5
    hard_timeout: float = 600
    initial_wait: float = 180
    shrink_tolerance: int = 3
    user_msg_wait: float = 1.5
    user_msg_poll: float = 0.3
    user_msg_stable_polls: int = 5
    pre_baseline_delay: float = 0.3
    generating_check_interval: float = 0.5

    _CONSTANT_KEYS = {
        'check_interval_min': 'STREAM_CHECK_INTERVAL_MIN',
        'check_interval_max': 'STREAM_CHECK_INTERVAL_MAX',
        'check_interval_default': 'STREAM_CHECK_INTERVAL_DEFAULT',
        'silence_threshold': 'STREAM_SILENCE_THRESHOLD',
        'stable_count_threshold': 'STREAM_STABLE_COUNT_THRESHOLD',
        'hard_timeout': 'STREAM_MAX_TIMEOUT',
        'initial_wait': 'STREAM_INITIAL_WAIT',
        'shrink_tolerance': 'STREAM_CONTENT_SHRINK_TOLERANCE',
        'user_msg_wait': 'STREAM_USER_MSG_WAIT',
        'user_msg_poll': 'STREAM_USER_MSG_POLL',
        'user_msg_stable_polls': 'STREAM_USER_MSG_STABLE_POLLS',
        'pre_baseline_delay': 'STREAM_PRE_BASELINE_DELAY',
        'generating_check_interval': 'STREAM_GENERATING_CHECK_INTERVAL',
    }

    @classmethod
    def from_constants(cls, overrides: Dict[str, Any] = None) -> "StreamSettings":
        """从 BrowserConstants 构建，再叠加站点级 stream_config"""
        values = {}
        for f in fields(cls):
            constant_key = cls._CONSTANT_KEYS.get(f.name)
            if constant_key:
                values[f.name] = BrowserConstants.get(constant_key, f.default)

        for key, value in (overrides or {}).items():
            if key in values and value is not None:
                values[key] = value

        return cls(**values)


@dataclass
class Snapshot:
    groups_count: int = 0
    text: str = ""

    @property
    def text_len(self) -> int:
        return len(self.text)


# ================= 流式上下文 =================

class StreamContext:
    """单次请求的增量状态

    sent_content_length 是本次请求累计发出的字符数，只增不减。
    切换到新的回复节点时不清零，而是记下 target_sent_start，
    当前节点已发送的长度 = sent_content_length - target_sent_start。
    """

    def __init__(self, shrink_tolerance: int = None):
        if shrink_tolerance is None:
            shrink_tolerance = BrowserConstants.get('STREAM_CONTENT_SHRINK_TOLERANCE')
        self.shrink_tolerance = shrink_tolerance

        self.max_seen_text = ""
        self.sent_content_length = 0
        self.active_turn_baseline_len = 0
        self.stable_text_count = 0
        self.last_stable_text = ""

        self.target_sent_start = 0
        self.output_target_count = 0

        self.instant_baseline: Optional[Snapshot] = None
        self.user_baseline: Optional[Snapshot] = None
        self.user_msg_confirmed = False

    @property
    def target_sent_length(self) -> int:
        return self.sent_content_length - self.target_sent_start

    @property
    def expected_boundary(self) -> int:
        return self.active_turn_baseline_len + self.target_sent_length

    def lock_target(self, baseline_len: int, groups_count: int):
        self.active_turn_baseline_len = baseline_len
        self.output_target_count = groups_count

    def switch_target(self, groups_count: int):
        """出现新的回复节点：从新节点开头重新计算"""
        self.target_sent_start = self.sent_content_length
        self.active_turn_baseline_len = 0
        self.output_target_count = groups_count
        self.max_seen_text = ""
        self.stable_text_count = 0
        self.last_stable_text = ""

    def calculate_diff(self, current_text: str) -> Tuple[str, bool, Optional[str]]:
        """
        Returns:
            (diff, from_history, reason)
            reason 非空表示超出容忍度的缩短（页面重渲染）
        """
        if not current_text:
            return "", False, None

        effective_start = self.expected_boundary

        if len(current_text) > effective_start:
            return current_text[effective_start:], False, None

        if len(current_text) >= self.active_turn_baseline_len:
            active_len = len(current_text) - self.active_turn_baseline_len
            if active_len < self.target_sent_length:
                shrink_amount = self.target_sent_length - active_len
                if shrink_amount <= self.shrink_tolerance:
                    return "", False, None
                return "", False, f"内容缩短 {shrink_amount} 字符"

        if self.max_seen_text and len(self.max_seen_text) > effective_start:
            return self.max_seen_text[effective_start:], True, "使用历史快照"

        return "", False, None

    def update_after_send(self, diff: str, source_text: str):
        self.sent_content_length += len(diff)
        self.last_stable_text = source_text
        self.stable_text_count = 0

        if len(source_text) > len(self.max_seen_text):
            self.max_seen_text = source_text

    def observe(self, current_text: str) -> Optional[str]:
        """处理一次快照，返回需要发送的增量（没有则为 None）"""
        diff, from_history, reason = self.calculate_diff(current_text)

        if diff:
            source = self.max_seen_text if from_history else current_text
            if from_history:
                logger.debug(f"[Diff] {reason}: {len(diff)} 字符")
            self.update_after_send(diff, source)
            return diff

        if reason:
            # 大幅缩短：不发送，只有快照保持不变时才累计稳定
            logger.debug(f"[Diff] {reason}")
            if current_text == self.last_stable_text:
                self.stable_text_count += 1
            else:
                self.stable_text_count = 0
                self.last_stable_text = current_text
            return None

        self.stable_text_count += 1
        return None


# ================= 生成状态缓存 =================

class GeneratingStatusCache:
    """生成中指示器（停止按钮等）检测，结果缓存一小段时间"""

    INDICATOR_SELECTORS = [
        'css:button[aria-label*="Stop"]',
        'css:button[aria-label*="stop"]',
        'css:[data-state="streaming"]',
        'css:.stop-generating',
    ]

    def __init__(self, finder: ElementFinder, custom_selector: str = None,
                 check_interval: float = 0.5):
        self.finder = finder
        self._check_interval = check_interval
        self._last_check_time = 0.0
        self._last_result = False
        self._found_selector: Optional[str] = None
        self._selectors = ([custom_selector] if custom_selector else []) + self.INDICATOR_SELECTORS

    def _visible(self, selector: str) -> bool:
        ele = self.finder.find(selector, timeout=0.05)
        if not ele:
            return False
        try:
            return bool(ele.states.is_displayed)
        except Exception:
            return False

    def is_generating(self) -> bool:
        now = time.time()
        if now - self._last_check_time < self._check_interval:
            return self._last_result

        self._last_check_time = now

        if self._found_selector and self._visible(self._found_selector):
            self._last_result = True
            return True
        self._found_selector = None

        for selector in self._selectors:
            if self._visible(selector):
                self._found_selector = selector
                self._last_result = True
                return True

        self._last_result = False
        return False


# ================= 流式监听器 =================

class StreamMonitor:
    """流式监听器（每个请求一个实例，不可重复使用）"""

    def __init__(self, finder: ElementFinder, formatter: SSEFormatter,
                 token: CancellationToken,
                 extractor: BaseExtractor = None,
                 settings: StreamSettings = None,
                 indicator_selector: str = None):
        self.finder = finder
        self.formatter = formatter
        self.token = token
        self.extractor = extractor or get_extractor()
        self.settings = settings or StreamSettings.from_constants()
        self.generating = GeneratingStatusCache(
            finder, indicator_selector, self.settings.generating_check_interval
        )
        self.ctx = StreamContext(self.settings.shrink_tolerance)
        self.final_text = ""

    # ---------- 快照 ----------

    def snapshot(self, selector: str) -> Snapshot:
        """读取回复区域；DOM 读取失败视为"本轮无内容"，不抛异常"""
        try:
            texts: List[str] = self.extractor.extract_all(self.finder, selector)
        except Exception as e:
            logger.debug(f"Snapshot 异常: {e}")
            return Snapshot()

        if not texts:
            return Snapshot()
        return Snapshot(groups_count=len(texts), text=texts[-1])

    def capture_baseline(self, selector: str) -> Snapshot:
        """阶段 0：在输入/发送之前记录 instant baseline"""
        snap = self.snapshot(selector)
        self.ctx.instant_baseline = snap
        logger.info(f"[Instant] count={snap.groups_count}, text_len={snap.text_len}")
        return snap

    # ---------- 主流程 ----------

    def monitor(self, selector: str, user_input: str = "") -> Generator[str, None, None]:
        logger.info("========== 流式监听启动 ==========")
        logger.info_sensitive("[Monitor] 用户输入", user_input)

        ctx = self.ctx
        if ctx.instant_baseline is None:
            self.capture_baseline(selector)

        timed_out = False
        if self.token.sleep(self.settings.pre_baseline_delay):
            self._wait_for_user_message(selector)
            if not self.token.is_cancelled():
                timed_out = yield from self._response_loop(selector)

        if timed_out:
            yield self.formatter.pack_exception(StreamTimeoutError(
                f"流式监听超时（{self.settings.hard_timeout}s），已返回部分内容"
            ))

        logger.info(f"========== 流式监听结束，总输出: {ctx.sent_content_length} 字符 ==========")
        yield self.formatter.pack_finish()

    def _wait_for_user_message(self, selector: str):
        """阶段 1：等待用户消息上屏，确定 active_turn_baseline_len"""
        ctx = self.ctx
        s = self.settings
        instant = ctx.instant_baseline or Snapshot()

        logger.debug(f"[WaitUser] 等待用户消息上屏（最多 {s.user_msg_wait}s）")

        start = time.time()
        last_shape = None
        stable_count = 0
        last_snapshot = instant

        while time.time() - start < s.user_msg_wait:
            if self.token.is_cancelled():
                logger.info("[WaitUser] 被取消")
                return

            snap = self.snapshot(selector)
            last_snapshot = snap

            # count +1 只是用户消息上屏；+2 及以上才是 AI 秒回
            if snap.groups_count >= instant.groups_count + 2:
                logger.info(f"[Fast AI] 检测到 AI 秒回 (count: {instant.groups_count} -> {snap.groups_count})")
                ctx.user_baseline = snap
                ctx.user_msg_confirmed = True
                ctx.lock_target(0, snap.groups_count)
                return

            shape = (snap.groups_count, snap.text_len)
            if shape != last_shape:
                last_shape = shape
                stable_count = 0
            else:
                stable_count += 1

            if stable_count >= s.user_msg_stable_polls:
                ctx.user_baseline = snap
                ctx.user_msg_confirmed = True
                ctx.lock_target(snap.text_len, snap.groups_count)
                logger.info(f"[WaitUser] 用户消息已确认 (len={snap.text_len})")
                return

            if not self.token.sleep(s.user_msg_poll):
                return

        logger.warning("[WaitUser] 超时，使用最后一次快照作为 baseline")
        ctx.user_baseline = last_snapshot
        ctx.lock_target(last_snapshot.text_len, last_snapshot.groups_count)

    def _response_loop(self, selector: str) -> Generator[str, None, bool]:
        """阶段 2/3：增量输出 + 结束判定

        Returns:
            是否因为硬超时退出
        """
        ctx = self.ctx
        s = self.settings

        start = time.time()
        silence_start: Optional[float] = None
        interval = s.check_interval_default

        while True:
            if self.token.is_cancelled():
                logger.info("[Output] 输出阶段被取消")
                return False

            if time.time() - start > s.hard_timeout:
                logger.warning(f"[Output] 达到硬超时 {s.hard_timeout}s，强制结束")
                return True

            snap = self.snapshot(selector)

            if snap.groups_count > ctx.output_target_count:
                logger.info(f"[Switch] 检测到新节点，切换输出目标: "
                            f"count {ctx.output_target_count} -> {snap.groups_count}")
                ctx.switch_target(snap.groups_count)

            diff = ctx.observe(snap.text)

            if diff:
                if self.token.is_cancelled():
                    logger.info("[Output] 发送增量前被取消")
                    return False

                silence_start = None
                interval = s.check_interval_min
                self.final_text = ctx.max_seen_text[ctx.active_turn_baseline_len:]
                logger.debug(f"[Output] 发送增量: {len(diff)} 字符")
                yield self.formatter.pack_chunk(diff)
            else:
                interval = min(interval * 1.5, s.check_interval_max)

                if ctx.stable_text_count >= s.stable_count_threshold:
                    if self.generating.is_generating():
                        silence_start = None
                    elif silence_start is None:
                        silence_start = time.time()
                    else:
                        window = s.silence_threshold if ctx.sent_content_length > 0 else s.initial_wait
                        silence = time.time() - silence_start
                        if silence > window:
                            logger.info(f"[Exit] 生成结束（内容稳定 + {silence:.1f}s 静默）")
                            return False

            if not self.token.sleep(interval):
                logger.info("[Output] 等待期间被取消")
                return False
