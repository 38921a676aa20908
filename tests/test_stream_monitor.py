from cancellation import CancellationToken
from core_config import BrowserConstants, SSEFormatter
from element_finder import ElementFinder
from stream_monitor import (
    GeneratingStatusCache,
    Snapshot,
    StreamContext,
    StreamMonitor,
    StreamSettings,
)

from conftest import FakeElement, FakeTab, ScriptedExtractor


def _contents(chunks):
    out = []
    for chunk in chunks:
        for event in SSEFormatter.parse(chunk):
            choices = event.get("choices") or []
            if choices and choices[0]["delta"].get("content"):
                out.append(choices[0]["delta"]["content"])
    return out


def _errors(chunks):
    return [e["error"] for c in chunks for e in SSEFormatter.parse(c) if "error" in e]


def _monitor(script, settings, token=None, on_call=None, tab=None):
    tab = tab or FakeTab()
    token = token or CancellationToken()
    extractor = ScriptedExtractor(script, on_call=on_call)
    monitor = StreamMonitor(ElementFinder(tab), SSEFormatter(), token,
                            extractor=extractor, settings=settings)
    return monitor, extractor, token


# ================= StreamContext =================

class TestStreamContext:

    def test_growing_snapshots_emit_suffixes(self):
        ctx = StreamContext(shrink_tolerance=3)
        chunks = [ctx.observe(t) for t in ["", "Hel", "Hello", "Hello wor", "Hello world"]]
        assert [c for c in chunks if c] == ["Hel", "lo", " wor", "ld"]
        assert ctx.sent_content_length == len("Hello world")

    def test_small_shrink_is_jitter(self):
        ctx = StreamContext(shrink_tolerance=3)
        assert ctx.observe("Hello world") == "Hello world"
        assert ctx.observe("Hello wor") is None
        assert ctx.sent_content_length == 11
        assert ctx.stable_text_count == 1

    def test_large_shrink_emits_nothing_and_keeps_length(self):
        ctx = StreamContext(shrink_tolerance=3)
        ctx.observe("Hello wonderful world")
        before = ctx.sent_content_length

        diff, from_history, reason = ctx.calculate_diff("Hello")
        assert diff == ""
        assert reason

        assert ctx.observe("Hello") is None
        assert ctx.observe("Hello") is None
        assert ctx.sent_content_length == before
        # 缩短后的快照保持不变时才累计稳定
        assert ctx.stable_text_count == 1

    def test_baseline_excludes_user_turn(self):
        ctx = StreamContext(shrink_tolerance=3)
        ctx.lock_target(len("Q: hi\n"), 1)
        assert ctx.observe("Q: hi\n") is None
        assert ctx.observe("Q: hi\nAnswer") == "Answer"

    def test_history_fallback_emits_max_seen_suffix(self):
        ctx = StreamContext(shrink_tolerance=3)
        ctx.active_turn_baseline_len = 5
        ctx.max_seen_text = "0123456789"
        ctx.sent_content_length = 3
        diff, from_history, _ = ctx.calculate_diff("01")
        assert diff == "89"
        assert from_history is True

    def test_switch_target_keeps_length_monotonic(self):
        ctx = StreamContext(shrink_tolerance=3)
        ctx.observe("first reply")
        sent = ctx.sent_content_length

        ctx.switch_target(2)
        assert ctx.sent_content_length == sent
        assert ctx.expected_boundary == 0
        assert ctx.observe("second") == "second"
        assert ctx.sent_content_length == sent + len("second")


# ================= StreamSettings =================

def test_settings_from_constants_with_site_overrides():
    BrowserConstants.override(STREAM_SILENCE_THRESHOLD=9.0)
    settings = StreamSettings.from_constants({"hard_timeout": 30, "unknown": 1, "initial_wait": None})

    assert settings.silence_threshold == 9.0
    assert settings.hard_timeout == 30
    assert settings.initial_wait == BrowserConstants.get('STREAM_INITIAL_WAIT')


# ================= StreamMonitor =================

class TestStreamMonitor:

    def test_emits_increments_then_single_finish(self, fast_settings):
        script = [[]] * 4 + [["Hel"], ["Hello"], ["Hello wor"], ["Hello world"]]
        monitor, _, _ = _monitor(script, fast_settings)

        chunks = list(monitor.monitor("div.reply"))

        assert _contents(chunks) == ["Hel", "lo", " wor", "ld"]
        assert sum(1 for c in chunks if SSEFormatter.is_finish(c)) == 1
        assert SSEFormatter.is_finish(chunks[-1])
        assert monitor.final_text == "Hello world"

    def test_pre_existing_turns_are_not_repeated(self, fast_settings):
        old = "old answer"
        script = [[old]] * 4 + [[old, "new"], [old, "new answer"]]
        monitor, _, _ = _monitor(script, fast_settings)

        chunks = list(monitor.monitor("div.reply"))

        assert "".join(_contents(chunks)) == "new answer"

    def test_user_turn_in_reply_region_is_not_echoed(self, fast_settings):
        prior = ["earlier answer"]
        script = ([prior] * 2 + [prior + ["user: hi"]] * 4
                  + [prior + ["user: hi", "Hel"], prior + ["user: hi", "Hello"]])
        monitor, _, _ = _monitor(script, fast_settings)
        monitor.capture_baseline("div.reply")

        chunks = list(monitor.monitor("div.reply"))

        assert _contents(chunks) == ["Hel", "lo"]
        assert monitor.ctx.user_baseline.text == "user: hi"

    def test_fast_reply_two_new_groups(self, fast_settings):
        prior = ["earlier answer"]
        script = [prior, prior + ["user: hi", "Hi"], prior + ["user: hi", "Hi there"]]
        monitor, _, _ = _monitor(script, fast_settings)
        monitor.capture_baseline("div.reply")

        chunks = list(monitor.monitor("div.reply"))

        assert "".join(_contents(chunks)) == "Hi there"
        assert monitor.ctx.active_turn_baseline_len == 0

    def test_concatenation_equals_final_snapshot(self, fast_settings):
        texts = ["a" * n for n in range(1, 30, 3)]
        script = [[]] * 4 + [[t] for t in texts]
        monitor, _, _ = _monitor(script, fast_settings)

        chunks = list(monitor.monitor("div.reply"))

        assert "".join(_contents(chunks)) == texts[-1]

    def test_cancellation_stops_output(self, fast_settings):
        token = CancellationToken()
        texts = ["x" * n for n in range(1, 200)]
        script = [[]] * 4 + [[t] for t in texts]

        def cancel_at(calls):
            if calls == 8:
                token.cancel("superseded")

        monitor, extractor, _ = _monitor(script, fast_settings, token=token, on_call=cancel_at)
        chunks = list(monitor.monitor("div.reply"))

        content = "".join(_contents(chunks))
        assert len(content) < len(texts[-1])
        assert sum(1 for c in chunks if SSEFormatter.is_finish(c)) == 1
        assert SSEFormatter.is_finish(chunks[-1])
        assert extractor.calls <= 9

    def test_hard_timeout_reports_error_then_finish(self, fast_settings):
        fast_settings.hard_timeout = 0.05

        class GrowingExtractor(ScriptedExtractor):
            def extract_all(self, finder, selector, timeout=0.5):
                self.calls += 1
                return [] if self.calls <= 4 else ["y" * self.calls]

        monitor = StreamMonitor(ElementFinder(FakeTab()), SSEFormatter(), CancellationToken(),
                                extractor=GrowingExtractor([[]]), settings=fast_settings)

        chunks = list(monitor.monitor("div.reply"))

        errors = _errors(chunks)
        assert len(errors) == 1
        assert errors[0]["type"] == "timeout_error"
        assert errors[0]["code"] == "stream_timeout"
        assert SSEFormatter.is_finish(chunks[-1])

    def test_no_reply_finishes_after_initial_wait(self, fast_settings):
        monitor, _, _ = _monitor([[]], fast_settings)

        chunks = list(monitor.monitor("div.reply"))

        assert _contents(chunks) == []
        assert len(chunks) == 1 and SSEFormatter.is_finish(chunks[0])

    def test_read_failure_is_treated_as_empty(self, fast_settings):
        class BrokenExtractor(ScriptedExtractor):
            def extract_all(self, finder, selector, timeout=0.5):
                raise RuntimeError("DOM detached")

        monitor = StreamMonitor(ElementFinder(FakeTab()), SSEFormatter(), CancellationToken(),
                                extractor=BrokenExtractor([[]]), settings=fast_settings)

        assert monitor.snapshot("div.reply") == Snapshot()
        assert SSEFormatter.is_finish(list(monitor.monitor("div.reply"))[-1])

    def test_capture_baseline_before_monitoring(self, fast_settings):
        monitor, extractor, _ = _monitor([["previous"]], fast_settings)

        snap = monitor.capture_baseline("div.reply")

        assert snap.groups_count == 1
        assert snap.text_len == len("previous")
        assert monitor.ctx.instant_baseline is snap


# ================= GeneratingStatusCache =================

def test_generating_indicator_detected_and_cached():
    stop_btn = FakeElement(displayed=True)
    tab = FakeTab(elements={".stop-generating": stop_btn})
    cache = GeneratingStatusCache(ElementFinder(tab), check_interval=10)

    assert cache.is_generating() is True

    # 缓存期内不重新查询
    tab.elements.clear()
    assert cache.is_generating() is True


def test_custom_indicator_selector():
    tab = FakeTab(elements={"div.thinking": FakeElement()})
    cache = GeneratingStatusCache(ElementFinder(tab), custom_selector="div.thinking", check_interval=0)
    assert cache.is_generating() is True

    tab.elements.clear()
    assert cache.is_generating() is False
