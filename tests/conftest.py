# tests/conftest.py
import os
import sys
from types import SimpleNamespace

import pytest

# Project modules live at the repository root
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core_config import BrowserConstants  # noqa: E402
from extractors import BaseExtractor  # noqa: E402
from stream_monitor import StreamSettings  # noqa: E402
from workflow_executor import IS_RICH_EDITOR_JS, READ_INPUT_JS  # noqa: E402


# ================= Fake DrissionPage objects =================

class FakeElement:
    def __init__(self, text="", html=None, attrs=None, displayed=True,
                 rich=False, input_filter=None, click_error=None):
        self.text = text
        self.html = html if html is not None else f"<div>{text}</div>"
        self.value = ""
        self.inputs = []
        self.clicks = 0
        self.read_count = 0
        self.rich = rich
        self.input_filter = input_filter
        self.click_error = click_error
        self._attrs = attrs or {}
        self.states = SimpleNamespace(is_displayed=displayed)
        self.rect = SimpleNamespace(location=(0, 0))

    def attr(self, name):
        return self._attrs.get(name)

    def input(self, text, **kwargs):
        self.inputs.append(text)
        if self.input_filter is not None:
            text = self.input_filter(self, text)
        self.value += text

    def clear(self, **kwargs):
        self.value = ""

    def focus(self):
        pass

    def click(self, **kwargs):
        if self.click_error is not None:
            raise self.click_error
        self.clicks += 1

    def run_js(self, script, *args):
        if script == READ_INPUT_JS:
            self.read_count += 1
            return self.value
        if script == IS_RICH_EDITOR_JS:
            return self.rich
        return None


class FakeActions:
    def __init__(self, tab):
        self.tab = tab
        self.log = []

    def key_down(self, key):
        self.log.append(("down", key))
        target = self.tab.input_element
        if key == "Backspace" and target is not None and target.value:
            target.value = target.value[:-1]
        return self

    def key_up(self, key):
        self.log.append(("up", key))
        return self

    def move_to(self, ele):
        self.log.append(("move", ele))
        return self

    def pressed(self, key):
        return ("down", key) in self.log


class FakeTab:
    """elements: selector -> element；scripts: selector -> 每次 eles() 调用依次返回的列表"""

    def __init__(self, url="https://chat.example.com/c/1", title="Chat",
                 elements=None, scripts=None):
        self.url = url
        self.title = title
        self.elements = elements or {}
        self.scripts = {k: list(v) for k, v in (scripts or {}).items()}
        self.eles_calls = {}
        self.actions = FakeActions(self)
        self.input_element = None
        self.closed = False
        self.cookie_jar = []
        self.visited = []
        self.set = SimpleNamespace(cookies=self._set_cookies)

    @staticmethod
    def _key(locator):
        return locator[4:] if locator.startswith("css:") else locator

    def ele(self, locator, timeout=None):
        return self.elements.get(self._key(locator))

    def eles(self, locator, timeout=None):
        key = self._key(locator)
        if key in self.scripts:
            calls = self.eles_calls.get(key, 0)
            self.eles_calls[key] = calls + 1
            script = self.scripts[key]
            return list(script[min(calls, len(script) - 1)])
        ele = self.elements.get(key)
        return [ele] if ele else []

    def cookies(self):
        return list(self.cookie_jar)

    def _set_cookies(self, cookies):
        self.cookie_jar = list(cookies)

    def get(self, url):
        self.visited.append(url)
        self.url = url

    def close(self):
        self.closed = True


class FakePage:
    def __init__(self, tab=None):
        self.latest_tab = tab or FakeTab()
        self.opened = []

    def new_tab(self, url=None):
        tab = FakeTab(url=url or "about:blank")
        self.opened.append(tab)
        return tab


class ScriptedExtractor(BaseExtractor):
    """按调用次数依次返回预设的消息组（用完后重复最后一个）"""

    extractor_id = "scripted"

    def __init__(self, script, on_call=None):
        self.script = list(script)
        self.calls = 0
        self.on_call = on_call

    def read(self, element):
        return str(element)

    def extract_all(self, finder, selector, timeout=0.5):
        index = min(self.calls, len(self.script) - 1)
        self.calls += 1
        if self.on_call is not None:
            self.on_call(self.calls)
        return [t for t in self.script[index] if t]


# ================= fixtures =================

@pytest.fixture(autouse=True)
def reset_constants():
    yield
    BrowserConstants.clear_overrides()


@pytest.fixture
def fast_settings():
    return StreamSettings(
        check_interval_min=0.001,
        check_interval_max=0.005,
        check_interval_default=0.001,
        silence_threshold=0.05,
        stable_count_threshold=2,
        hard_timeout=5,
        initial_wait=0.05,
        shrink_tolerance=3,
        user_msg_wait=1.0,
        user_msg_poll=0.001,
        user_msg_stable_polls=2,
        pre_baseline_delay=0,
        generating_check_interval=0.5,
    )


@pytest.fixture
def fast_stream_config():
    """site-level stream_config with tiny timings"""
    return {
        "check_interval_min": 0.001,
        "check_interval_max": 0.005,
        "check_interval_default": 0.001,
        "silence_threshold": 0.05,
        "stable_count_threshold": 2,
        "hard_timeout": 5,
        "initial_wait": 0.05,
        "user_msg_wait": 1.0,
        "user_msg_poll": 0.001,
        "user_msg_stable_polls": 2,
        "pre_baseline_delay": 0,
    }


@pytest.fixture
def fast_input():
    BrowserConstants.override(
        STEALTH_DELAY_MIN=0, STEALTH_DELAY_MAX=0,
        ACTION_DELAY_MIN=0, ACTION_DELAY_MAX=0,
        FALLBACK_ELEMENT_TIMEOUT=0, DEFAULT_ELEMENT_TIMEOUT=0,
        INPUT_CHUNK_PAUSE=0,
    )
