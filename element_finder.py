"""
element_finder.py - 元素定位

职责：
- 把逻辑目标名（input_box / send_btn / result_container ...）解析为页面元素
- 主选择器失败时按回退列表依次尝试
- 找不到时返回 None，由调用方决定是否致命
"""

import time
import hashlib
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from core_config import BrowserConstants, get_logger


logger = get_logger('browser.element')


# DrissionPage 定位语法前缀，其余按 CSS 处理
_LOCATOR_PREFIXES = ('tag:', '@', 'xpath:', 'css:', 'text:', 'x:', 'c:', 't:')


def to_locator(selector: str) -> str:
    if selector.startswith(_LOCATOR_PREFIXES) or '@@' in selector:
        return selector
    return f'css:{selector}'


# ================= 缓存元素 =================

@dataclass
class CachedElement:
    element: Any
    selector: str
    cached_at: float
    identity: str

    def is_stale(self, max_age: float = None) -> bool:
        max_age = max_age or BrowserConstants.get('ELEMENT_CACHE_MAX_AGE')
        return time.time() - self.cached_at > max_age


# ================= 元素查找器 =================

class ElementFinder:
    """元素查找器"""

    FALLBACK_SELECTORS: Dict[str, List[str]] = {
        "input_box": [
            'tag:textarea',
            'css:textarea[name="message"]',
            'css:textarea[placeholder]',
            'css:div[contenteditable="true"]',
            'css:[contenteditable="true"]',
        ],
        "send_btn": [
            'css:button[type="submit"]',
            'css:form button[type="submit"]',
            'css:[role="button"][type="submit"]',
        ],
        "result_container": [
            'css:div[class*="message"]',
            'css:div[class*="response"]',
            'css:div[class*="answer"]',
        ],
    }

    def __init__(self, tab, extra_fallbacks: Dict[str, List[str]] = None):
        self.tab = tab
        self._cache: Dict[str, CachedElement] = {}
        self._fallbacks: Dict[str, List[str]] = {
            key: list(values) for key, values in self.FALLBACK_SELECTORS.items()
        }
        for key, values in (extra_fallbacks or {}).items():
            if isinstance(values, str):
                values = [values]
            # 站点自定义回退优先于内置回退
            self._fallbacks[key] = list(values) + self._fallbacks.get(key, [])

    # ---------- 缓存 ----------

    def _element_identity(self, ele) -> str:
        parts = []
        for attr in ('id', 'data-testid', 'data-message-id'):
            try:
                val = ele.attr(attr)
            except Exception:
                val = None
            if val:
                parts.append(f"{attr}={val}")

        try:
            rect = ele.rect
            location = getattr(rect, 'location', None)
            if location:
                parts.append(f"pos={location[0]},{location[1]}")
        except Exception:
            pass

        if not parts:
            return ""
        return hashlib.md5("|".join(parts).encode()).hexdigest()[:8]

    def _cache_valid(self, cached: CachedElement) -> bool:
        if cached.is_stale():
            return False
        try:
            if not cached.element.states.is_displayed:
                return False
        except Exception:
            return False
        identity = self._element_identity(cached.element)
        return not (identity and cached.identity and identity != cached.identity)

    def invalidate_cache(self, selector: str = None):
        if selector:
            self._cache.pop(selector, None)
        else:
            self._cache.clear()

    # ---------- 查找 ----------

    def find(self, selector: str, timeout: float = None,
             use_cache: bool = False) -> Optional[Any]:
        if not selector:
            return None

        if timeout is None:
            timeout = BrowserConstants.get('DEFAULT_ELEMENT_TIMEOUT')

        if use_cache and selector in self._cache:
            cached = self._cache[selector]
            if self._cache_valid(cached):
                return cached.element
            del self._cache[selector]

        try:
            ele = self.tab.ele(to_locator(selector), timeout=timeout)
        except Exception as e:
            logger.debug(f"元素查找失败 [{selector}]: {e}")
            return None

        if not ele:
            return None

        if use_cache:
            self._cache[selector] = CachedElement(
                element=ele,
                selector=selector,
                cached_at=time.time(),
                identity=self._element_identity(ele)
            )
        return ele

    def find_all(self, selector: str, timeout: float = None) -> List[Any]:
        if not selector:
            return []

        if timeout is None:
            timeout = BrowserConstants.get('DEFAULT_ELEMENT_TIMEOUT')

        try:
            eles = self.tab.eles(to_locator(selector), timeout=timeout)
        except Exception as e:
            logger.debug(f"元素批量查找失败 [{selector}]: {e}")
            return []
        return list(eles) if eles else []

    def find_with_fallback(self, primary_selector: str, target_key: str,
                           timeout: float = None) -> Optional[Any]:
        if primary_selector:
            ele = self.find(primary_selector, timeout, use_cache=True)
            if ele:
                return ele

        fallback_list = self._fallbacks.get(target_key, [])
        if not fallback_list:
            return None

        logger.debug(f"主选择器失败，尝试回退: {target_key}")

        fallback_timeout = BrowserConstants.get('FALLBACK_ELEMENT_TIMEOUT')
        for fb_selector in fallback_list:
            if fb_selector == primary_selector:
                continue
            ele = self.find(fb_selector, fallback_timeout)
            if ele:
                logger.debug(f"回退选择器成功: {fb_selector}")
                return ele

        return None
