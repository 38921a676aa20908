"""
extractors.py - 回复内容提取策略

每个提取器只负责"从一个消息元素读出纯文本"：
- shallow：元素自身的可见文本，最便宜，但可能漏掉拆散在嵌套节点里的内容
- deep：拿元素 HTML，递归遍历文本节点（跳过 script/style），块级元素换行
- hybrid：先 shallow，结果为空再 deep

extract / extract_all 在此基础上处理"消息组"：选择器命中的每个元素为一组，
只保留非空组，extract 返回最后一组。
"""

import re
from typing import Dict, List, Optional

from bs4 import BeautifulSoup, Comment, NavigableString, Tag

from core_config import get_logger


logger = get_logger('browser.extractor')


SKIP_TAGS = {'script', 'style', 'noscript', 'template'}

BLOCK_TAGS = {
    'div', 'p', 'h1', 'h2', 'h3', 'h4', 'h5', 'h6', 'li', 'ul', 'ol', 'tr',
    'table', 'blockquote', 'pre', 'section', 'article', 'header', 'footer',
}


def _collapse_blank_lines(text: str) -> str:
    return re.sub(r'\n{3,}', '\n\n', text).strip()


def html_to_text(html: str) -> str:
    """递归拼接 HTML 中的文本节点"""
    if not html:
        return ""

    soup = BeautifulSoup(html, 'html.parser')
    parts: List[str] = []

    def newline():
        if parts and not parts[-1].endswith('\n'):
            parts.append('\n')

    def walk(node):
        for child in node.children:
            if isinstance(child, Comment):
                continue
            if isinstance(child, NavigableString):
                parts.append(str(child))
                continue
            if not isinstance(child, Tag):
                continue

            name = (child.name or '').lower()
            if name in SKIP_TAGS:
                continue
            if name == 'br':
                parts.append('\n')
                continue

            is_block = name in BLOCK_TAGS
            if is_block:
                newline()
            walk(child)
            if is_block:
                newline()

    walk(soup)
    return _collapse_blank_lines(''.join(parts))


# ================= 提取器 =================

class BaseExtractor:
    extractor_id = "base"
    name = "Base Extractor"

    def read(self, element) -> str:
        raise NotImplementedError

    def extract_all(self, finder, selector: str, timeout: float = 0.5) -> List[str]:
        texts = []
        for ele in finder.find_all(selector, timeout=timeout):
            try:
                text = self.read(ele)
            except Exception as e:
                logger.debug(f"[{self.extractor_id}] 读取元素失败: {e}")
                continue
            if text and text.strip():
                texts.append(text)
        return texts

    def extract(self, finder, selector: str, timeout: float = 0.5) -> Optional[str]:
        texts = self.extract_all(finder, selector, timeout)
        return texts[-1] if texts else None


class ShallowExtractor(BaseExtractor):
    extractor_id = "shallow"
    name = "Shallow Text Extractor"

    def read(self, element) -> str:
        text = getattr(element, 'text', None) or ''
        return str(text).strip()


class DeepExtractor(BaseExtractor):
    extractor_id = "deep"
    name = "Deep Text Extractor"

    def read(self, element) -> str:
        html = getattr(element, 'html', None) or ''
        return html_to_text(str(html))


class HybridExtractor(BaseExtractor):
    extractor_id = "hybrid"
    name = "Hybrid Extractor"

    def __init__(self):
        self._shallow = ShallowExtractor()
        self._deep = DeepExtractor()

    def read(self, element) -> str:
        try:
            text = self._shallow.read(element)
        except Exception:
            text = ''
        if text:
            return text
        return self._deep.read(element)


# ================= 注册表 =================

DEFAULT_EXTRACTOR_ID = "deep"

_ALIASES = {
    "dom_mode": "shallow",
    "deep_mode": "deep",
    "hybrid_mode": "hybrid",
}

EXTRACTORS: Dict[str, BaseExtractor] = {
    e.extractor_id: e for e in (ShallowExtractor(), DeepExtractor(), HybridExtractor())
}


def get_extractor(extractor_id: Optional[str] = None) -> BaseExtractor:
    """按 id 获取提取器，未知 id 回退为默认提取器"""
    if not extractor_id:
        return EXTRACTORS[DEFAULT_EXTRACTOR_ID]

    key = _ALIASES.get(extractor_id, extractor_id)
    extractor = EXTRACTORS.get(key)
    if extractor is None:
        logger.warning(f"未知提取器 {extractor_id}，使用默认 {DEFAULT_EXTRACTOR_ID}")
        return EXTRACTORS[DEFAULT_EXTRACTOR_ID]
    return extractor


def list_extractors() -> List[Dict[str, str]]:
    return [{"id": e.extractor_id, "name": e.name} for e in EXTRACTORS.values()]
