"""
config_engine.py - 站点配置引擎

职责：
- 站点配置加载/保存（sites.json）
- 配置文件热更新（按 mtime 检测）与快照
- 未知站点使用通用回退配置
"""

import os
import copy
import json
import tempfile
import threading
from typing import Dict, List, Optional

from core_config import get_logger
from data_models import SiteConfig, WorkflowStep
from extractors import DEFAULT_EXTRACTOR_ID


logger = get_logger('config_engine')


# ================= 常量配置 =================

class ConfigConstants:
    """站点配置常量"""
    CONFIG_FILE = os.getenv("SITES_CONFIG_FILE", "sites.json")

    # 隐身模式站点
    STEALTH_DOMAINS = ['lmarena.ai', 'poe.com', 'you.com', 'chatgpt.com']


# 未知站点使用的工作流
# STREAM_WAIT 读取 result_container；generating_indicator 仅在站点配置中提供
DEFAULT_WORKFLOW: List[WorkflowStep] = [
    {"action": "CLICK", "target": "new_chat_btn", "optional": True, "value": None},
    {"action": "WAIT", "target": "", "optional": False, "value": "0.5"},
    {"action": "FILL_INPUT", "target": "input_box", "optional": False, "value": None},
    {"action": "CLICK", "target": "send_btn", "optional": True, "value": None},
    {"action": "STREAM_WAIT", "target": "result_container", "optional": False, "value": None}
]

# 通用回退选择器
FALLBACK_SELECTORS = {
    "input_box": "textarea",
    "send_btn": "button[type=\"submit\"]",
    "result_container": "div[class*=\"message\"]",
    "new_chat_btn": None,
    "generating_indicator": None,
}


# ================= 配置引擎 =================

class ConfigEngine:
    """站点配置存储

    sites.json 是唯一的真实来源；内存中的 sites 只是它的缓存，
    每次查询前按 mtime 判断是否需要重新读取。
    """

    def __init__(self, config_file: str = None):
        self.config_file = config_file or ConfigConstants.CONFIG_FILE
        self.last_mtime: Optional[float] = None
        self._lock = threading.RLock()
        self.sites: Dict[str, SiteConfig] = {}

        if self._file_mtime() is None:
            logger.info(f"{self.config_file} 尚不存在，首次保存时创建")
        else:
            self.reload_config()

        logger.info(f"站点配置就绪: {len(self.sites)} 个站点")

    # ================= 文件读写 =================

    def _file_mtime(self) -> Optional[float]:
        try:
            return os.path.getmtime(self.config_file)
        except OSError:
            return None

    def _read_file(self) -> Dict[str, SiteConfig]:
        with open(self.config_file, "r", encoding="utf-8") as f:
            content = f.read().strip()
        if not content:
            return {}
        data = json.loads(content)
        if not isinstance(data, dict):
            raise ValueError("配置文件顶层必须是对象")
        return data

    def _write_file(self):
        """先写临时文件再替换，读方不会看到写了一半的 JSON"""
        directory = os.path.dirname(os.path.abspath(self.config_file))
        fd, tmp_path = tempfile.mkstemp(prefix=".sites-", suffix=".json", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self.sites, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.config_file)
        except OSError:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def refresh_if_changed(self):
        """文件 mtime 变化时重载"""
        mtime = self._file_mtime()
        if mtime is not None and mtime != self.last_mtime:
            logger.info(f"sites.json 已变化 (mtime={mtime})，重新读取")
            self.reload_config()

    def reload_config(self):
        """重新读取文件；文件缺失或解析失败时沿用当前配置"""
        mtime = self._file_mtime()
        if mtime is None:
            logger.warning(f"无法重载: {self.config_file} 不存在")
            return

        try:
            data = self._read_file()
        except (OSError, ValueError) as e:
            logger.error(f"sites.json 解析失败，继续使用旧配置: {e}")
            # 记下这次的 mtime，文件不再变化就不重复报错
            self.last_mtime = mtime
            return

        with self._lock:
            self.sites = data
            self.last_mtime = mtime
        logger.info(f"已读取 {self.config_file} ({len(data)} 个站点)")

    def _persist(self):
        try:
            self._write_file()
        except OSError as e:
            logger.error(f"写入 {self.config_file} 失败: {e}")
            return
        # 自己写入造成的 mtime 变化不触发重载
        self.last_mtime = self._file_mtime()
        logger.debug(f"站点配置已写入 {self.config_file}")

    # ================= 查询 =================

    def _with_defaults(self, domain: str, config: SiteConfig) -> SiteConfig:
        snapshot = copy.deepcopy(config)
        snapshot.setdefault("selectors", {})
        snapshot.setdefault("workflow", copy.deepcopy(DEFAULT_WORKFLOW))
        snapshot.setdefault("stealth", self._guess_stealth(domain))
        snapshot.setdefault("extractor_id", DEFAULT_EXTRACTOR_ID)
        snapshot.setdefault("stream_config", {})
        return snapshot

    def get_site_config(self, domain: str) -> Optional[SiteConfig]:
        """
        获取站点配置

        Returns:
            配置快照（深拷贝），执行期间不受外部修改影响；
            domain 为空时返回 None
        """
        if not domain:
            return None

        self.refresh_if_changed()

        with self._lock:
            if domain not in self.sites:
                logger.warning(f"{domain} 没有专属配置，使用通用回退配置")
                self.sites[domain] = {
                    "selectors": dict(FALLBACK_SELECTORS),
                    "workflow": copy.deepcopy(DEFAULT_WORKFLOW),
                    "stealth": self._guess_stealth(domain),
                }
                self._persist()

            return self._with_defaults(domain, self.sites[domain])

    def list_sites(self) -> List[str]:
        self.refresh_if_changed()
        with self._lock:
            return sorted(self.sites)

    def save_site_config(self, domain: str, config: SiteConfig):
        with self._lock:
            self.sites[domain] = copy.deepcopy(config)
            self._persist()
        logger.info(f"站点配置已更新: {domain}")

    def _guess_stealth(self, domain: str) -> bool:
        stealth = any(d in domain for d in ConfigConstants.STEALTH_DOMAINS)
        if stealth:
            logger.debug(f"{domain} 默认启用隐身模式")
        return stealth

    def delete_site_config(self, domain: str) -> bool:
        self.refresh_if_changed()

        with self._lock:
            if self.sites.pop(domain, None) is None:
                return False
            self._persist()

        logger.info(f"站点配置已删除: {domain}")
        return True
