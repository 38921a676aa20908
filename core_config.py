"""
core_config.py - 引擎公共基础设施

职责：
- 浏览器/流式监控常量（可由 JSON 文件覆盖，支持热重载）
- 安全日志封装
- 异常体系（每类异常自带 error_type / code，用于 SSE 错误单元）
- SSE 格式化器
- 消息验证器
"""

import os
import json
import time
import uuid
import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional


# ================= 常量配置 =================

class BrowserConstants:
    """浏览器相关常量（默认值 + 文件覆盖）"""

    _config: Optional[Dict[str, Any]] = None
    _overrides: Dict[str, Any] = {}
    _config_file = Path(os.getenv("BROWSER_CONFIG_FILE", "browser_config.json"))
    _lock = threading.Lock()

    _DEFAULTS = {
        # 连接
        'DEFAULT_PORT': 9222,
        'CONNECTION_TIMEOUT': 10,

        # 隐身延迟
        'STEALTH_DELAY_MIN': 0.1,
        'STEALTH_DELAY_MAX': 0.3,
        'ACTION_DELAY_MIN': 0.15,
        'ACTION_DELAY_MAX': 0.3,

        # 元素查找
        'DEFAULT_ELEMENT_TIMEOUT': 3,
        'FALLBACK_ELEMENT_TIMEOUT': 1,
        'ELEMENT_CACHE_MAX_AGE': 5.0,

        # 流式监控
        'STREAM_CHECK_INTERVAL_MIN': 0.1,
        'STREAM_CHECK_INTERVAL_MAX': 1.0,
        'STREAM_CHECK_INTERVAL_DEFAULT': 0.3,
        'STREAM_SILENCE_THRESHOLD': 6.0,
        'STREAM_STABLE_COUNT_THRESHOLD': 5,
        'STREAM_MAX_TIMEOUT': 600,
        'STREAM_INITIAL_WAIT': 180,
        'STREAM_CONTENT_SHRINK_TOLERANCE': 3,
        'STREAM_USER_MSG_WAIT': 1.5,
        'STREAM_USER_MSG_POLL': 0.3,
        'STREAM_USER_MSG_STABLE_POLLS': 5,
        'STREAM_PRE_BASELINE_DELAY': 0.3,
        'STREAM_GENERATING_CHECK_INTERVAL': 0.5,

        # 输入
        'INPUT_CHUNK_SIZE': 30000,
        'INPUT_CHUNK_PAUSE': 0.08,
        'INPUT_VERIFY_ATTEMPTS': 3,

        # 输入验证
        'MAX_MESSAGE_LENGTH': 100000,
        'MAX_MESSAGES_COUNT': 100,

        # 请求管理
        'REQUEST_ACQUIRE_TIMEOUT': 60.0,
        'REQUEST_POLL_INTERVAL': 0.1,
        'REQUEST_HISTORY_MAX': 100,

        # 浏览器实例池
        'POOL_MAX_INSTANCES': 1,
        'POOL_MIN_INSTANCES': 0,
        'POOL_IDLE_TIMEOUT': 300,
        'POOL_ACQUIRE_TIMEOUT': 60,
        'POOL_SWEEP_INTERVAL': 60,

        # 标签页
        'TAB_MAX_TABS': 5,
        'TAB_MIN_TABS': 1,
        'TAB_IDLE_TIMEOUT': 1800,
        'TAB_ACQUIRE_TIMEOUT': 60,
    }

    @classmethod
    def _load_config(cls):
        """从文件加载配置，失败时回退为默认值"""
        config = cls._DEFAULTS.copy()
        if cls._config_file.exists():
            try:
                with open(cls._config_file, 'r', encoding='utf-8') as f:
                    data = json.load(f)
                if isinstance(data, dict):
                    config.update(data)
            except (OSError, json.JSONDecodeError) as e:
                logging.getLogger('browser').warning(f"浏览器常量文件读取失败，使用默认值: {e}")
        cls._config = config

    @classmethod
    def get(cls, key: str, default: Any = None) -> Any:
        """获取配置值（优先级：override > 文件 > 默认值）"""
        if key in cls._overrides:
            return cls._overrides[key]

        if cls._config is None:
            with cls._lock:
                if cls._config is None:
                    cls._load_config()

        value = cls._config.get(key, cls._DEFAULTS.get(key))
        return default if value is None else value

    @classmethod
    def get_defaults(cls) -> Dict[str, Any]:
        return cls._DEFAULTS.copy()

    @classmethod
    def reload(cls):
        """重新加载配置（热重载）"""
        with cls._lock:
            cls._config = None
            cls._load_config()

    @classmethod
    def override(cls, **values):
        """进程内覆盖（测试、调试用）"""
        cls._overrides.update(values)

    @classmethod
    def clear_overrides(cls):
        cls._overrides = {}


# ================= 安全日志配置 =================

class SecureLogger:
    """安全日志封装器（默认不输出用户内容原文）"""

    LOG_SENSITIVE = os.environ.get('BROWSER_LOG_SENSITIVE', 'false').lower() == 'true'

    def __init__(self, name: str, level: int = logging.INFO):
        self._logger = self._setup_logger(name, level)

    def _setup_logger(self, name: str, level: int) -> logging.Logger:
        logger = logging.getLogger(name)
        if not logger.handlers and not logging.getLogger().handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '[%(asctime)s] %(levelname)s %(message)s',
                datefmt='%H:%M:%S'
            )
            handler.setFormatter(formatter)
            logger.addHandler(handler)
        if logger.level == logging.NOTSET:
            logger.setLevel(level)
        return logger

    def info(self, msg: str, *args, **kwargs):
        self._logger.info(msg, *args, **kwargs)

    def debug(self, msg: str, *args, **kwargs):
        self._logger.debug(msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs):
        self._logger.warning(msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs):
        self._logger.error(msg, *args, **kwargs)

    def info_sensitive(self, msg: str, content: str = None,
                       max_preview: int = 50, *args, **kwargs):
        if content is None:
            self._logger.info(msg, *args, **kwargs)
            return

        if self.LOG_SENSITIVE:
            preview = content[:max_preview] + "..." if len(content) > max_preview else content
            self._logger.info(f"{msg} | preview='{preview}'", *args, **kwargs)
        else:
            self._logger.info(f"{msg} | len={len(content)}", *args, **kwargs)


def get_logger(name: str) -> SecureLogger:
    return SecureLogger(name)


logger = get_logger('browser')


# ================= 异常定义 =================

class BrowserError(Exception):
    """浏览器相关错误基类"""

    error_type = "execution_error"
    code = "workflow_failed"

    def __init__(self, message: str = "", code: str = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class BrowserConnectionError(BrowserError):
    """浏览器连接错误"""
    error_type = "connection_error"
    code = "browser_disconnected"


class ElementNotFoundError(BrowserError):
    """元素未找到错误"""
    code = "element_not_found"


class InputMismatchError(BrowserError):
    """输入框内容校验多次失败"""
    code = "input_mismatch"


class PageNotReadyError(BrowserError):
    """页面未就绪（空白页 / 错误页）"""
    error_type = "page_not_ready"
    code = "page_not_ready"


class WorkflowError(BrowserError):
    """工作流执行错误"""
    pass


class WorkflowCancelledError(WorkflowError):
    """工作流被取消（不是错误，只用于跳出执行）"""
    code = "cancelled"


class ConfigurationError(BrowserError):
    """配置错误"""
    error_type = "config_error"
    code = "config_error"


class BrowserTimeoutError(BrowserError):
    """超时错误基类"""
    error_type = "timeout_error"
    code = "timeout"


class StreamTimeoutError(BrowserTimeoutError):
    """流式监听达到硬超时"""
    code = "stream_timeout"


class PoolExhaustedError(BrowserTimeoutError):
    """等待空闲实例/标签页超时"""
    code = "pool_exhausted"


# ================= SSE 格式化器 =================

class SSEFormatter:
    """SSE 响应格式化器

    同一个实例对应一次补全，所有 chunk 共用一个 completion id。
    """

    DONE_LINE = "data: [DONE]\n\n"

    _sequence = 0
    _sequence_lock = threading.Lock()

    def __init__(self, model: str = "web-browser"):
        self.model = model
        self.completion_id = self._generate_id()

    @classmethod
    def _generate_id(cls) -> str:
        timestamp = int(time.time() * 1000)
        with cls._sequence_lock:
            cls._sequence += 1
            seq = cls._sequence
        short_uuid = uuid.uuid4().hex[:6]
        return f"chatcmpl-{timestamp}-{seq}-{short_uuid}"

    def _chunk(self, delta: Dict[str, Any], finish_reason: Optional[str]) -> Dict[str, Any]:
        return {
            "id": self.completion_id,
            "object": "chat.completion.chunk",
            "created": int(time.time()),
            "model": self.model,
            "choices": [{
                "index": 0,
                "delta": delta,
                "finish_reason": finish_reason
            }]
        }

    def pack_chunk(self, content: str) -> str:
        data = self._chunk({"content": content}, None)
        return f"data: {json.dumps(data, ensure_ascii=False)}\n\n"

    def pack_finish(self) -> str:
        data = self._chunk({}, "stop")
        return f"data: {json.dumps(data, ensure_ascii=False)}\n\n{self.DONE_LINE}"

    @staticmethod
    def pack_error(message: str, error_type: str = "execution_error",
                   code: str = "workflow_failed") -> str:
        data = SSEFormatter.pack_error_json(message, error_type, code)
        return f"data: {json.dumps(data, ensure_ascii=False)}\n\n"

    @staticmethod
    def pack_exception(exc: BrowserError) -> str:
        return SSEFormatter.pack_error(exc.message or str(exc), exc.error_type, exc.code)

    @staticmethod
    def pack_error_json(message: str, error_type: str = "execution_error",
                        code: str = "workflow_failed") -> Dict:
        return {
            "error": {
                "message": message,
                "type": error_type,
                "code": code
            }
        }

    def pack_non_stream(self, content: str) -> Dict:
        return {
            "id": self.completion_id,
            "object": "chat.completion",
            "created": int(time.time()),
            "model": self.model,
            "choices": [{
                "index": 0,
                "message": {
                    "role": "assistant",
                    "content": content
                },
                "finish_reason": "stop"
            }],
            "usage": {
                "prompt_tokens": 0,
                "completion_tokens": 0,
                "total_tokens": 0
            }
        }

    @classmethod
    def is_finish(cls, chunk: str) -> bool:
        return isinstance(chunk, str) and chunk.endswith(cls.DONE_LINE)

    @staticmethod
    def parse(chunk: str) -> List[Dict[str, Any]]:
        """把一个 SSE 单元解析回 JSON 对象列表（跳过 [DONE]）"""
        events = []
        for line in chunk.split("\n"):
            if not line.startswith("data: "):
                continue
            data_str = line[6:].strip()
            if not data_str or data_str == "[DONE]":
                continue
            try:
                events.append(json.loads(data_str))
            except json.JSONDecodeError:
                continue
        return events


# ================= 消息验证器 =================

class MessageValidator:
    """请求消息校验与清洗"""

    VALID_ROLES = {'user', 'assistant', 'system'}

    @staticmethod
    def content_text(content: Any) -> str:
        """content 可能是字符串，也可能是 OpenAI 的分段列表（只取其中的文本段）"""
        if content is None:
            return ''
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts = []
            for part in content:
                if isinstance(part, str):
                    parts.append(part)
                elif isinstance(part, dict) and part.get('type', 'text') == 'text':
                    parts.append(str(part.get('text') or ''))
            return "\n".join(p for p in parts if p)
        return str(content)

    @classmethod
    def validate(cls, messages: Any) -> tuple:
        """
        Returns:
            (是否通过, 错误信息, 清洗后的消息列表)
        """
        if not messages:
            return False, "messages 不能为空", None
        if not isinstance(messages, list):
            return False, "messages 应该是列表", None

        max_count = BrowserConstants.get('MAX_MESSAGES_COUNT')
        max_length = BrowserConstants.get('MAX_MESSAGE_LENGTH')
        if len(messages) > max_count:
            return False, f"消息数量超过限制 ({max_count})", None

        sanitized = []
        for i, msg in enumerate(messages):
            if not isinstance(msg, dict):
                return False, f"messages[{i}] 不是字典类型", None

            role = msg.get('role') if msg.get('role') in cls.VALID_ROLES else 'user'
            content = cls.content_text(msg.get('content'))
            if len(content) > max_length:
                return False, f"messages[{i}].content 超过长度限制 ({max_length})", None

            sanitized.append({'role': role, 'content': content})

        return True, None, sanitized

    @staticmethod
    def build_prompt(messages: List[Dict[str, str]]) -> str:
        """把对话压平为一段文本"""
        return "\n\n".join(
            f"{m.get('role', 'user')}: {m.get('content', '')}"
            for m in messages
        )
