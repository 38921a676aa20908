"""
data_models.py - 数据结构定义

- 站点配置 / 工作流步骤（TypedDict，来自 sites.json）
- HTTP 请求/响应模型（pydantic）
"""

from typing import Any, Dict, List, Optional, TypedDict

from pydantic import BaseModel, Field


# ================= 站点配置 =================

class WorkflowStep(TypedDict, total=False):
    action: str            # WAIT / KEY_PRESS / CLICK / FILL_INPUT / STREAM_WAIT
    target: str            # selectors 中的键名，KEY_PRESS 时为按键名
    value: Optional[str]
    optional: bool


class StreamConfig(TypedDict, total=False):
    """站点级流式监听参数覆盖（键名与 StreamSettings 字段一致）"""
    silence_threshold: float
    stable_count_threshold: int
    hard_timeout: float
    initial_wait: float
    shrink_tolerance: int
    user_msg_wait: float


class SiteConfig(TypedDict, total=False):
    url: str
    selectors: Dict[str, Any]
    workflow: List[WorkflowStep]
    stealth: bool
    extractor_id: str
    stream_config: StreamConfig


# ================= API 模型 =================

class ChatMessage(BaseModel):
    role: str = Field(default="user")
    content: Any = Field(default="")


class ChatCompletionRequest(BaseModel):
    model: str = Field(default="web-browser")
    messages: List[ChatMessage] = Field(...)
    stream: Optional[bool] = Field(default=True)
    temperature: Optional[float] = Field(default=0.7, ge=0, le=2)
    max_tokens: Optional[int] = Field(default=None, ge=1)
    # 同一 session_id 的请求优先复用同一个标签页
    session_id: Optional[str] = Field(default=None)

    def plain_messages(self) -> List[Dict[str, Any]]:
        return [{"role": m.role, "content": m.content} for m in self.messages]


class ModelInfo(BaseModel):
    id: str
    object: str = "model"
    created: int
    owned_by: str = "universal-web-api"


class ModelsResponse(BaseModel):
    object: str = "list"
    data: List[ModelInfo]
