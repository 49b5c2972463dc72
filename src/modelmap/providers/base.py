"""模型 Provider 抽象

核心只依赖 ModelProvider 协议，具体的 HTTP 客户端由调用方提供。
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from modelmap.tools.base import ToolCall, ToolDefinition, ToolResult

if TYPE_CHECKING:
    from modelmap.model_map.schema import ModelDefinition


@dataclass
class ChatMessage:
    """对话消息"""

    role: str
    """角色：user / assistant"""
    content: str = ""
    """文本内容"""
    tool_calls: list[ToolCall] = field(default_factory=list)
    """assistant 消息中的工具调用"""
    tool_results: list[ToolResult] = field(default_factory=list)
    """user 消息中回传的工具结果"""


@dataclass
class ChatResponse:
    """模型响应"""

    content: str = ""
    """完整文本内容"""
    tool_calls: list[ToolCall] = field(default_factory=list)
    """请求的工具调用"""
    stop_reason: str | None = None
    """停止原因"""


TextCallback = Callable[[str], Awaitable[None]]
"""流式文本回调（异步，按到达顺序逐段调用）"""


@runtime_checkable
class ModelProvider(Protocol):
    """模型 Provider 协议

    必须支持不带工具列表（None 或空列表）的调用。
    """

    async def stream_chat(
        self,
        messages: list[ChatMessage],
        tools: list[ToolDefinition] | None = None,
        on_text: TextCallback | None = None,
    ) -> ChatResponse:
        """流式对话，文本增量通过 on_text 回调"""
        ...

    async def chat(self, messages: list[ChatMessage]) -> ChatResponse:
        """非流式对话"""
        ...


ProviderFactory = Callable[[str, "ModelDefinition"], ModelProvider]
"""Provider 工厂：(模型名, 模型定义) -> ModelProvider"""
