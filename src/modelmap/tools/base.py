"""工具抽象基类

定义统一的工具接口，以及工具定义、调用和结果的数据结构。
"""

import inspect
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class ToolDefinition:
    """工具定义（提供给模型的函数描述）"""

    name: str
    """工具名称"""
    description: str
    """工具描述，供 LLM 理解工具用途"""
    input_schema: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    """JSON Schema 格式的参数定义"""
    requires_confirmation: bool = False
    """是否为破坏性工具（执行前需要用户确认）"""

    def to_dict(self) -> dict[str, Any]:
        """转换为字典格式（供 provider 序列化使用）"""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


@dataclass
class ToolCall:
    """模型发起的工具调用"""

    id: str
    """调用 ID（用于关联结果）"""
    name: str
    """工具名称"""
    input: dict[str, Any] = field(default_factory=dict)
    """工具参数"""


@dataclass
class ToolResult:
    """工具执行结果"""

    tool_use_id: str
    """对应的调用 ID"""
    content: str
    """结果内容（回传给模型的文本）"""
    is_error: bool = False
    """是否为错误结果"""


class Tool(ABC):
    """工具抽象基类

    所有工具必须继承此类并实现 _run 方法。
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """工具名称（英文，无特殊字符）"""
        ...

    @property
    @abstractmethod
    def description(self) -> str:
        """工具描述"""
        ...

    @property
    def parameters(self) -> dict[str, Any]:
        """JSON Schema 格式的参数定义"""
        return {"type": "object", "properties": {}}

    @property
    def requires_confirmation(self) -> bool:
        """是否需要用户确认（写文件、执行命令等）"""
        return False

    @property
    def definition(self) -> ToolDefinition:
        """生成工具定义"""
        return ToolDefinition(
            name=self.name,
            description=self.description,
            input_schema=self.parameters,
            requires_confirmation=self.requires_confirmation,
        )

    async def execute(self, call: ToolCall) -> ToolResult:
        """执行工具

        工具内部异常不在此捕获，由调用方（流水线步骤）决定如何处理。

        Args:
            call: 工具调用

        Returns:
            ToolResult: 执行结果
        """
        output = await self._run(**call.input)
        return ToolResult(tool_use_id=call.id, content=_to_text(output))

    @abstractmethod
    async def _run(self, **kwargs: Any) -> Any:
        """实际执行逻辑（子类实现）"""
        ...


class FunctionTool(Tool):
    """基于函数的工具

    简化工具创建，允许直接传入同步或异步函数。
    """

    def __init__(
        self,
        name: str,
        description: str,
        func: Callable[..., Awaitable[Any] | Any],
        parameters: dict[str, Any] | None = None,
        requires_confirmation: bool = False,
    ):
        self._name = name
        self._description = description
        self._func = func
        self._parameters = parameters or {"type": "object", "properties": {}}
        self._requires_confirmation = requires_confirmation

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description

    @property
    def parameters(self) -> dict[str, Any]:
        return self._parameters

    @property
    def requires_confirmation(self) -> bool:
        return self._requires_confirmation

    async def _run(self, **kwargs: Any) -> Any:
        result = self._func(**kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result


def _to_text(output: Any) -> str:
    """将工具输出转换为文本"""
    if output is None:
        return ""
    if isinstance(output, str):
        return output
    return str(output)
