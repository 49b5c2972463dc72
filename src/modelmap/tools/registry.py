"""工具注册表

管理工具的注册、查找、定义生成和执行。
"""

from typing import Protocol, runtime_checkable

from loguru import logger

from .base import Tool, ToolCall, ToolDefinition, ToolResult


@runtime_checkable
class ToolRegistry(Protocol):
    """工具注册表协议

    流水线执行器只依赖此协议：获取工具定义、执行工具调用。
    """

    def get_definitions(self) -> list[ToolDefinition]:
        """返回所有可用工具的定义"""
        ...

    async def execute(self, tool_call: ToolCall) -> ToolResult:
        """执行一次工具调用"""
        ...


class InMemoryToolRegistry:
    """内存工具注册表

    管理工具的注册和查找，支持动态添加工具。
    """

    def __init__(self, tools: list[Tool] | None = None):
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> "InMemoryToolRegistry":
        """注册工具

        Args:
            tool: 工具实例

        Returns:
            self（支持链式调用）
        """
        self._tools[tool.name] = tool
        return self

    def unregister(self, name: str) -> bool:
        """注销工具

        Args:
            name: 工具名称

        Returns:
            是否成功注销
        """
        if name in self._tools:
            del self._tools[name]
            return True
        return False

    def get(self, name: str) -> Tool | None:
        """获取工具，不存在返回 None"""
        return self._tools.get(name)

    def list_names(self) -> list[str]:
        """列出所有工具名称"""
        return list(self._tools.keys())

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def get_definitions(self) -> list[ToolDefinition]:
        """生成所有工具的定义"""
        return [tool.definition for tool in self._tools.values()]

    async def execute(self, tool_call: ToolCall) -> ToolResult:
        """执行工具调用

        未注册的工具返回错误结果（回传给模型），工具自身抛出的异常向上传播。

        Args:
            tool_call: 工具调用

        Returns:
            ToolResult: 执行结果
        """
        tool = self._tools.get(tool_call.name)
        if tool is None:
            logger.warning(f"工具不存在: {tool_call.name}")
            return ToolResult(
                tool_use_id=tool_call.id,
                content=f"Unknown tool: {tool_call.name}",
                is_error=True,
            )
        return await tool.execute(tool_call)
