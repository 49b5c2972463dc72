"""工具系统"""

from .base import FunctionTool, Tool, ToolCall, ToolDefinition, ToolResult
from .registry import InMemoryToolRegistry, ToolRegistry

__all__ = [
    "Tool",
    "FunctionTool",
    "ToolCall",
    "ToolDefinition",
    "ToolResult",
    "ToolRegistry",
    "InMemoryToolRegistry",
]
