"""流水线执行

- executor: 顺序执行步骤（含 Agentic 工具循环）
- context: 变量替换与条件判断
- events / callbacks: 进度事件与事件接收器
"""

from .callbacks import (
    CompositeSink,
    EventSink,
    LoggingSink,
    NullSink,
    ToolConfirmer,
    emit_event,
)
from .context import PipelineContext, evaluate_condition, substitute_variables
from .events import PipelineEvent, PipelineEventType
from .executor import PipelineExecutor, PipelineResult, stream_text

__all__ = [
    # Executor
    "PipelineExecutor",
    "PipelineResult",
    "stream_text",
    # Context
    "PipelineContext",
    "substitute_variables",
    "evaluate_condition",
    # Events
    "PipelineEvent",
    "PipelineEventType",
    "EventSink",
    "NullSink",
    "CompositeSink",
    "LoggingSink",
    "ToolConfirmer",
    "emit_event",
]
