"""事件接收器

定义事件接收协议和基础实现，用于流水线执行过程中的进度通知。
接收器的返回值和异常都不影响控制流；唯一会影响控制流的回调是
工具确认（ToolConfirmer），它是独立的协议。
"""

from collections.abc import Awaitable, Callable
from typing import Any, Protocol, runtime_checkable

from loguru import logger

from modelmap.pipeline.events import PipelineEvent, PipelineEventType
from modelmap.tools.base import ToolCall

ToolConfirmer = Callable[[ToolCall], Awaitable[bool]]
"""破坏性工具确认回调：返回 True 表示允许执行"""


@runtime_checkable
class EventSink(Protocol):
    """事件接收协议"""

    async def on_event(self, event: PipelineEvent) -> None:
        """接收事件通知

        Args:
            event: 流水线事件
        """
        ...


class NullSink:
    """空接收器

    当不需要进度输出时使用，避免 None 检查。
    """

    async def on_event(self, event: PipelineEvent) -> None:
        pass


class CompositeSink:
    """组合接收器

    将多个接收器组合在一起，事件会广播给所有接收器。
    单个接收器失败只记录日志，不影响其他接收器和流水线。
    """

    def __init__(self, sinks: list[EventSink] | None = None):
        self._sinks: list[EventSink] = sinks or []

    def add(self, sink: EventSink) -> None:
        self._sinks.append(sink)

    def remove(self, sink: EventSink) -> None:
        if sink in self._sinks:
            self._sinks.remove(sink)

    async def on_event(self, event: PipelineEvent) -> None:
        """广播事件到所有接收器"""
        for sink in self._sinks:
            try:
                await sink.on_event(event)
            except Exception as e:
                logger.warning(f"事件接收器执行失败: {type(sink).__name__}: {e}")


class LoggingSink:
    """日志接收器

    将事件转换为日志，便于调试。与 loguru 集成。
    STEP_TEXT 事件过于频繁，不记录。
    """

    def __init__(self, level: str = "DEBUG"):
        self._level = level.upper()

    async def on_event(self, event: PipelineEvent) -> None:
        log_func = getattr(logger, self._level.lower(), logger.debug)
        data = event.data

        if event.event_type == PipelineEventType.FILE_START:
            log_func(f"[File] ({data['index'] + 1}/{data['total']}) {data['file']}")

        elif event.event_type == PipelineEventType.FILE_COMPLETE:
            log_func(f"[File] 完成 {data['file']}")

        elif event.event_type == PipelineEventType.STEP_START:
            log_func(f"[Step] {data['step_name']} -> {data['model_name']}")

        elif event.event_type == PipelineEventType.STEP_COMPLETE:
            log_func(f"[Step] {data['step_name']} 完成 ({len(data['output'])} 字符)")

        elif event.event_type == PipelineEventType.TOOL_CALL:
            log_func(f"[ToolCall] {data['tool_name']} | args: {_truncate_dict(data['tool_input'])}")

        elif event.event_type == PipelineEventType.TOOL_RESULT:
            status = "错误" if data.get("is_error") else "完成"
            log_func(f"[ToolCall] {data['tool_name']} {status}")

        elif event.event_type == PipelineEventType.ERROR:
            logger.warning(f"[Step] {data['step_name']} 错误: {data['error']}")

        elif event.event_type == PipelineEventType.BATCH_START:
            log_func(
                f"[Aggregate] 批次 {data['batch_index'] + 1}/{data['total_batches']}"
                f" ({data['files_in_batch']} 个文件)"
            )

        elif event.event_type == PipelineEventType.META_AGGREGATION_START:
            log_func(f"[Aggregate] 合并 {data['batch_count']} 个批次摘要")

        elif event.event_type == PipelineEventType.GROUPING_COMPLETE:
            log_func(f"[Group] 分组完成: {len(data['groups'])} 组")

        elif event.event_type == PipelineEventType.TRIAGE_COMPLETE:
            result = data["result"]
            log_func(
                f"[Triage] 关键 {len(result.critical_paths)}, 常规 {len(result.normal_paths)},"
                f" 快速 {len(result.skip_paths)}"
            )

        elif event.event_type == PipelineEventType.SYMBOLICATION_COMPLETE:
            log_func(f"[Symbols] 符号化完成 ({data['result'].duration_ms:.0f}ms)")


async def emit_event(sink: EventSink | None, event: PipelineEvent) -> None:
    """向接收器发送事件，接收器异常只记录日志"""
    if sink is None:
        return
    try:
        await sink.on_event(event)
    except Exception as e:
        logger.warning(f"事件接收器执行失败: {type(sink).__name__}: {e}")


def _truncate_dict(data: dict[str, Any], max_str_len: int = 80) -> dict[str, Any]:
    """截断字典中的长字符串

    Args:
        data: 原始字典
        max_str_len: 字符串最大长度

    Returns:
        截断后的字典（新对象）
    """
    result = {}
    for key, value in data.items():
        if isinstance(value, str) and len(value) > max_str_len:
            result[key] = value[:max_str_len] + "..."
        elif isinstance(value, dict):
            result[key] = _truncate_dict(value, max_str_len)
        else:
            result[key] = value
    return result
