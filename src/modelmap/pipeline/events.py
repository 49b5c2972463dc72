"""流水线事件系统

定义流水线与迭代策略运行时的事件类型和事件数据结构，
用于进度输出和监控。
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from typing import Any


class PipelineEventType(Enum):
    """流水线事件类型

    覆盖迭代执行的完整生命周期：
    1. 预处理阶段（符号化、分组、分诊）
    2. 文件处理阶段
    3. 步骤执行阶段（含工具调用）
    4. 聚合阶段
    """

    # === 文件阶段 ===
    FILE_START = auto()              # 开始处理文件
    FILE_COMPLETE = auto()           # 文件处理完成

    # === 分组阶段（V2） ===
    GROUPING_START = auto()
    GROUPING_COMPLETE = auto()
    GROUP_START = auto()
    GROUP_COMPLETE = auto()

    # === 分诊阶段（V3/V4） ===
    TRIAGE_START = auto()
    TRIAGE_COMPLETE = auto()

    # === 步骤阶段 ===
    STEP_START = auto()
    STEP_TEXT = auto()               # 流式文本增量
    STEP_COMPLETE = auto()

    # === 聚合阶段 ===
    AGGREGATION_START = auto()
    BATCH_START = auto()
    BATCH_COMPLETE = auto()
    META_AGGREGATION_START = auto()

    # === 工具调用 ===
    TOOL_CALL = auto()
    TOOL_RESULT = auto()

    # === 错误 ===
    ERROR = auto()

    # === 符号化阶段（V4） ===
    SYMBOLICATION_START = auto()
    SYMBOLICATION_PROGRESS = auto()
    SYMBOLICATION_COMPLETE = auto()


@dataclass
class PipelineEvent:
    """流水线事件数据

    所有事件共享此结构，通过 event_type 区分类型，
    通过 data 字段传递特定事件的详细信息。

    事件数据字段说明：

    FILE_START:
        - file: str, index: int, total: int
    FILE_COMPLETE:
        - file: str, output: str
    STEP_START:
        - step_name: str, model_name: str
    STEP_TEXT:
        - step_name: str, text: str
    STEP_COMPLETE:
        - step_name: str, output: str
    BATCH_START:
        - batch_index: int, total_batches: int, files_in_batch: int
    BATCH_COMPLETE:
        - batch_index: int, summary: str
    TOOL_CALL:
        - step_name: str, tool_name: str, tool_input: dict
    TOOL_RESULT:
        - step_name: str, tool_name: str, result: str, is_error: bool
    ERROR:
        - step_name: str, error: str
    """

    event_type: PipelineEventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def step_name(self) -> str | None:
        """快捷获取步骤名称"""
        return self.data.get("step_name")

    @property
    def file(self) -> str | None:
        """快捷获取文件路径"""
        return self.data.get("file")

    def to_dict(self) -> dict[str, Any]:
        """转换为可序列化的字典"""
        return {
            "event_type": self.event_type.name,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


# ==================== 便捷工厂函数 ====================


def step_start_event(step_name: str, model_name: str) -> PipelineEvent:
    return PipelineEvent(
        PipelineEventType.STEP_START,
        {"step_name": step_name, "model_name": model_name},
    )


def step_text_event(step_name: str, text: str) -> PipelineEvent:
    return PipelineEvent(
        PipelineEventType.STEP_TEXT,
        {"step_name": step_name, "text": text},
    )


def step_complete_event(step_name: str, output: str) -> PipelineEvent:
    return PipelineEvent(
        PipelineEventType.STEP_COMPLETE,
        {"step_name": step_name, "output": output},
    )


def error_event(step_name: str, error: Exception | str) -> PipelineEvent:
    return PipelineEvent(
        PipelineEventType.ERROR,
        {"step_name": step_name, "error": str(error)},
    )


def file_start_event(file: str, index: int, total: int) -> PipelineEvent:
    return PipelineEvent(
        PipelineEventType.FILE_START,
        {"file": file, "index": index, "total": total},
    )


def file_complete_event(file: str, output: str) -> PipelineEvent:
    return PipelineEvent(
        PipelineEventType.FILE_COMPLETE,
        {"file": file, "output": output},
    )


def tool_call_event(step_name: str, tool_name: str, tool_input: dict[str, Any]) -> PipelineEvent:
    return PipelineEvent(
        PipelineEventType.TOOL_CALL,
        {"step_name": step_name, "tool_name": tool_name, "tool_input": tool_input},
    )


def tool_result_event(step_name: str, tool_name: str, result: str, is_error: bool = False) -> PipelineEvent:
    return PipelineEvent(
        PipelineEventType.TOOL_RESULT,
        {"step_name": step_name, "tool_name": tool_name, "result": result, "is_error": is_error},
    )


def aggregation_start_event() -> PipelineEvent:
    return PipelineEvent(PipelineEventType.AGGREGATION_START)


def batch_start_event(batch_index: int, total_batches: int, files_in_batch: int) -> PipelineEvent:
    """创建批次聚合开始事件

    Args:
        batch_index: 批次索引（从 0 开始）
        total_batches: 批次总数
        files_in_batch: 本批文件数
    """
    return PipelineEvent(
        PipelineEventType.BATCH_START,
        {
            "batch_index": batch_index,
            "total_batches": total_batches,
            "files_in_batch": files_in_batch,
        },
    )


def batch_complete_event(batch_index: int, summary: str) -> PipelineEvent:
    return PipelineEvent(
        PipelineEventType.BATCH_COMPLETE,
        {"batch_index": batch_index, "summary": summary},
    )


def meta_aggregation_start_event(batch_count: int) -> PipelineEvent:
    return PipelineEvent(
        PipelineEventType.META_AGGREGATION_START,
        {"batch_count": batch_count},
    )


def grouping_start_event(total_files: int) -> PipelineEvent:
    return PipelineEvent(PipelineEventType.GROUPING_START, {"total_files": total_files})


def grouping_complete_event(groups: list) -> PipelineEvent:
    return PipelineEvent(PipelineEventType.GROUPING_COMPLETE, {"groups": groups})


def group_start_event(group: Any, index: int, total: int) -> PipelineEvent:
    return PipelineEvent(
        PipelineEventType.GROUP_START,
        {"group": group, "index": index, "total": total},
    )


def group_complete_event(group: Any, summary: str) -> PipelineEvent:
    return PipelineEvent(
        PipelineEventType.GROUP_COMPLETE,
        {"group": group, "summary": summary},
    )


def triage_start_event(total_files: int) -> PipelineEvent:
    return PipelineEvent(PipelineEventType.TRIAGE_START, {"total_files": total_files})


def triage_complete_event(result: Any) -> PipelineEvent:
    return PipelineEvent(PipelineEventType.TRIAGE_COMPLETE, {"result": result})


def symbolication_start_event(total_files: int) -> PipelineEvent:
    return PipelineEvent(PipelineEventType.SYMBOLICATION_START, {"total_files": total_files})


def symbolication_progress_event(processed: int, total: int, file: str) -> PipelineEvent:
    return PipelineEvent(
        PipelineEventType.SYMBOLICATION_PROGRESS,
        {"processed": processed, "total": total, "file": file},
    )


def symbolication_complete_event(result: Any) -> PipelineEvent:
    return PipelineEvent(PipelineEventType.SYMBOLICATION_COMPLETE, {"result": result})
