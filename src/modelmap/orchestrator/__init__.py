"""迭代编排：分组、分诊、并发处理与结果聚合

- iterative: V1-V4 迭代执行策略
- grouping: 文件分组（目录层级 / AI 分类 / 混合）
- triage: 文件分诊评分
- aggregator: 批次摘要、分组摘要与最终合成
"""

from .aggregator import AggregationOptions, Aggregator, format_concatenated
from .files import format_file_input, read_file_content
from .grouping import (
    FileGroup,
    GroupingOptions,
    GroupingResult,
    GroupingStrategy,
    GroupSource,
    group_by_ai,
    ensure_unique_names,
    group_by_hierarchy,
    group_files,
    group_hybrid,
)
from .iterative import IterativeExecutor, IterativeOptions, IterativeResult, IterativeTiming
from .parallel import ResultCollector, SkippedFile, TaskPool
from .triage import (
    FileScore,
    RiskLevel,
    TriageOptions,
    TriageResult,
    bucket_scores,
    enhance_with_connectivity,
    format_triage_result,
    get_suggested_model,
    triage_files,
)

__all__ = [
    # Iterative
    "IterativeExecutor",
    "IterativeOptions",
    "IterativeResult",
    "IterativeTiming",
    "SkippedFile",
    # Parallel
    "TaskPool",
    "ResultCollector",
    # Files
    "read_file_content",
    "format_file_input",
    # Aggregation
    "Aggregator",
    "AggregationOptions",
    "format_concatenated",
    # Grouping
    "FileGroup",
    "GroupSource",
    "GroupingStrategy",
    "GroupingOptions",
    "GroupingResult",
    "group_files",
    "group_by_hierarchy",
    "ensure_unique_names",
    "group_by_ai",
    "group_hybrid",
    # Triage
    "RiskLevel",
    "FileScore",
    "TriageOptions",
    "TriageResult",
    "triage_files",
    "bucket_scores",
    "enhance_with_connectivity",
    "get_suggested_model",
    "format_triage_result",
]
