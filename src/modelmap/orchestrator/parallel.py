"""并发处理

限制并发数的任务池，以及并发安全的结果收集器。
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from modelmap.pipeline.executor import PipelineResult

T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True)
class SkippedFile:
    """被跳过的文件"""

    file: str
    reason: str


class TaskPool:
    """任务池

    管理并发任务的数量限制。结果按提交顺序返回，与完成顺序无关。
    """

    def __init__(self, max_concurrent: int = 4):
        """初始化任务池

        Args:
            max_concurrent: 最大并发数
        """
        self.max_concurrent = max(1, max_concurrent)
        self.semaphore = asyncio.Semaphore(self.max_concurrent)

    async def submit(self, func: Callable[[], Awaitable[R]]) -> R:
        """提交任务，等待获得并发名额后执行"""
        async with self.semaphore:
            return await func()

    async def map(self, func: Callable[[T], Awaitable[R]], items: list[T]) -> list[R]:
        """并发映射

        Args:
            func: 异步函数
            items: 数据列表

        Returns:
            与 items 顺序一致的结果列表
        """
        return await asyncio.gather(*[self.submit(lambda item=item: func(item)) for item in items])


class ResultCollector:
    """并发安全的结果收集器

    文件结果、使用过的模型和跳过的文件在锁内更新。
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self.file_results: dict[str, PipelineResult] = {}
        self.models_used: list[str] = []
        self.skipped_files: list[SkippedFile] = []

    async def add_result(self, file: str, result: PipelineResult) -> None:
        async with self._lock:
            self.file_results[file] = result
            for model in result.models_used:
                if model not in self.models_used:
                    self.models_used.append(model)

    async def add_skipped(self, file: str, reason: str) -> None:
        async with self._lock:
            self.skipped_files.append(SkippedFile(file=file, reason=reason))

    def outputs(self, files: list[str] | None = None) -> dict[str, str]:
        """文件输出快照（可按文件列表筛选并保持其顺序）"""
        if files is None:
            return {f: r.output for f, r in self.file_results.items()}
        return {f: self.file_results[f].output for f in files if f in self.file_results}

    @property
    def files_processed(self) -> int:
        return len(self.file_results)

    def __len__(self) -> int:
        return len(self.file_results)
