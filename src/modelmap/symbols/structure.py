"""代码库结构构建（符号化阶段）

对所有文件执行符号提取，再构建依赖图、连通性、桶文件和符号索引。
"""

import asyncio
import posixpath
import re
import time
from collections.abc import Awaitable, Callable
from pathlib import Path

from loguru import logger

from modelmap.symbols.graph import DependencyGraphBuilder
from modelmap.symbols.types import (
    CodebaseStructure,
    FileSymbolInfo,
    StructureMetadata,
    SymbolExtractor,
    SymbolicationError,
    SymbolicationResult,
)

DEFAULT_EXTRACT_CONCURRENCY = 8

_INDEX_FILE = re.compile(r"^(index\.[jt]sx?|__init__\.py)$")

ProgressCallback = Callable[[int, int, str], Awaitable[None]]
"""进度回调：(已处理数, 总数, 当前文件)"""


async def build_codebase_structure(
    files: list[str],
    extractor: SymbolExtractor,
    project_root: str | Path | None = None,
    on_progress: ProgressCallback | None = None,
    concurrency: int = DEFAULT_EXTRACT_CONCURRENCY,
) -> SymbolicationResult:
    """构建代码库结构

    单个文件读取或提取失败只记录到 errors，不中断整体构建。

    Args:
        files: 文件列表
        extractor: 符号提取器
        project_root: 项目根目录（默认当前目录）
        on_progress: 进度回调（按文件顺序调用）
        concurrency: 每批并发提取的文件数

    Returns:
        SymbolicationResult
    """
    start = time.perf_counter()
    root = Path(project_root) if project_root else Path.cwd()
    infos: dict[str, FileSymbolInfo] = {}
    errors: list[SymbolicationError] = []

    def extract_one(file: str) -> FileSymbolInfo:
        path = Path(file) if Path(file).is_absolute() else root / file
        content = path.read_text(encoding="utf-8")
        return extractor.extract(content, file)

    for batch_start in range(0, len(files), concurrency):
        batch = files[batch_start : batch_start + concurrency]
        for offset, file in enumerate(batch):
            if on_progress:
                await on_progress(batch_start + offset, len(files), file)

        results = await asyncio.gather(
            *(asyncio.to_thread(extract_one, file) for file in batch),
            return_exceptions=True,
        )
        for file, result in zip(batch, results):
            if isinstance(result, Exception):
                logger.warning(f"符号提取失败: {file}: {result}")
                errors.append(SymbolicationError(file=file, error=str(result)))
            else:
                infos[file] = result

    builder = DependencyGraphBuilder(root)
    graph = builder.build(infos)
    connectivity = builder.calculate_connectivity(infos, graph)

    duration_ms = (time.perf_counter() - start) * 1000
    structure = CodebaseStructure(
        files=infos,
        symbol_index=build_symbol_index(infos),
        dependency_graph=graph,
        connectivity=connectivity,
        barrel_files=detect_barrel_files(infos),
        metadata=StructureMetadata(
            total_files=len(infos),
            total_symbols=sum(len(info.symbols) for info in infos.values()),
            build_duration_ms=duration_ms,
        ),
    )
    return SymbolicationResult(structure=structure, duration_ms=duration_ms, errors=errors)


def detect_barrel_files(files: dict[str, FileSymbolInfo]) -> list[str]:
    """检测桶文件：再导出数 >= 导出符号数的 index 文件"""
    barrels = []
    for file, info in files.items():
        if not _INDEX_FILE.match(posixpath.basename(file)):
            continue
        re_exports = sum(1 for e in info.exports if e.source)
        exported = sum(1 for s in info.symbols if s.is_exported)
        if re_exports > 0 and re_exports >= exported:
            barrels.append(file)
    return barrels


def build_symbol_index(files: dict[str, FileSymbolInfo]) -> dict[str, list[str]]:
    """构建全局符号索引：导出符号名 -> 定义文件"""
    index: dict[str, list[str]] = {}
    for file, info in files.items():
        for symbol in info.symbols:
            if symbol.is_exported:
                index.setdefault(symbol.name, []).append(file)
    return index


def format_symbolication_result(result: SymbolicationResult) -> str:
    """格式化符号化结果（Markdown）"""
    structure = result.structure
    lines = [
        "## Symbolication Complete",
        f"- Files processed: {structure.metadata.total_files}",
        f"- Symbols extracted: {structure.metadata.total_symbols}",
        f"- Entry points: {len(structure.dependency_graph.entry_points)}",
        f"- Barrel files: {len(structure.barrel_files)}",
    ]
    if structure.dependency_graph.cycles:
        lines.append(f"- Circular dependencies: {len(structure.dependency_graph.cycles)}")
    lines.append(f"- Duration: {result.duration_ms / 1000:.1f}s")

    if result.errors:
        lines.append(f"\n### Errors ({len(result.errors)})")
        for err in result.errors[:5]:
            lines.append(f"- {err.file}: {err.error}")
        if len(result.errors) > 5:
            lines.append(f"- ... and {len(result.errors) - 5} more")

    return "\n".join(lines)
