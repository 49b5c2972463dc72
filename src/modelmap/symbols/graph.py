"""依赖图构建

根据文件符号信息构建依赖图，计算连通性指标，检测循环依赖，
并给出尊重依赖关系的处理顺序。
"""

import posixpath
import re
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

from modelmap.symbols.types import (
    DependencyEdge,
    DependencyGraph,
    EdgeType,
    FileConnectivity,
    FileSymbolInfo,
)

# 入口文件名模式
ENTRY_POINT_PATTERN = re.compile(r"^(index|main|app|server|cli)\.([jt]sx?|py)$")

# 模块解析时尝试的扩展名
RESOLVE_EXTENSIONS = (".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs", ".py")

# Python 风格的相对导入（".utils"、"..pkg.mod"）
_PY_RELATIVE = re.compile(r"^(\.+)([\w.]*)$")


def _path_depth(path: str) -> int:
    return len(path.split("/"))


def _normalize_specifier(specifier: str) -> str:
    """将 Python 风格的相对导入转换为路径形式"""
    match = _PY_RELATIVE.match(specifier)
    if not match:
        return specifier
    dots, rest = match.groups()
    parts = ["."] + [".."] * (len(dots) - 1)
    if rest:
        parts.extend(rest.split("."))
    return "/".join(parts)


class DependencyGraphBuilder:
    """依赖图构建器

    构建完成后只读，可在并发任务间共享。
    """

    def __init__(self, project_root: str | Path = "."):
        self.project_root = Path(project_root).as_posix()
        self._resolutions: dict[str, str] = {}

    def build(self, files: dict[str, FileSymbolInfo]) -> DependencyGraph:
        """从文件符号信息构建依赖图

        无法解析的模块路径（外部包、未匹配的说明符）直接丢弃。

        Args:
            files: 文件路径 -> 符号信息

        Returns:
            DependencyGraph
        """
        self._resolutions = {}
        known = set(files.keys())
        edges: list[DependencyEdge] = []

        for file, info in files.items():
            for imp in info.imports:
                resolved = self._resolve_module_path(imp.source, file, known)
                if resolved:
                    edges.append(
                        DependencyEdge(
                            from_file=file,
                            to_file=resolved,
                            type=EdgeType.IMPORT,
                            symbols=[s.local_name for s in imp.symbols],
                            is_type_only=imp.is_type_only,
                        )
                    )

            for exp in info.exports:
                if not exp.source:
                    continue
                resolved = self._resolve_module_path(exp.source, file, known)
                if resolved:
                    edges.append(
                        DependencyEdge(
                            from_file=file,
                            to_file=resolved,
                            type=EdgeType.RE_EXPORT,
                            symbols=[s.local_name for s in exp.symbols],
                            is_type_only=exp.is_type_only,
                        )
                    )

        in_degree = {file: 0 for file in files}
        out_degree = {file: 0 for file in files}
        for edge in edges:
            in_degree[edge.to_file] += 1
            out_degree[edge.from_file] += 1

        roots = [file for file, degree in out_degree.items() if degree == 0]
        leaves = [file for file, degree in in_degree.items() if degree == 0]
        cycles = self._detect_cycles(files.keys(), edges)
        entry_points = self._detect_entry_points(files.keys(), leaves)

        logger.debug(
            f"依赖图: {len(files)} 个文件, {len(edges)} 条边, "
            f"{len(cycles)} 个循环, {len(entry_points)} 个入口"
        )

        return DependencyGraph(
            edges=edges,
            roots=roots,
            leaves=leaves,
            cycles=cycles,
            entry_points=entry_points,
            resolutions=dict(self._resolutions),
        )

    def calculate_connectivity(
        self,
        files: dict[str, FileSymbolInfo],
        graph: DependencyGraph,
    ) -> dict[str, FileConnectivity]:
        """计算每个文件的连通性指标"""
        importers, dependencies = _adjacency(files.keys(), graph.edges)

        # 从所有入口文件沿依赖关系可达的文件
        reachable: set[str] = set()
        for entry in graph.entry_points:
            if entry in dependencies:
                reachable |= _reachable(entry, dependencies)

        connectivity: dict[str, FileConnectivity] = {}
        for file in files:
            dependents = list(importers[file])
            deps = list(dependencies[file])
            connectivity[file] = FileConnectivity(
                in_degree=len(dependents),
                out_degree=len(deps),
                transitive_importers=len(_reachable(file, importers)) - 1,
                is_critical_path=file in reachable,
                direct_dependents=dependents,
                direct_dependencies=deps,
            )
        return connectivity

    def _resolve_module_path(self, specifier: str, from_file: str, known: set[str]) -> str | None:
        """将模块说明符解析为已知文件路径"""
        if not specifier.startswith((".", "/")):
            return None

        if specifier.startswith("/"):
            base = posixpath.normpath(specifier)
        else:
            spec = _normalize_specifier(specifier)
            base = posixpath.normpath(posixpath.join(posixpath.dirname(from_file), spec))

        candidates = [base]
        candidates.extend(base + ext for ext in RESOLVE_EXTENSIONS)
        candidates.extend(posixpath.join(base, "index" + ext) for ext in RESOLVE_EXTENSIONS)
        candidates.append(posixpath.join(base, "__init__.py"))

        for candidate in candidates:
            if candidate in known:
                self._resolutions[f"{from_file}:{specifier}"] = candidate
                return candidate

            if posixpath.isabs(candidate):
                alternate = posixpath.relpath(candidate, self.project_root)
            else:
                alternate = posixpath.normpath(posixpath.join(self.project_root, candidate))
            if alternate in known:
                self._resolutions[f"{from_file}:{specifier}"] = alternate
                return alternate

        return None

    def _detect_cycles(self, files: Iterable[str], edges: list[DependencyEdge]) -> list[list[str]]:
        """Tarjan 强连通分量算法（迭代实现），只保留大小 > 1 的分量"""
        adjacency: dict[str, list[str]] = {file: [] for file in files}
        for edge in edges:
            adjacency[edge.from_file].append(edge.to_file)

        index_of: dict[str, int] = {}
        lowlink: dict[str, int] = {}
        stack: list[str] = []
        on_stack: set[str] = set()
        sccs: list[list[str]] = []
        counter = 0

        for start in adjacency:
            if start in index_of:
                continue

            index_of[start] = lowlink[start] = counter
            counter += 1
            stack.append(start)
            on_stack.add(start)
            work = [(start, iter(adjacency[start]))]

            while work:
                node, neighbors = work[-1]
                descended = False
                for neighbor in neighbors:
                    if neighbor not in index_of:
                        index_of[neighbor] = lowlink[neighbor] = counter
                        counter += 1
                        stack.append(neighbor)
                        on_stack.add(neighbor)
                        work.append((neighbor, iter(adjacency.get(neighbor, []))))
                        descended = True
                        break
                    if neighbor in on_stack:
                        lowlink[node] = min(lowlink[node], index_of[neighbor])
                if descended:
                    continue

                work.pop()
                if work:
                    parent = work[-1][0]
                    lowlink[parent] = min(lowlink[parent], lowlink[node])

                if lowlink[node] == index_of[node]:
                    component: list[str] = []
                    while True:
                        member = stack.pop()
                        on_stack.discard(member)
                        component.append(member)
                        if member == node:
                            break
                    if len(component) > 1:
                        sccs.append(component)

        return sccs

    def _detect_entry_points(self, files: Iterable[str], leaves: list[str]) -> list[str]:
        """检测入口文件

        命名匹配入口模式，或位于项目顶层/src 下（深度 <= 2）的 leaves 文件。
        去重后按路径深度排序（浅的在前）。
        """
        leaf_set = set(leaves)
        entry_points: list[str] = []

        for file in files:
            if ENTRY_POINT_PATTERN.match(posixpath.basename(file)):
                entry_points.append(file)
                continue

            if file in leaf_set:
                relative = self._relative(file)
                if "/" not in relative or relative.startswith("src/"):
                    if _path_depth(relative) <= 2:
                        entry_points.append(file)

        unique = list(dict.fromkeys(entry_points))
        return sorted(unique, key=_path_depth)

    def _relative(self, file: str) -> str:
        if posixpath.isabs(file):
            return posixpath.relpath(file, self.project_root)
        return posixpath.normpath(file)


@dataclass
class ProcessingOrder:
    """处理顺序"""

    order: list[str] = field(default_factory=list)
    tiers: dict[str, int] = field(default_factory=dict)
    """文件 -> 层号（0 = 不依赖子集内其他文件）"""
    tier_files: dict[int, list[str]] = field(default_factory=dict)


def get_optimal_processing_order(
    graph: DependencyGraph,
    files: Iterable[str],
    priorities: dict[str, float] | None = None,
) -> ProcessingOrder:
    """计算尊重依赖关系的处理顺序

    Kahn 算法的分层变体：第 0 层是在子集内没有依赖的文件；每输出一层，
    剩余依赖计数归零的依赖方进入下一层。层内按优先级降序（相同优先级保持原顺序）。
    因循环而无法解锁的文件全部追加到最后一层，不会丢弃。

    Args:
        graph: 依赖图
        files: 参与排序的文件子集
        priorities: 文件优先级（越高越先处理）

    Returns:
        ProcessingOrder
    """
    subset = list(dict.fromkeys(files))
    subset_set = set(subset)
    priorities = priorities or {}

    importers: dict[str, set[str]] = {file: set() for file in subset}
    dependencies: dict[str, set[str]] = {file: set() for file in subset}
    for edge in graph.edges:
        if edge.from_file in subset_set and edge.to_file in subset_set:
            importers[edge.to_file].add(edge.from_file)
            dependencies[edge.from_file].add(edge.to_file)

    remaining = {file: len(dependencies[file]) for file in subset}
    result = ProcessingOrder()

    current = [file for file in subset if remaining[file] == 0]
    tier = 0
    while current:
        current = sorted(current, key=lambda f: -priorities.get(f, 0))
        result.tier_files[tier] = list(current)
        for file in current:
            result.tiers[file] = tier
            result.order.append(file)

        next_tier: list[str] = []
        for file in current:
            for importer in importers[file]:
                remaining[importer] -= 1
                if remaining[importer] == 0:
                    next_tier.append(importer)

        current = next_tier
        tier += 1

    leftover = [file for file in subset if file not in result.tiers]
    if leftover:
        result.tier_files[tier] = leftover
        for file in leftover:
            result.tiers[file] = tier
            result.order.append(file)

    return result


def get_dependency_summaries(
    file: str,
    graph: DependencyGraph,
    processed: dict[str, str],
    max_deps: int = 3,
) -> list[str]:
    """获取已处理依赖的摘要，用于丰富当前文件的提示词

    Args:
        file: 当前文件
        graph: 依赖图
        processed: 已处理文件 -> 输出
        max_deps: 最多考察的依赖数

    Returns:
        "依赖路径: 摘要" 列表
    """
    deps = [
        edge.to_file
        for edge in graph.edges
        if edge.from_file == file and edge.type != EdgeType.RE_EXPORT
    ]

    summaries = []
    for dep in deps[:max_deps]:
        output = processed.get(dep)
        if output:
            summary = output[:200].replace("\n", " ").strip()
            suffix = "..." if len(output) > 200 else ""
            summaries.append(f"{dep}: {summary}{suffix}")
    return summaries


def _adjacency(
    files: Iterable[str],
    edges: list[DependencyEdge],
) -> tuple[dict[str, dict[str, None]], dict[str, dict[str, None]]]:
    """构建 importers / dependencies 邻接表（保持插入顺序的去重集合）"""
    importers: dict[str, dict[str, None]] = {file: {} for file in files}
    dependencies: dict[str, dict[str, None]] = {file: {} for file in importers}
    for edge in edges:
        if edge.to_file in importers:
            importers[edge.to_file][edge.from_file] = None
        if edge.from_file in dependencies:
            dependencies[edge.from_file][edge.to_file] = None
    return importers, dependencies


def _reachable(start: str, adjacency: dict[str, dict[str, None]]) -> set[str]:
    """广度优先遍历，返回包含起点在内的可达节点"""
    visited = {start}
    queue = deque([start])
    while queue:
        node = queue.popleft()
        for neighbor in adjacency.get(node, {}):
            if neighbor not in visited:
                visited.add(neighbor)
                queue.append(neighbor)
    return visited
