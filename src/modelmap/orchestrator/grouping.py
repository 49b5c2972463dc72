"""文件分组

按目录层级或 AI 分类将文件分组，使相关文件在同一批次中处理。
"""

import json
import posixpath
import re
import time
from dataclasses import dataclass, field, replace
from enum import Enum

from loguru import logger

from modelmap.model_map.registry import ModelRegistry
from modelmap.model_map.router import TaskRouter
from modelmap.providers.base import ChatMessage

DEFAULT_MAX_GROUP_SIZE = 15
DEFAULT_AI_THRESHOLD = 10

_JSON_ARRAY = re.compile(r"\[.*\]", re.DOTALL)


class GroupSource(str, Enum):
    """分组来源"""

    HIERARCHY = "hierarchy"
    AI_CLASSIFIED = "ai-classified"
    MANUAL = "manual"


class GroupingStrategy(str, Enum):
    """分组策略"""

    HIERARCHY = "hierarchy"
    AI = "ai"
    HYBRID = "hybrid"


@dataclass
class FileGroup:
    """一组相关文件"""

    name: str
    """组名（如 commands、providers）"""
    files: list[str]
    """组内文件"""
    source: GroupSource = GroupSource.HIERARCHY
    """分组来源"""
    description: str | None = None
    """组描述"""


@dataclass
class GroupingOptions:
    """分组选项"""

    strategy: GroupingStrategy = GroupingStrategy.HIERARCHY
    max_group_size: int = DEFAULT_MAX_GROUP_SIZE
    ai_threshold: int = DEFAULT_AI_THRESHOLD
    """平铺目录中触发 AI 分类的最少文件数"""
    provider_context: str | None = None
    role: str = "fast"


@dataclass
class GroupingResult:
    """分组结果"""

    groups: list[FileGroup] = field(default_factory=list)
    total_files: int = 0
    duration_ms: float = 0


def _chunk(items: list[str], size: int) -> list[list[str]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


def ensure_unique_names(groups: list[FileGroup]) -> list[FileGroup]:
    """组名去重：重复的组名依次追加 -2、-3 ...，保持原有顺序"""
    taken = {group.name for group in groups}
    seen: set[str] = set()
    unique: list[FileGroup] = []
    for group in groups:
        if group.name not in seen:
            seen.add(group.name)
            unique.append(group)
            continue
        suffix = 2
        while f"{group.name}-{suffix}" in taken:
            suffix += 1
        name = f"{group.name}-{suffix}"
        taken.add(name)
        seen.add(name)
        unique.append(replace(group, name=name))
    return unique


def group_by_hierarchy(files: list[str], max_group_size: int = DEFAULT_MAX_GROUP_SIZE) -> list[FileGroup]:
    """按目录层级分组

    同一目录的文件为一组，组名取目录路径最后两段；超过上限的目录拆分为 name-1、name-2 ...
    不同目录的组名相同时，后出现的组追加 -2、-3 ...
    """
    by_dir: dict[str, list[str]] = {}
    for file in files:
        by_dir.setdefault(posixpath.dirname(file), []).append(file)

    groups: list[FileGroup] = []
    for directory, dir_files in by_dir.items():
        parts = [p for p in directory.split("/") if p and p != "."]
        name = "/".join(parts[-2:]) if parts else "root"

        if len(dir_files) <= max_group_size:
            groups.append(
                FileGroup(
                    name=name,
                    files=dir_files,
                    source=GroupSource.HIERARCHY,
                    description=f"Files in {directory or '.'}",
                )
            )
            continue

        chunks = _chunk(dir_files, max_group_size)
        for i, chunk in enumerate(chunks, 1):
            groups.append(
                FileGroup(
                    name=f"{name}-{i}",
                    files=chunk,
                    source=GroupSource.HIERARCHY,
                    description=f"Files in {directory or '.'} (part {i}/{len(chunks)})",
                )
            )

    groups.sort(key=lambda g: g.name)
    return ensure_unique_names(groups)


def _classification_prompt(files: list[str], max_group_size: int) -> str:
    file_list = "\n".join(f"- {f}" for f in files)
    return f"""You are classifying source code files into logical groups for code review.

Given these {len(files)} files:
{file_list}

Group them by separation of concerns (e.g., "commands", "providers", "tools", "utilities", "types", "tests", "config", etc.).

Respond with ONLY a JSON array of groups, each with "name" and "files" properties.
Keep groups between 5-{max_group_size} files each.
Example format:
[
  {{"name": "commands", "files": ["src/commands/foo.py", "src/commands/bar.py"]}},
  {{"name": "providers", "files": ["src/providers/base.py"]}}
]

JSON response:"""


def _parse_groups(content: str, files: list[str], max_group_size: int) -> list[FileGroup]:
    """解析 AI 返回的分组，未分配的文件归入 other

    Raises:
        ValueError: 响应中没有 JSON 数组
    """
    match = _JSON_ARRAY.search(content)
    if not match:
        raise ValueError("No JSON array found in response")
    parsed = json.loads(match.group(0))

    known = set(files)
    assigned: set[str] = set()
    groups: list[FileGroup] = []

    for entry in parsed:
        if not isinstance(entry, dict):
            continue
        name = entry.get("name")
        entry_files = entry.get("files")
        if not name or not isinstance(entry_files, list):
            continue

        valid: list[str] = []
        for f in entry_files:
            if f in known and f not in assigned and f not in valid:
                valid.append(f)
        if not valid:
            continue

        chunks = _chunk(valid, max_group_size)
        for i, chunk in enumerate(chunks, 1):
            groups.append(
                FileGroup(
                    name=f"{name}-{i}" if len(chunks) > 1 else name,
                    files=chunk,
                    source=GroupSource.AI_CLASSIFIED,
                )
            )
            assigned.update(chunk)

    unassigned = [f for f in files if f not in assigned]
    if unassigned:
        chunks = _chunk(unassigned, max_group_size)
        for i, chunk in enumerate(chunks, 1):
            groups.append(
                FileGroup(
                    name=f"other-{i}" if len(chunks) > 1 else "other",
                    files=chunk,
                    source=GroupSource.AI_CLASSIFIED,
                    description="Files not classified into other groups",
                )
            )

    return ensure_unique_names(groups)


async def group_by_ai(
    files: list[str],
    registry: ModelRegistry,
    router: TaskRouter,
    provider_context: str,
    max_group_size: int = DEFAULT_MAX_GROUP_SIZE,
    role: str = "fast",
) -> list[FileGroup]:
    """使用快速模型按关注点分类文件

    角色无法解析或模型调用/解析失败时回退到目录层级分组。
    """
    resolved = router.resolve_role(role, provider_context)
    if resolved is None:
        logger.warning(f"没有可用于分类的 {role} 模型，回退到目录分组")
        return group_by_hierarchy(files, max_group_size)

    try:
        provider = registry.get_provider(resolved.name)
        prompt = _classification_prompt(files, max_group_size)
        response = await provider.chat([ChatMessage(role="user", content=prompt)])
        return _parse_groups(response.content, files, max_group_size)
    except Exception as e:
        logger.warning(f"AI 分类失败: {e}，回退到目录分组")
        return group_by_hierarchy(files, max_group_size)


async def group_hybrid(
    files: list[str],
    registry: ModelRegistry,
    router: TaskRouter,
    options: GroupingOptions,
) -> list[FileGroup]:
    """混合分组：结构清晰的目录按层级，文件多的平铺目录交给 AI 分类"""
    provider_context = options.provider_context or "openai"
    flat: list[FileGroup] = []
    structured: list[FileGroup] = []

    for group in group_by_hierarchy(files, options.max_group_size):
        dirs = {posixpath.dirname(f) for f in group.files}
        if len(dirs) == 1 and len(group.files) >= options.ai_threshold:
            flat.append(group)
        else:
            structured.append(group)

    if not flat:
        return structured

    flat_files = [f for group in flat for f in group.files]
    ai_groups = await group_by_ai(
        flat_files, registry, router, provider_context, options.max_group_size, options.role
    )
    return ensure_unique_names(structured + ai_groups)


async def group_files(
    files: list[str],
    options: GroupingOptions | None = None,
    registry: ModelRegistry | None = None,
    router: TaskRouter | None = None,
) -> GroupingResult:
    """文件分组入口

    Args:
        files: 文件列表
        options: 分组选项
        registry: 模型注册表（AI / 混合策略需要）
        router: 任务路由器（AI / 混合策略需要）

    Returns:
        GroupingResult
    """
    options = options or GroupingOptions()
    start = time.perf_counter()
    strategy = GroupingStrategy(options.strategy)

    if strategy == GroupingStrategy.HIERARCHY:
        groups = group_by_hierarchy(files, options.max_group_size)
    elif registry is None or router is None:
        logger.warning(f"{strategy.value} 分组需要 registry 和 router，回退到目录分组")
        groups = group_by_hierarchy(files, options.max_group_size)
    elif strategy == GroupingStrategy.AI:
        groups = await group_by_ai(
            files,
            registry,
            router,
            options.provider_context or "openai",
            options.max_group_size,
            options.role,
        )
    else:
        groups = await group_hybrid(files, registry, router, options)

    return GroupingResult(
        groups=groups,
        total_files=len(files),
        duration_ms=(time.perf_counter() - start) * 1000,
    )
