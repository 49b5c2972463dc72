"""文件分诊

使用快速模型按风险、复杂度和重要性为文件打分，
驱动后续分析的自适应深度：关键文件深度分析，低优先级文件快速扫描。
"""

import json
import re
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path

from loguru import logger

from modelmap.model_map.registry import ModelRegistry
from modelmap.model_map.router import TaskRouter
from modelmap.providers.base import ChatMessage
from modelmap.symbols.types import CodebaseStructure

DEFAULT_DEEP_THRESHOLD = 6
DEFAULT_SKIP_THRESHOLD = 3


class RiskLevel(str, Enum):
    """风险等级"""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


RISK_WEIGHTS: dict[RiskLevel, int] = {
    RiskLevel.CRITICAL: 10,
    RiskLevel.HIGH: 7,
    RiskLevel.MEDIUM: 4,
    RiskLevel.LOW: 1,
}

# 暗示高风险的文件路径模式
HIGH_RISK_PATTERN = re.compile(
    r"auth|login|password|secret|crypt|token|session|permission|access|admin|"
    r"security|sql|query|exec|eval|shell|command",
    re.IGNORECASE,
)

# 暗示入口/高重要性的文件路径模式
ENTRY_POINT_PATTERN = re.compile(
    r"(index|main|app|server|cli)\.([jt]sx?|py)$|^src/[^/]+\.([jt]sx?|py)$",
    re.IGNORECASE,
)

TEST_FILE_PATTERN = re.compile(r"\.test\.|\.spec\.|__tests__|(^|/)test_[^/]+\.py$", re.IGNORECASE)
TYPES_FILE_PATTERN = re.compile(r"\.d\.ts$|types?\.([jt]s|py)$", re.IGNORECASE)

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


@dataclass(frozen=True)
class FileScore:
    """单个文件的分诊评分"""

    file: str
    risk: RiskLevel
    complexity: float
    """复杂度 1-10"""
    importance: float
    """重要性 1-10"""
    reasoning: str
    priority: float = 0
    """综合优先级（排序用）"""
    suggested_model: str | None = None
    """建议的模型角色（fast / capable / reasoning）"""


@dataclass(frozen=True)
class TriageResult:
    """分诊结果

    critical_paths / normal_paths / skip_paths 是全部评分文件的一个划分。
    """

    scores: list[FileScore] = field(default_factory=list)
    summary: str = ""
    critical_paths: list[str] = field(default_factory=list)
    normal_paths: list[str] = field(default_factory=list)
    skip_paths: list[str] = field(default_factory=list)
    duration_ms: float | None = None

    def score_for(self, file: str) -> FileScore | None:
        return next((s for s in self.scores if s.file == file), None)

    @property
    def priorities(self) -> dict[str, float]:
        return {s.file: s.priority for s in self.scores}


@dataclass
class TriageOptions:
    """分诊选项"""

    role: str = "fast"
    criteria: list[str] = field(default_factory=list)
    """附加到提示词中的自定义评分标准"""
    deep_threshold: float = DEFAULT_DEEP_THRESHOLD
    skip_threshold: float = DEFAULT_SKIP_THRESHOLD
    provider_context: str | None = None
    structure: CodebaseStructure | None = None
    """提供时按连通性增强评分"""


def calculate_priority(risk: RiskLevel, complexity: float, importance: float) -> float:
    """优先级 = 风险权重 + (复杂度 + 重要性) / 2"""
    return RISK_WEIGHTS[risk] + (complexity + importance) / 2


def bucket_scores(
    scores: list[FileScore],
    deep_threshold: float = DEFAULT_DEEP_THRESHOLD,
    skip_threshold: float = DEFAULT_SKIP_THRESHOLD,
) -> tuple[list[FileScore], list[str], list[str], list[str]]:
    """按优先级降序排序并划分为关键/常规/快速三组

    Returns:
        (排序后的评分, critical, normal, skip)
    """
    ordered = sorted(scores, key=lambda s: -s.priority)
    critical, normal, skip = [], [], []
    for score in ordered:
        if score.priority >= deep_threshold:
            critical.append(score.file)
        elif score.priority <= skip_threshold:
            skip.append(score.file)
        else:
            normal.append(score.file)
    return ordered, critical, normal, skip


def _clamp(value, default: float = 5) -> float:
    if value is None or value == 0:
        return default
    return min(10, max(1, float(value)))


def _validate_risk(risk) -> RiskLevel:
    if isinstance(risk, str):
        try:
            return RiskLevel(risk.lower())
        except ValueError:
            pass
    return RiskLevel.MEDIUM


def create_fallback_score(file: str) -> FileScore:
    """基于文件路径的启发式评分"""
    risk = RiskLevel.MEDIUM
    complexity = 5
    importance = 5

    if HIGH_RISK_PATTERN.search(file):
        risk = RiskLevel.HIGH
        importance = 7

    if ENTRY_POINT_PATTERN.search(file):
        importance = 8

    if TEST_FILE_PATTERN.search(file):
        risk = RiskLevel.LOW
        importance = 3

    if TYPES_FILE_PATTERN.search(file):
        complexity = 3
        importance = 4

    return FileScore(
        file=file,
        risk=risk,
        complexity=complexity,
        importance=importance,
        reasoning="Scored using heuristics (model response missing)",
        priority=calculate_priority(risk, complexity, importance),
    )


def create_fallback_result(files: list[str], options: TriageOptions) -> TriageResult:
    scores, critical, normal, skip = bucket_scores(
        [create_fallback_score(f) for f in files],
        options.deep_threshold,
        options.skip_threshold,
    )
    return TriageResult(
        scores=scores,
        summary="Triage completed using heuristics (model response unavailable)",
        critical_paths=critical,
        normal_paths=normal,
        skip_paths=skip,
    )


def _directory_tree(files: list[str]) -> str:
    counts: dict[str, int] = {}
    for file in files:
        directory = str(Path(file).parent)
        counts[directory] = counts.get(directory, 0) + 1
    return "\n".join(f"{d}/ ({n} files)" for d, n in sorted(counts.items()))


def _file_metadata(files: list[str]) -> str:
    lines = []
    for file in files:
        path = Path(file)
        try:
            size_kb = path.stat().st_size / 1024
        except OSError:
            lines.append(f"- {file} (unknown size)")
            continue

        indicators = []
        risk_match = HIGH_RISK_PATTERN.search(file)
        if risk_match:
            indicators.append(risk_match.group(0).lower())
        if ENTRY_POINT_PATTERN.search(file):
            indicators.append("entry-point")
        suffix = f" [{', '.join(indicators)}]" if indicators else ""
        ext = path.suffix[1:] or "unknown"
        lines.append(f"- {file} ({size_kb:.1f}KB, {ext}){suffix}")
    return "\n".join(lines)


def build_triage_prompt(files: list[str], options: TriageOptions) -> str:
    """构建分诊提示词"""
    custom = ""
    if options.criteria:
        custom = "\n\n## Custom Scoring Criteria\n" + "\n".join(f"- {c}" for c in options.criteria)

    return f"""You are triaging source code files for code review. Analyze the file list and score each file.

## Codebase Structure
{_directory_tree(files)}

## Files to Score ({len(files)} total)
{_file_metadata(files)}
{custom}

## Scoring Instructions
For each file, provide:
- **risk**: critical | high | medium | low
  - critical: Security-sensitive (auth, crypto, input handling, SQL, shell commands)
  - high: Data manipulation, API endpoints, state management
  - medium: Business logic, utilities
  - low: Types, constants, tests, documentation

- **complexity**: 1-10
  - Based on file size, likely logic complexity, number of dependencies

- **importance**: 1-10
  - Based on whether it's an entry point, core functionality, or utility

- **reasoning**: One sentence explaining the scores

- **suggestedModel**: "fast" | "capable" | "reasoning"
  - fast: Simple files, type definitions, constants
  - capable: Standard code review
  - reasoning: Complex logic, security-critical code

## Output Format
Respond with ONLY a JSON object in this exact format:
{{
  "summary": "Brief description of the codebase structure and key areas",
  "scores": [
    {{
      "file": "path/to/file.py",
      "risk": "medium",
      "complexity": 5,
      "importance": 7,
      "reasoning": "Core business logic with moderate complexity",
      "suggestedModel": "capable"
    }}
  ]
}}

Analyze all {len(files)} files. Be concise in reasoning."""


def parse_triage_response(content: str, files: list[str], options: TriageOptions) -> TriageResult:
    """解析模型的分诊响应

    响应中缺失的文件使用启发式评分补齐；无法解析时整体回退到启发式。
    """
    match = _JSON_OBJECT.search(content)
    if not match:
        logger.warning("分诊响应中没有 JSON，使用启发式评分")
        return create_fallback_result(files, options)

    try:
        parsed = json.loads(match.group(0))
        known = set(files)
        scores: list[FileScore] = []
        scored: set[str] = set()

        for entry in parsed.get("scores") or []:
            file = entry.get("file")
            if not file or file not in known or file in scored:
                continue
            risk = _validate_risk(entry.get("risk"))
            complexity = _clamp(entry.get("complexity"))
            importance = _clamp(entry.get("importance"))
            scores.append(
                FileScore(
                    file=file,
                    risk=risk,
                    complexity=complexity,
                    importance=importance,
                    reasoning=entry.get("reasoning") or "No reasoning provided",
                    priority=calculate_priority(risk, complexity, importance),
                    suggested_model=entry.get("suggestedModel") or entry.get("suggested_model"),
                )
            )
            scored.add(file)

        scores.extend(create_fallback_score(f) for f in files if f not in scored)
        ordered, critical, normal, skip = bucket_scores(
            scores, options.deep_threshold, options.skip_threshold
        )
        return TriageResult(
            scores=ordered,
            summary=parsed.get("summary") or "Codebase triage completed",
            critical_paths=critical,
            normal_paths=normal,
            skip_paths=skip,
        )
    except (ValueError, TypeError, AttributeError) as e:
        logger.warning(f"分诊响应解析失败: {e}")
        return create_fallback_result(files, options)


def enhance_with_connectivity(
    result: TriageResult,
    structure: CodebaseStructure,
    deep_threshold: float = DEFAULT_DEEP_THRESHOLD,
    skip_threshold: float = DEFAULT_SKIP_THRESHOLD,
) -> TriageResult:
    """按连通性增强分诊评分，返回新的 TriageResult（不修改输入）

    - 入度 >= 5: 重要性 +2；入度 2-4: 重要性 +1
    - 入口文件: 重要性 +2
    - 传递导入者 >= 10: 重要性 +1
    - 处于循环依赖中: 复杂度 +1
    优先级重算为 (重要性 + 复杂度 + 风险权重) / 3，然后重新排序和分组。
    """
    graph = structure.dependency_graph
    enhanced: list[FileScore] = []

    for score in result.scores:
        connectivity = structure.connectivity.get(score.file)
        if connectivity is None:
            enhanced.append(score)
            continue

        importance_boost = 0
        if connectivity.in_degree >= 5:
            importance_boost += 2
        elif connectivity.in_degree >= 2:
            importance_boost += 1
        if score.file in graph.entry_points:
            importance_boost += 2
        if connectivity.transitive_importers >= 10:
            importance_boost += 1

        in_cycle = graph.in_cycle(score.file)
        importance = min(10, score.importance + importance_boost)
        complexity = min(10, score.complexity + (1 if in_cycle else 0))
        priority = (importance + complexity + RISK_WEIGHTS[score.risk]) / 3

        note = f"[in={connectivity.in_degree}, out={connectivity.out_degree}{', cycle' if in_cycle else ''}]"
        reasoning = score.reasoning if "[in=" in score.reasoning else f"{score.reasoning} {note}"

        enhanced.append(
            replace(
                score,
                importance=importance,
                complexity=complexity,
                priority=priority,
                reasoning=reasoning,
            )
        )

    ordered, critical, normal, skip = bucket_scores(enhanced, deep_threshold, skip_threshold)
    return replace(
        result,
        scores=ordered,
        critical_paths=critical,
        normal_paths=normal,
        skip_paths=skip,
        summary=f"{result.summary} (enhanced with connectivity)",
    )


async def triage_files(
    files: list[str],
    registry: ModelRegistry,
    router: TaskRouter,
    options: TriageOptions | None = None,
) -> TriageResult:
    """使用快速模型为文件分诊

    角色无法解析、模型调用失败或响应无效时回退到启发式评分，不抛出异常。

    Args:
        files: 文件列表
        registry: 模型注册表
        router: 任务路由器
        options: 分诊选项

    Returns:
        TriageResult
    """
    options = options or TriageOptions()
    start = time.perf_counter()

    if not files:
        return TriageResult(summary="No files to triage", duration_ms=0)

    provider_context = options.provider_context or "openai"
    resolved = router.resolve_role(options.role, provider_context)

    if resolved is None:
        logger.warning(f'角色 "{options.role}" 在 "{provider_context}" 中没有可用模型，使用启发式评分')
        result = create_fallback_result(files, options)
    else:
        try:
            provider = registry.get_provider(resolved.name)
            logger.debug(f"使用 {resolved.name} 分诊 {len(files)} 个文件")
            response = await provider.chat(
                [ChatMessage(role="user", content=build_triage_prompt(files, options))]
            )
            result = parse_triage_response(response.content, files, options)
        except Exception as e:
            logger.warning(f"分诊失败: {e}，使用启发式评分")
            result = create_fallback_result(files, options)

    if options.structure is not None:
        result = enhance_with_connectivity(
            result, options.structure, options.deep_threshold, options.skip_threshold
        )

    result = replace(result, duration_ms=(time.perf_counter() - start) * 1000)
    logger.info(
        f"分诊完成: 关键 {len(result.critical_paths)}, 常规 {len(result.normal_paths)}, "
        f"快速 {len(result.skip_paths)}"
    )
    return result


def get_suggested_model(score: FileScore) -> str:
    """根据评分建议模型角色"""
    if score.suggested_model:
        return score.suggested_model
    if score.risk == RiskLevel.CRITICAL or score.complexity >= 8:
        return "reasoning"
    if score.risk == RiskLevel.LOW and score.complexity <= 3:
        return "fast"
    return "capable"


def format_triage_result(result: TriageResult) -> str:
    """格式化分诊结果（Markdown）"""
    lines = [
        "## Triage Summary",
        result.summary,
        "",
        "### File Categories",
        f"- Critical (deep analysis): {len(result.critical_paths)} files",
        f"- Normal (standard review): {len(result.normal_paths)} files",
        f"- Skip (quick scan): {len(result.skip_paths)} files",
        "",
    ]

    if result.critical_paths:
        lines.append("### Critical Files")
        for file in result.critical_paths[:10]:
            score = result.score_for(file)
            if score:
                lines.append(f"- {file} [{score.risk.value}] - {score.reasoning}")
        if len(result.critical_paths) > 10:
            lines.append(f"  ... and {len(result.critical_paths) - 10} more")
        lines.append("")

    if result.duration_ms:
        lines.append(f"*Triage completed in {result.duration_ms / 1000:.1f}s*")

    return "\n".join(lines)
