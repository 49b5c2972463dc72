"""结果聚合

将多个文件的流水线输出合成为一份报告：单次聚合、分批摘要 + 元聚合、
分组聚合，以及按分诊结果加权的自适应合成。

所有合成调用失败时都回退到拼接输出并记录日志，不向上抛出。
"""

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass

from loguru import logger

from modelmap.core.config import ModelMapSettings, get_settings
from modelmap.model_map.registry import ModelRegistry
from modelmap.model_map.router import TaskRouter
from modelmap.orchestrator.grouping import FileGroup
from modelmap.orchestrator.triage import TriageResult
from modelmap.pipeline.callbacks import EventSink, emit_event
from modelmap.pipeline.events import (
    batch_complete_event,
    batch_start_event,
    meta_aggregation_start_event,
    step_complete_event,
    step_start_event,
)
from modelmap.pipeline.executor import PipelineResult, stream_text

SECTION_SEPARATOR = "\n\n---\n\n"

ResultsLike = Mapping[str, PipelineResult] | Mapping[str, str]


@dataclass
class AggregationOptions:
    """聚合选项

    自定义提示词中的占位符：
    - prompt: {results} {fileCount}
    - batch_prompt: {results} {fileCount} {batchIndex} {totalBatches}
    - meta_prompt: {summaries} {batchCount} {fileCount}
    """

    enabled: bool = True
    role: str | None = None
    """聚合使用的模型角色（默认取配置 aggregation_role）"""
    prompt: str | None = None
    batch_size: int | None = None
    """超过该文件数时分批聚合（默认取配置 batch_size，0 表示不分批）"""
    batch_prompt: str | None = None
    meta_prompt: str | None = None


def _outputs(results: ResultsLike) -> dict[str, str]:
    return {
        file: r.output if isinstance(r, PipelineResult) else str(r) for file, r in results.items()
    }


def format_results(results: ResultsLike) -> str:
    """格式化为聚合提示词中的结果段落"""
    return SECTION_SEPARATOR.join(
        f"### {file}\n{output}" for file, output in _outputs(results).items()
    )


def format_concatenated(results: ResultsLike) -> str:
    """聚合不可用时的回退输出：按文件拼接"""
    return SECTION_SEPARATOR.join(
        f"## {file}\n\n{output}" for file, output in _outputs(results).items()
    )


def _fill(template: str, values: dict[str, object]) -> str:
    for key, value in values.items():
        template = template.replace("{" + key + "}", str(value))
    return template


class Aggregator:
    """结果聚合器"""

    def __init__(
        self,
        registry: ModelRegistry,
        router: TaskRouter | None = None,
        settings: ModelMapSettings | None = None,
    ):
        self.registry = registry
        self.router = router
        self.settings = settings or get_settings()

    def resolve_model(
        self,
        role: str | None,
        provider_context: str,
        fallback_results: ResultsLike | None = None,
    ) -> str:
        """解析聚合模型

        依次尝试：角色解析、首个文件结果使用的模型、"default"。
        """
        role = role or self.settings.aggregation_role
        if self.router:
            resolved = self.router.resolve_role(role, provider_context)
            if resolved:
                return resolved.name

        if fallback_results:
            first = next(iter(fallback_results.values()))
            if isinstance(first, PipelineResult) and first.models_used:
                return first.models_used[0]

        return "default"

    async def _synthesize(
        self,
        step_name: str,
        prompt: str,
        model_name: str,
        sink: EventSink | None,
    ) -> str:
        await emit_event(sink, step_start_event(step_name, model_name))
        provider = self.registry.get_provider(model_name)
        output = await stream_text(provider, prompt, step_name, sink)
        await emit_event(sink, step_complete_event(step_name, output))
        return output

    async def aggregate_results(
        self,
        results: ResultsLike,
        provider_context: str,
        options: AggregationOptions | None = None,
        sink: EventSink | None = None,
    ) -> str:
        """单次聚合全部文件结果"""
        options = options or AggregationOptions()
        results_text = format_results(results)

        if options.prompt:
            prompt = _fill(options.prompt, {"results": results_text, "fileCount": len(results)})
        else:
            prompt = f"""You received code review results for {len(results)} files.
Synthesize these findings into a consolidated report.

{results_text}

Provide:
1. **Critical Issues** - Most important problems found (prioritized)
2. **Common Patterns** - Recurring issues or anti-patterns across files
3. **Top Recommendations** - 5 most impactful improvements
4. **Files Requiring Attention** - Which files need immediate work"""

        try:
            model_name = self.resolve_model(options.role, provider_context, results)
            return await self._synthesize("aggregate", prompt, model_name, sink)
        except Exception as e:
            logger.warning(f"聚合失败: {e}，回退到拼接输出")
            return format_concatenated(results)

    async def aggregate_batch(
        self,
        results: ResultsLike,
        batch_index: int,
        total_batches: int,
        provider_context: str,
        options: AggregationOptions | None = None,
        sink: EventSink | None = None,
    ) -> str:
        """摘要单个批次（batch_index 从 0 开始）"""
        options = options or AggregationOptions()
        results_text = format_results(results)
        number = batch_index + 1

        if options.batch_prompt:
            prompt = _fill(
                options.batch_prompt,
                {
                    "results": results_text,
                    "fileCount": len(results),
                    "batchIndex": number,
                    "totalBatches": total_batches,
                },
            )
        else:
            prompt = f"""You are summarizing batch {number} of {total_batches} from a code review.
This batch contains {len(results)} files.

{results_text}

Provide a concise summary of this batch:
1. **Key Issues Found** - Most important problems in this batch
2. **Patterns** - Any recurring issues
3. **Files Needing Attention** - Which files have the most critical issues

Keep the summary focused and under 1000 words - this will be combined with other batch summaries."""

        try:
            model_name = self.resolve_model(options.role, provider_context, results)
            return await self._synthesize(f"batch-{number}", prompt, model_name, sink)
        except Exception as e:
            logger.warning(f"批次 {number} 摘要失败: {e}，回退到拼接输出")
            return format_concatenated(results)

    async def meta_aggregate(
        self,
        summaries: list[str],
        total_files: int,
        provider_context: str,
        options: AggregationOptions | None = None,
        sink: EventSink | None = None,
        labels: list[str] | None = None,
    ) -> str:
        """将批次（或分组）摘要合成为最终报告

        Args:
            summaries: 摘要列表
            total_files: 处理过的文件总数
            provider_context: provider 上下文
            options: 聚合选项
            sink: 事件接收器
            labels: 摘要标题（默认 "Batch N"）
        """
        options = options or AggregationOptions()
        labels = labels or [f"Batch {i + 1}" for i in range(len(summaries))]
        summaries_text = SECTION_SEPARATOR.join(
            f"## {label} Summary\n\n{summary}" for label, summary in zip(labels, summaries)
        )

        if options.meta_prompt:
            prompt = _fill(
                options.meta_prompt,
                {
                    "summaries": summaries_text,
                    "batchCount": len(summaries),
                    "fileCount": total_files,
                },
            )
        else:
            prompt = f"""You received {len(summaries)} batch summaries from a code review of {total_files} files.
Synthesize these batch summaries into a final consolidated report.

{summaries_text}

Provide a comprehensive final report:
1. **Critical Issues** - Most important problems found across all batches (prioritized)
2. **Common Patterns** - Recurring issues or anti-patterns across the codebase
3. **Top Recommendations** - 5 most impactful improvements
4. **Files Requiring Immediate Attention** - Which files need immediate work
5. **Overall Assessment** - Brief summary of codebase health"""

        await emit_event(sink, meta_aggregation_start_event(len(summaries)))
        try:
            model_name = self.resolve_model(options.role, provider_context)
            return await self._synthesize("meta-aggregate", prompt, model_name, sink)
        except Exception as e:
            logger.warning(f"元聚合失败: {e}，回退到拼接摘要")
            return SECTION_SEPARATOR.join(summaries)

    async def aggregate_group(
        self,
        group: FileGroup,
        results: ResultsLike,
        provider_context: str,
        options: AggregationOptions | None = None,
        sink: EventSink | None = None,
    ) -> str:
        """摘要单个文件分组"""
        options = options or AggregationOptions()
        description = f"\nGroup description: {group.description}" if group.description else ""
        prompt = f"""You are summarizing the "{group.name}" group from a code review.{description}
This group contains {len(results)} related files.

{format_results(results)}

Provide a concise summary of this group:
1. **Key Issues Found** - Most important problems in this group
2. **Shared Concerns** - Issues that span several files of the group
3. **Files Needing Attention** - Which files have the most critical issues

Keep the summary focused - it will be combined with the summaries of other groups."""

        try:
            model_name = self.resolve_model(options.role, provider_context, results)
            return await self._synthesize(f"group-{group.name}", prompt, model_name, sink)
        except Exception as e:
            logger.warning(f'分组 "{group.name}" 摘要失败: {e}，回退到拼接输出')
            return format_concatenated(results)

    async def synthesize_adaptive(
        self,
        results: ResultsLike,
        triage: TriageResult | None,
        provider_context: str,
        options: AggregationOptions | None = None,
        sink: EventSink | None = None,
    ) -> str:
        """按分诊结果加权的最终合成

        关键文件的发现排在前面并要求优先处理；没有分诊结果时等同于 aggregate_results。
        """
        if triage is None:
            return await self.aggregate_results(results, provider_context, options, sink)

        options = options or AggregationOptions()
        outputs = _outputs(results)
        sections = [
            ("Critical Files (deep analysis)", triage.critical_paths),
            ("Standard Files", triage.normal_paths),
            ("Low-Priority Files (quick scan)", triage.skip_paths),
        ]
        listed: set[str] = set()
        parts: list[str] = []
        for title, paths in sections:
            section_results = {f: outputs[f] for f in paths if f in outputs}
            listed.update(section_results)
            if section_results:
                parts.append(f"## {title}\n\n{format_results(section_results)}")

        # 不在分诊结果中的文件（例如外部覆盖）归入常规部分之后
        rest = {f: o for f, o in outputs.items() if f not in listed}
        if rest:
            parts.append(f"## Other Files\n\n{format_results(rest)}")

        if options.prompt:
            prompt = _fill(
                options.prompt,
                {"results": "\n\n".join(parts), "fileCount": len(outputs)},
            )
        else:
            prompt = f"""You received code review results for {len(outputs)} files, triaged by risk and importance.
Triage summary: {triage.summary}

Files in the critical section were analyzed in depth and deserve the most weight.
Low-priority files were only scanned quickly.

{chr(10).join(parts)}

Provide:
1. **Critical Issues** - Most important problems found, starting with the critical files
2. **Common Patterns** - Recurring issues or anti-patterns across files
3. **Top Recommendations** - 5 most impactful improvements
4. **Files Requiring Attention** - Which files need immediate work"""

        try:
            model_name = self.resolve_model(options.role, provider_context, results)
            return await self._synthesize("synthesize", prompt, model_name, sink)
        except Exception as e:
            logger.warning(f"自适应合成失败: {e}，回退到拼接输出")
            return format_concatenated(results)

    async def aggregate_batched(
        self,
        results: ResultsLike,
        provider_context: str,
        options: AggregationOptions | None = None,
        sink: EventSink | None = None,
        triage: TriageResult | None = None,
    ) -> str:
        """文件数超过批次大小时并发生成批次摘要，再合成最终报告"""
        options = options or AggregationOptions()
        batch_size = (
            options.batch_size if options.batch_size is not None else self.settings.batch_size
        )

        if batch_size <= 0 or len(results) <= batch_size:
            return await self.synthesize_adaptive(results, triage, provider_context, options, sink)

        # 按分诊优先级排序后分批，关键文件集中在前面的批次
        files = list(results)
        if triage is not None:
            rank = {s.file: i for i, s in enumerate(triage.scores)}
            files.sort(key=lambda f: rank.get(f, len(rank)))

        batches = [
            {f: results[f] for f in files[i : i + batch_size]}
            for i in range(0, len(files), batch_size)
        ]
        logger.info(f"分 {len(batches)} 批并发聚合 {len(files)} 个文件")

        async def run_batch(index: int, batch: ResultsLike) -> str:
            await emit_event(sink, batch_start_event(index, len(batches), len(batch)))
            summary = await self.aggregate_batch(
                batch, index, len(batches), provider_context, options, sink
            )
            await emit_event(sink, batch_complete_event(index, summary))
            return summary

        summaries = await asyncio.gather(
            *(run_batch(i, batch) for i, batch in enumerate(batches))
        )
        return await self.meta_aggregate(
            list(summaries), len(files), provider_context, options, sink
        )
