"""迭代执行策略

对文件集合逐个运行同一条流水线，并聚合结果。四种策略：

- V1: 顺序处理，每 batch_size 个文件做一次批次摘要，最后元聚合
- V2: 先分组，组内有限并发，逐组摘要后元聚合
- V3: 先分诊，关键/常规/快速三档分别使用不同模型、并发和工具权限
- V4: 符号化 + 连通性增强分诊 + 依赖分层顺序 + 依赖摘要上下文

单个文件的失败只记录到 skipped_files，不中断整个运行。
"""

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace

from loguru import logger

from modelmap.core.config import ModelMapSettings, get_settings
from modelmap.core.exceptions import FileSkippedError, UnknownPipelineError
from modelmap.model_map.registry import ModelRegistry
from modelmap.model_map.router import TaskRouter
from modelmap.model_map.schema import PipelineDefinition
from modelmap.orchestrator.aggregator import AggregationOptions, Aggregator, format_concatenated
from modelmap.orchestrator.files import format_file_input, read_file_content
from modelmap.orchestrator.grouping import (
    FileGroup,
    GroupingOptions,
    GroupingResult,
    ensure_unique_names,
    group_files,
)
from modelmap.orchestrator.parallel import ResultCollector, SkippedFile, TaskPool
from modelmap.orchestrator.triage import (
    TriageOptions,
    TriageResult,
    enhance_with_connectivity,
    triage_files,
)
from modelmap.pipeline.callbacks import EventSink, ToolConfirmer, emit_event
from modelmap.pipeline.events import (
    aggregation_start_event,
    batch_complete_event,
    batch_start_event,
    file_complete_event,
    file_start_event,
    group_complete_event,
    group_start_event,
    grouping_complete_event,
    grouping_start_event,
    symbolication_complete_event,
    symbolication_progress_event,
    symbolication_start_event,
    triage_complete_event,
    triage_start_event,
)
from modelmap.pipeline.executor import PipelineExecutor, PipelineResult
from modelmap.symbols.context import compress_file_context, format_context_for_prompt
from modelmap.symbols.graph import get_dependency_summaries, get_optimal_processing_order
from modelmap.symbols.structure import build_codebase_structure
from modelmap.symbols.types import CodebaseStructure, SymbolExtractor

Grouper = Callable[
    [list[str], GroupingOptions | None, ModelRegistry | None, TaskRouter | None],
    Awaitable[GroupingResult],
]
Triager = Callable[
    [list[str], ModelRegistry, TaskRouter, TriageOptions | None],
    Awaitable[TriageResult],
]

# 各分诊档位的默认模型角色（None 表示使用步骤自身的角色）
TIER_ROLES: dict[str, str | None] = {
    "critical": "capable",
    "normal": None,
    "skip": "fast",
}
TIER_LABELS = {"critical": "关键", "normal": "常规", "skip": "快速"}
MAX_CRITICAL_CONCURRENCY = 2


@dataclass
class IterativeTiming:
    """各阶段耗时（毫秒）"""

    total_ms: float = 0
    processing_ms: float = 0
    symbolication_ms: float | None = None
    grouping_ms: float | None = None
    triage_ms: float | None = None
    aggregation_ms: float | None = None


@dataclass
class IterativeResult:
    """迭代执行结果"""

    file_results: dict[str, PipelineResult] = field(default_factory=dict)
    aggregated_output: str | None = None
    files_processed: int = 0
    total_files: int = 0
    models_used: list[str] = field(default_factory=list)
    skipped_files: list[SkippedFile] = field(default_factory=list)
    batch_summaries: list[str] | None = None
    groups: list[FileGroup] | None = None
    group_summaries: dict[str, str] | None = None
    triage_result: TriageResult | None = None
    structure: CodebaseStructure | None = None
    timing: IterativeTiming | None = None


@dataclass
class IterativeOptions:
    """迭代执行选项"""

    provider_context: str | None = None
    sink: EventSink | None = None
    confirm_tool: ToolConfirmer | None = None
    aggregation: AggregationOptions = field(default_factory=AggregationOptions)
    concurrency: int | None = None
    """文件级并发数（默认取配置）"""

    # V2
    grouping: GroupingOptions = field(default_factory=GroupingOptions)

    # V3 / V4
    enable_triage: bool = True
    triage: TriageOptions | None = None
    """分诊选项（默认按配置的 triage_role 和阈值构建）"""
    enable_agentic_steps: bool = True
    """关键文件是否允许工具调用"""
    model_overrides: dict[str, str] = field(default_factory=dict)
    """文件 -> 模型名或角色名，优先于分诊建议"""

    # V4
    structure: CodebaseStructure | None = None
    """预先构建的代码库结构（提供时跳过符号化）"""
    enable_symbolication: bool = True
    use_dependency_order: bool = True
    include_related_context: bool = True
    """是否在文件提示词前附加符号上下文和依赖摘要"""


@dataclass
class _FilePlan:
    file: str
    pipeline: PipelineDefinition
    model_override: str | None = None


def _without_tools(pipeline: PipelineDefinition) -> PipelineDefinition:
    """返回禁用所有步骤工具调用的流水线副本"""
    if not any(step.allow_tool_use for step in pipeline.steps):
        return pipeline
    steps = [step.model_copy(update={"allow_tool_use": False}) for step in pipeline.steps]
    return pipeline.model_copy(update={"steps": steps})


class IterativeExecutor:
    """迭代执行器

    对多个文件运行流水线并聚合结果，提供 V1-V4 四种策略。
    """

    def __init__(
        self,
        executor: PipelineExecutor,
        registry: ModelRegistry,
        router: TaskRouter,
        settings: ModelMapSettings | None = None,
        extractor: SymbolExtractor | None = None,
        grouper: Grouper = group_files,
        triager: Triager = triage_files,
    ):
        """初始化迭代执行器

        Args:
            executor: 流水线执行器
            registry: 模型注册表
            router: 任务路由器
            settings: 运行时配置
            extractor: 符号提取器（V4 符号化需要）
            grouper: 分组函数
            triager: 分诊函数
        """
        self.executor = executor
        self.registry = registry
        self.router = router
        self.settings = settings or get_settings()
        self.extractor = extractor
        self.grouper = grouper
        self.triager = triager
        self.aggregator = Aggregator(registry, router, self.settings)

    # ==================== V1 ====================

    async def execute_iterative(
        self,
        pipeline: PipelineDefinition,
        files: list[str],
        options: IterativeOptions | None = None,
    ) -> IterativeResult:
        """V1：顺序处理文件，分批摘要后元聚合

        Args:
            pipeline: 流水线定义
            files: 文件列表
            options: 迭代选项

        Returns:
            IterativeResult
        """
        options = options or IterativeOptions()
        start = time.perf_counter()
        provider_context = self._provider_context(pipeline, options)
        aggregation = options.aggregation
        batch_size = self._batch_size(aggregation)
        use_batching = aggregation.enabled and batch_size > 0 and len(files) > batch_size
        total_batches = -(-len(files) // batch_size) if use_batching else 1

        collector = ResultCollector()
        batch_summaries: list[str] = []
        current_batch: dict[str, PipelineResult] = {}

        async def flush_batch() -> None:
            index = len(batch_summaries)
            await emit_event(options.sink, batch_start_event(index, total_batches, len(current_batch)))
            summary = await self.aggregator.aggregate_batch(
                current_batch, index, total_batches, provider_context, aggregation, options.sink
            )
            batch_summaries.append(summary)
            await emit_event(options.sink, batch_complete_event(index, summary))
            current_batch.clear()

        for index, file in enumerate(files):
            result = await self._process_file(
                _FilePlan(file, pipeline), index, len(files), options, collector, provider_context
            )
            if result is None or not use_batching:
                continue
            current_batch[file] = result
            if len(current_batch) >= batch_size:
                await flush_batch()

        if use_batching and current_batch:
            await flush_batch()

        processing_ms = (time.perf_counter() - start) * 1000
        aggregation_start = time.perf_counter()
        aggregated: str | None = None

        if collector.file_results:
            if not aggregation.enabled:
                aggregated = format_concatenated(collector.file_results)
            else:
                await emit_event(options.sink, aggregation_start_event())
                if batch_summaries:
                    aggregated = await self.aggregator.meta_aggregate(
                        batch_summaries,
                        collector.files_processed,
                        provider_context,
                        aggregation,
                        options.sink,
                    )
                else:
                    aggregated = await self.aggregator.aggregate_results(
                        collector.file_results, provider_context, aggregation, options.sink
                    )

        timing = IterativeTiming(
            processing_ms=processing_ms,
            aggregation_ms=(time.perf_counter() - aggregation_start) * 1000,
        )
        return self._build_result(
            collector,
            files,
            aggregated,
            start,
            timing,
            batch_summaries=batch_summaries or None,
        )

    # ==================== V2 ====================

    async def execute_iterative_v2(
        self,
        pipeline: PipelineDefinition,
        files: list[str],
        options: IterativeOptions | None = None,
    ) -> IterativeResult:
        """V2：按分组处理，组内并发，逐组摘要后元聚合"""
        options = options or IterativeOptions()
        start = time.perf_counter()
        provider_context = self._provider_context(pipeline, options)
        concurrency = self._concurrency(options)
        timing = IterativeTiming()
        collector = ResultCollector()

        await emit_event(options.sink, grouping_start_event(len(files)))
        grouping_options = options.grouping
        if grouping_options.provider_context is None:
            grouping_options = replace(grouping_options, provider_context=provider_context)
        grouping = await self.grouper(files, grouping_options, self.registry, self.router)
        grouping.groups = ensure_unique_names(grouping.groups)
        timing.grouping_ms = grouping.duration_ms
        await emit_event(options.sink, grouping_complete_event(grouping.groups))
        logger.info(f"分组完成: {len(files)} 个文件分为 {len(grouping.groups)} 组")

        group_summaries: dict[str, str] = {}
        processing_start = time.perf_counter()
        offset = 0

        for group_index, group in enumerate(grouping.groups):
            await emit_event(options.sink, group_start_event(group, group_index, len(grouping.groups)))
            plans = [_FilePlan(f, pipeline) for f in group.files]
            await self._process_tier(
                plans, offset, len(files), concurrency, options, collector, provider_context
            )
            offset += len(plans)

            group_results = {
                f: collector.file_results[f] for f in group.files if f in collector.file_results
            }
            if not group_results:
                continue
            if options.aggregation.enabled:
                summary = await self.aggregator.aggregate_group(
                    group, group_results, provider_context, options.aggregation, options.sink
                )
            else:
                summary = format_concatenated(group_results)
            group_summaries[group.name] = summary
            await emit_event(options.sink, group_complete_event(group, summary))

        timing.processing_ms = (time.perf_counter() - processing_start) * 1000
        aggregation_start = time.perf_counter()
        aggregated: str | None = None

        if group_summaries:
            if not options.aggregation.enabled:
                aggregated = format_concatenated(group_summaries)
            elif len(group_summaries) == 1:
                aggregated = next(iter(group_summaries.values()))
            else:
                await emit_event(options.sink, aggregation_start_event())
                aggregated = await self.aggregator.meta_aggregate(
                    list(group_summaries.values()),
                    collector.files_processed,
                    provider_context,
                    options.aggregation,
                    options.sink,
                    labels=[f"Group: {name}" for name in group_summaries],
                )

        timing.aggregation_ms = (time.perf_counter() - aggregation_start) * 1000
        return self._build_result(
            collector,
            files,
            aggregated,
            start,
            timing,
            groups=grouping.groups,
            group_summaries=group_summaries,
        )

    # ==================== V3 ====================

    async def execute_iterative_v3(
        self,
        pipeline: PipelineDefinition,
        files: list[str],
        options: IterativeOptions | None = None,
    ) -> IterativeResult:
        """V3：分诊后按档位自适应处理

        - 关键文件：capable 角色、允许工具调用、并发不超过 critical_concurrency
        - 常规文件：步骤自身角色、常规并发
        - 快速文件：fast 角色、两倍并发
        """
        options = options or IterativeOptions()
        start = time.perf_counter()
        provider_context = self._provider_context(pipeline, options)
        timing = IterativeTiming()
        collector = ResultCollector()

        triage = await self._run_triage(files, provider_context, options, timing)

        processing_start = time.perf_counter()
        await self._process_by_triage(pipeline, files, triage, options, collector, provider_context)
        timing.processing_ms = (time.perf_counter() - processing_start) * 1000

        aggregated = await self._final_aggregation(collector, triage, provider_context, options, timing)
        return self._build_result(
            collector, files, aggregated, start, timing, triage_result=triage
        )

    # ==================== V4 ====================

    async def execute_iterative_v4(
        self,
        pipeline_name: str,
        files: list[str],
        options: IterativeOptions | None = None,
    ) -> IterativeResult:
        """V4：符号化感知的自适应处理

        1. 符号化：提取符号、构建依赖图和连通性（一次）
        2. 分诊，并按连通性增强评分
        3. 按依赖层级顺序处理（被依赖的文件先处理），层内并发
        4. 文件提示词附加符号上下文和已处理依赖的摘要
        5. 超过批次大小时并发批次摘要，再合成最终报告

        Raises:
            UnknownPipelineError: 流水线不存在
        """
        pipeline = self.router.get_pipeline(pipeline_name)
        if pipeline is None:
            raise UnknownPipelineError(pipeline_name)

        options = options or IterativeOptions()
        start = time.perf_counter()
        provider_context = self._provider_context(pipeline, options)
        timing = IterativeTiming()
        collector = ResultCollector()

        structure = await self._symbolicate(files, options, timing)
        triage = await self._run_triage(files, provider_context, options, timing, structure)

        processing_start = time.perf_counter()
        if structure is not None and options.use_dependency_order:
            priorities = triage.priorities if triage else None
            order = get_optimal_processing_order(structure.dependency_graph, files, priorities)
            logger.info(f"按依赖分 {len(order.tier_files)} 层处理 {len(order.order)} 个文件")

            concurrency = self._concurrency(options)
            offset = 0
            for tier in sorted(order.tier_files):
                tier_files = order.tier_files[tier]
                plans = [self._plan_file(f, pipeline, triage, options) for f in tier_files]
                logger.debug(f"处理第 {tier} 层: {len(plans)} 个文件")
                await self._process_tier(
                    plans,
                    offset,
                    len(files),
                    concurrency,
                    options,
                    collector,
                    provider_context,
                    context_for=self._related_context(structure, collector, options),
                )
                offset += len(plans)
        else:
            await self._process_by_triage(
                pipeline,
                files,
                triage,
                options,
                collector,
                provider_context,
                context_for=self._related_context(structure, collector, options),
            )
        timing.processing_ms = (time.perf_counter() - processing_start) * 1000

        aggregated = await self._final_aggregation(
            collector, triage, provider_context, options, timing, batched=True
        )
        return self._build_result(
            collector,
            files,
            aggregated,
            start,
            timing,
            triage_result=triage,
            structure=structure,
        )

    # ==================== 内部方法 ====================

    def _provider_context(self, pipeline: PipelineDefinition, options: IterativeOptions) -> str:
        return (
            options.provider_context
            or pipeline.provider
            or self.settings.default_provider_context
        )

    def _concurrency(self, options: IterativeOptions) -> int:
        return max(1, options.concurrency or self.settings.concurrency)

    def _batch_size(self, aggregation: AggregationOptions) -> int:
        if aggregation.batch_size is not None:
            return aggregation.batch_size
        return self.settings.batch_size

    def _triage_options(self, provider_context: str, options: IterativeOptions) -> TriageOptions:
        triage_options = options.triage or TriageOptions(
            role=self.settings.triage_role,
            deep_threshold=self.settings.deep_threshold,
            skip_threshold=self.settings.skip_threshold,
        )
        return replace(
            triage_options,
            provider_context=triage_options.provider_context or provider_context,
            structure=None,
        )

    async def _process_file(
        self,
        plan: _FilePlan,
        index: int,
        total: int,
        options: IterativeOptions,
        collector: ResultCollector,
        provider_context: str,
        context_prefix: str | None = None,
    ) -> PipelineResult | None:
        """处理单个文件，失败时记录为跳过并返回 None"""
        file = plan.file
        await emit_event(options.sink, file_start_event(file, index, total))

        try:
            content = read_file_content(
                file, self.settings.max_file_size, self.settings.project_root
            )
            pipeline_input = format_file_input(file, content)
            if context_prefix:
                pipeline_input = f"{context_prefix}\n\n{pipeline_input}"

            result = await self.executor.execute(
                plan.pipeline,
                pipeline_input,
                provider_context=provider_context,
                model_override=plan.model_override,
                sink=options.sink,
                confirm_tool=options.confirm_tool,
            )
        except FileSkippedError as e:
            logger.info(f"跳过文件 {file}: {e.reason}")
            await collector.add_skipped(file, e.reason)
            return None
        except Exception as e:
            logger.warning(f"文件处理失败，已跳过 {file}: {e}")
            await collector.add_skipped(file, str(e))
            return None

        await collector.add_result(file, result)
        await emit_event(options.sink, file_complete_event(file, result.output))
        return result

    async def _process_tier(
        self,
        plans: list[_FilePlan],
        offset: int,
        total: int,
        concurrency: int,
        options: IterativeOptions,
        collector: ResultCollector,
        provider_context: str,
        context_for: Callable[[str], str | None] | None = None,
    ) -> None:
        """以有限并发处理一组文件"""
        if not plans:
            return
        pool = TaskPool(concurrency)

        async def run(item: tuple[int, _FilePlan]) -> PipelineResult | None:
            index, plan = item
            prefix = context_for(plan.file) if context_for else None
            return await self._process_file(
                plan, offset + index, total, options, collector, provider_context, prefix
            )

        await pool.map(run, list(enumerate(plans)))

    def _plan_file(
        self,
        file: str,
        pipeline: PipelineDefinition,
        triage: TriageResult | None,
        options: IterativeOptions,
    ) -> _FilePlan:
        """按分诊档位决定文件使用的流水线（是否允许工具）和模型覆盖"""
        tier = "normal"
        if triage is not None:
            if file in triage.critical_paths:
                tier = "critical"
            elif file in triage.skip_paths:
                tier = "skip"

        score = triage.score_for(file) if triage else None
        override = (
            options.model_overrides.get(file)
            or (score.suggested_model if score else None)
            or TIER_ROLES[tier]
        )
        tooled = tier == "critical" and options.enable_agentic_steps
        return _FilePlan(file, pipeline if tooled else _without_tools(pipeline), override)

    async def _process_by_triage(
        self,
        pipeline: PipelineDefinition,
        files: list[str],
        triage: TriageResult | None,
        options: IterativeOptions,
        collector: ResultCollector,
        provider_context: str,
        context_for: Callable[[str], str | None] | None = None,
    ) -> None:
        """依次处理关键、常规、快速三档文件"""
        concurrency = self._concurrency(options)
        wanted = set(files)

        if triage is None:
            critical: list[str] = []
            skip: list[str] = []
            normal = list(files)
        else:
            critical = [f for f in triage.critical_paths if f in wanted]
            skip = [f for f in triage.skip_paths if f in wanted]
            triaged = set(critical) | set(skip)
            normal = [f for f in triage.normal_paths if f in wanted]
            triaged |= set(normal)
            normal += [f for f in files if f not in triaged]

        tiers = [
            (
                "critical",
                critical,
                min(self.settings.critical_concurrency, concurrency, MAX_CRITICAL_CONCURRENCY),
            ),
            ("normal", normal, concurrency),
            ("skip", skip, concurrency * 2),
        ]
        offset = 0
        for name, tier_files, tier_concurrency in tiers:
            if not tier_files:
                continue
            logger.info(f"处理{TIER_LABELS[name]}文件: {len(tier_files)} 个，并发 {tier_concurrency}")
            plans = [self._plan_file(f, pipeline, triage, options) for f in tier_files]
            await self._process_tier(
                plans,
                offset,
                len(files),
                max(1, tier_concurrency),
                options,
                collector,
                provider_context,
                context_for,
            )
            offset += len(plans)

    async def _run_triage(
        self,
        files: list[str],
        provider_context: str,
        options: IterativeOptions,
        timing: IterativeTiming,
        structure: CodebaseStructure | None = None,
    ) -> TriageResult | None:
        if not options.enable_triage:
            return None

        triage_options = self._triage_options(provider_context, options)
        await emit_event(options.sink, triage_start_event(len(files)))
        triage_start = time.perf_counter()

        result = await self.triager(files, self.registry, self.router, triage_options)
        if structure is not None:
            result = enhance_with_connectivity(
                result,
                structure,
                triage_options.deep_threshold,
                triage_options.skip_threshold,
            )

        timing.triage_ms = (time.perf_counter() - triage_start) * 1000
        await emit_event(options.sink, triage_complete_event(result))
        return result

    async def _symbolicate(
        self,
        files: list[str],
        options: IterativeOptions,
        timing: IterativeTiming,
    ) -> CodebaseStructure | None:
        if options.structure is not None:
            return options.structure
        if not options.enable_symbolication:
            return None
        if self.extractor is None:
            logger.warning("未配置符号提取器，跳过符号化")
            return None

        await emit_event(options.sink, symbolication_start_event(len(files)))

        async def on_progress(processed: int, total: int, file: str) -> None:
            await emit_event(options.sink, symbolication_progress_event(processed, total, file))

        result = await build_codebase_structure(
            files, self.extractor, self.settings.project_root, on_progress
        )
        timing.symbolication_ms = result.duration_ms
        await emit_event(options.sink, symbolication_complete_event(result))
        return result.structure

    def _related_context(
        self,
        structure: CodebaseStructure | None,
        collector: ResultCollector,
        options: IterativeOptions,
    ) -> Callable[[str], str | None] | None:
        """构造文件上下文函数：符号摘要 + 已处理依赖的输出摘要"""
        if structure is None or not options.include_related_context:
            return None

        def context_for(file: str) -> str | None:
            sections = []
            if file in structure.files:
                symbol_context = format_context_for_prompt(compress_file_context(file, structure))
                sections.append(f"## Symbol Context\n{symbol_context}")

            summaries = get_dependency_summaries(
                file, structure.dependency_graph, collector.outputs()
            )
            if summaries:
                lines = "\n".join(f"- {s}" for s in summaries)
                sections.append(f"## Already Reviewed Dependencies\n{lines}")
            return "\n\n".join(sections) or None

        return context_for

    async def _final_aggregation(
        self,
        collector: ResultCollector,
        triage: TriageResult | None,
        provider_context: str,
        options: IterativeOptions,
        timing: IterativeTiming,
        batched: bool = False,
    ) -> str | None:
        if not collector.file_results:
            return None

        aggregation_start = time.perf_counter()
        if not options.aggregation.enabled:
            output = format_concatenated(collector.file_results)
        else:
            await emit_event(options.sink, aggregation_start_event())
            if batched:
                output = await self.aggregator.aggregate_batched(
                    collector.file_results,
                    provider_context,
                    options.aggregation,
                    options.sink,
                    triage,
                )
            else:
                output = await self.aggregator.synthesize_adaptive(
                    collector.file_results,
                    triage,
                    provider_context,
                    options.aggregation,
                    options.sink,
                )
        timing.aggregation_ms = (time.perf_counter() - aggregation_start) * 1000
        return output

    def _build_result(
        self,
        collector: ResultCollector,
        files: list[str],
        aggregated: str | None,
        start: float,
        timing: IterativeTiming,
        **extra,
    ) -> IterativeResult:
        timing.total_ms = (time.perf_counter() - start) * 1000
        logger.info(
            f"迭代执行完成: 处理 {collector.files_processed}/{len(files)} 个文件，"
            f"跳过 {len(collector.skipped_files)} 个，耗时 {timing.total_ms / 1000:.1f}s"
        )
        return IterativeResult(
            file_results=dict(collector.file_results),
            aggregated_output=aggregated,
            files_processed=collector.files_processed,
            total_files=len(files),
            models_used=list(collector.models_used),
            skipped_files=list(collector.skipped_files),
            timing=timing,
            **extra,
        )
