"""测试迭代执行策略（V1-V4）"""

import asyncio
import re
from dataclasses import dataclass

import pytest

from modelmap.core.exceptions import UnknownPipelineError
from modelmap.model_map.schema import PipelineDefinition, PipelineStep
from modelmap.orchestrator.aggregator import AggregationOptions, format_concatenated
from modelmap.orchestrator.grouping import FileGroup, GroupingResult
from modelmap.orchestrator.iterative import IterativeExecutor, IterativeOptions
from modelmap.orchestrator.triage import (
    FileScore,
    RiskLevel,
    TriageOptions,
    TriageResult,
    create_fallback_result,
)
from modelmap.pipeline.events import PipelineEventType
from modelmap.pipeline.executor import PipelineResult
from modelmap.symbols.types import (
    CodeSymbol,
    FileSymbolInfo,
    ImportStatement,
    SymbolKind,
    SymbolVisibility,
)

_FILE_HEADER = re.compile(r"### File: (\S+)")


def review_handler(messages):
    """按提示词类型返回可预测的响应"""
    prompt = messages[-1].content
    batch = re.search(r"summarizing batch (\d+) of", prompt)
    if batch:
        return f"summary-{batch.group(1)}"
    group = re.search(r'summarizing the "([^"]+)" group', prompt)
    if group:
        return f"summary of {group.group(1)}"
    if prompt.startswith("You received"):
        return "final report"
    return f"reviewed {_FILE_HEADER.search(prompt).group(1)}"


@dataclass
class RecordedCall:
    file: str
    pipeline: PipelineDefinition
    input: str
    model_override: str | None
    provider_context: str | None


class RecordingExecutor:
    """记录调用参数的流水线执行器替身"""

    def __init__(self):
        self.calls: list[RecordedCall] = []

    async def execute(
        self,
        pipeline,
        input,
        *,
        provider_context=None,
        model_override=None,
        sink=None,
        confirm_tool=None,
    ) -> PipelineResult:
        file = _FILE_HEADER.search(input).group(1)
        self.calls.append(RecordedCall(file, pipeline, input, model_override, provider_context))
        return PipelineResult(output=f"reviewed {file}", models_used=[model_override or "step-role"])

    def call_for(self, file: str) -> RecordedCall:
        return next(c for c in self.calls if c.file == file)


class SlowExecutor:
    """按模型覆盖值统计并发峰值的执行器替身"""

    def __init__(self):
        self.active: dict[str, int] = {}
        self.peak: dict[str, int] = {}

    async def execute(self, pipeline, input, *, model_override=None, **kwargs) -> PipelineResult:
        key = model_override or "normal"
        self.active[key] = self.active.get(key, 0) + 1
        self.peak[key] = max(self.peak.get(key, 0), self.active[key])
        await asyncio.sleep(0.01)
        self.active[key] -= 1
        return PipelineResult(output="ok", models_used=[key])


class FakeTriager:
    def __init__(self, result: TriageResult | None = None):
        self.result = result
        self.calls: list[tuple[list[str], TriageOptions | None]] = []

    async def __call__(self, files, registry, router, options=None) -> TriageResult:
        self.calls.append((files, options))
        return self.result or create_fallback_result(files, options or TriageOptions())


class LineExtractor:
    """import X / def name / class Name"""

    def extract(self, content: str, file_path: str) -> FileSymbolInfo:
        info = FileSymbolInfo(file=file_path)
        for line in content.splitlines():
            keyword, _, rest = line.partition(" ")
            if keyword == "import":
                info.imports.append(ImportStatement(source=rest))
            elif keyword in ("def", "class"):
                kind = SymbolKind.FUNCTION if keyword == "def" else SymbolKind.CLASS
                info.symbols.append(
                    CodeSymbol(rest, kind, file_path, visibility=SymbolVisibility.EXPORT)
                )
        return info


def _triage(critical=(), normal=(), skip=(), suggested=None) -> TriageResult:
    suggested = suggested or {}
    ordered = [*critical, *normal, *skip]
    scores = [
        FileScore(
            file=f,
            risk=RiskLevel.MEDIUM,
            complexity=5,
            importance=5,
            reasoning="fixed",
            priority=len(ordered) - i,
            suggested_model=suggested.get(f),
        )
        for i, f in enumerate(ordered)
    ]
    return TriageResult(
        scores=scores,
        summary="Fixed triage",
        critical_paths=list(critical),
        normal_paths=list(normal),
        skip_paths=list(skip),
    )


TOOLED = PipelineDefinition(
    steps=[
        PipelineStep(
            name="inspect",
            role="capable",
            prompt="Inspect {input}",
            output="notes",
            allow_tool_use=True,
            tools=["read_file"],
        )
    ]
)


@pytest.fixture
def iterative(executor, registry, router, settings) -> IterativeExecutor:
    return IterativeExecutor(executor, registry, router, settings)


@pytest.fixture
def recorder() -> RecordingExecutor:
    return RecordingExecutor()


class TestIterativeV1:
    """V1 顺序处理测试"""

    @pytest.mark.asyncio
    async def test_batches_and_meta_aggregation(
        self, iterative, router, fake_provider, write_files, sink
    ) -> None:
        fake_provider("capable-a").handler = review_handler
        files = write_files({f"f{i}.py": f"x = {i}\n" for i in range(5)})

        result = await iterative.execute_iterative(
            router.get_pipeline("single"),
            files,
            IterativeOptions(sink=sink, aggregation=AggregationOptions(batch_size=2)),
        )

        assert result.files_processed == 5
        assert result.total_files == 5
        assert result.file_results["f3.py"].output == "reviewed f3.py"
        assert result.batch_summaries == ["summary-1", "summary-2", "summary-3"]
        assert result.aggregated_output == "final report"
        assert result.models_used == ["capable-a"]

        starts = sink.of_type(PipelineEventType.BATCH_START)
        assert [e.data["batch_index"] for e in starts] == [0, 1, 2]
        assert [e.data["files_in_batch"] for e in starts] == [2, 2, 1]
        assert all(e.data["total_batches"] == 3 for e in starts)
        assert len(sink.of_type(PipelineEventType.META_AGGREGATION_START)) == 1

        file_starts = sink.of_type(PipelineEventType.FILE_START)
        assert [(e.file, e.data["index"], e.data["total"]) for e in file_starts] == [
            (f"f{i}.py", i, 5) for i in range(5)
        ]

    @pytest.mark.asyncio
    async def test_skipped_files_do_not_fill_batches(
        self, executor, registry, router, settings, fake_provider, write_files, tmp_path
    ) -> None:
        fake_provider("capable-a").handler = review_handler
        write_files({"a.py": "a = 1", "b.py": "b = 2", "c.py": "c = 3", "big.py": "x" * 200})
        iterative = IterativeExecutor(
            executor, registry, router, settings.model_copy(update={"max_file_size": 100})
        )

        result = await iterative.execute_iterative(
            router.get_pipeline("single"),
            ["a.py", "big.py", "b.py", "missing.py", "c.py"],
            IterativeOptions(aggregation=AggregationOptions(batch_size=2)),
        )

        assert result.files_processed == 3
        assert result.total_files == 5
        skipped = {s.file: s.reason for s in result.skipped_files}
        assert skipped["big.py"] == "File too large (200 bytes > 100 bytes)"
        assert skipped["missing.py"] == "File not found or empty"
        assert result.batch_summaries == ["summary-1", "summary-2"]

    @pytest.mark.asyncio
    async def test_pipeline_failure_skips_file(
        self, iterative, router, fake_provider, write_files
    ) -> None:
        def handler(messages):
            if "### File: bad.py" in messages[-1].content:
                raise RuntimeError("model crashed")
            return review_handler(messages)

        fake_provider("capable-a").handler = handler
        files = write_files({"good.py": "ok = True", "bad.py": "boom = True"})

        result = await iterative.execute_iterative(router.get_pipeline("single"), files)

        assert list(result.file_results) == ["good.py"]
        assert len(result.skipped_files) == 1
        assert "model crashed" in result.skipped_files[0].reason
        assert result.aggregated_output == "final report"

    @pytest.mark.asyncio
    async def test_single_pass_aggregation(
        self, iterative, router, fake_provider, write_files, sink
    ) -> None:
        provider = fake_provider("capable-a")
        provider.handler = review_handler
        files = write_files({"a.py": "a = 1", "b.py": "b = 2"})

        result = await iterative.execute_iterative(
            router.get_pipeline("single"), files, IterativeOptions(sink=sink)
        )

        assert result.batch_summaries is None
        assert result.aggregated_output == "final report"
        assert "code review results for 2 files" in provider.prompts[-1]
        assert not sink.of_type(PipelineEventType.BATCH_START)
        assert len(sink.of_type(PipelineEventType.AGGREGATION_START)) == 1

    @pytest.mark.asyncio
    async def test_aggregation_disabled(self, iterative, router, fake_provider, write_files) -> None:
        provider = fake_provider("capable-a")
        files = write_files({f"f{i}.py": "pass" for i in range(4)})

        result = await iterative.execute_iterative(
            router.get_pipeline("single"),
            files,
            IterativeOptions(aggregation=AggregationOptions(enabled=False, batch_size=2)),
        )

        assert result.batch_summaries is None
        assert result.aggregated_output == format_concatenated(result.file_results)
        assert len(provider.prompts) == 4

    @pytest.mark.asyncio
    async def test_nothing_processed(self, iterative, router) -> None:
        result = await iterative.execute_iterative(router.get_pipeline("single"), ["ghost.py"])

        assert result.files_processed == 0
        assert result.aggregated_output is None
        assert result.timing.total_ms >= 0


class TestIterativeV2:
    """V2 分组处理测试"""

    @pytest.mark.asyncio
    async def test_groups_then_meta(
        self, iterative, router, fake_provider, write_files, sink
    ) -> None:
        provider = fake_provider("capable-a")
        provider.handler = review_handler
        files = write_files({"api/a.py": "a = 1", "api/b.py": "b = 2", "db/c.py": "c = 3"})

        result = await iterative.execute_iterative_v2(
            router.get_pipeline("single"), files, IterativeOptions(sink=sink)
        )

        assert [g.name for g in result.groups] == ["api", "db"]
        assert result.group_summaries == {"api": "summary of api", "db": "summary of db"}
        assert result.aggregated_output == "final report"
        assert "## Group: api Summary\n\nsummary of api" in provider.prompts[-1]
        assert result.files_processed == 3

        types = sink.types
        assert types[0] == PipelineEventType.GROUPING_START
        assert types.count(PipelineEventType.GROUP_START) == 2
        assert types.count(PipelineEventType.GROUP_COMPLETE) == 2
        assert types.index(PipelineEventType.GROUPING_COMPLETE) < types.index(
            PipelineEventType.FILE_START
        )

    @pytest.mark.asyncio
    async def test_single_group_summary_is_final(
        self, iterative, router, fake_provider, write_files, sink
    ) -> None:
        fake_provider("capable-a").handler = review_handler
        files = write_files({"api/a.py": "a = 1", "api/b.py": "b = 2"})

        result = await iterative.execute_iterative_v2(
            router.get_pipeline("single"), files, IterativeOptions(sink=sink)
        )

        assert result.aggregated_output == "summary of api"
        assert not sink.of_type(PipelineEventType.META_AGGREGATION_START)

    @pytest.mark.asyncio
    async def test_custom_grouper_receives_context(
        self, executor, registry, router, settings, fake_provider, write_files
    ) -> None:
        fake_provider("capable-a").handler = review_handler
        files = write_files({"x.py": "x = 1", "y.py": "y = 2"})
        seen = []

        async def grouper(group_files, options, registry_arg, router_arg):
            seen.append(options.provider_context)
            return GroupingResult(
                groups=[FileGroup("first", ["y.py"]), FileGroup("second", ["x.py", "gone.py"])],
                total_files=len(group_files),
            )

        iterative = IterativeExecutor(executor, registry, router, settings, grouper=grouper)
        result = await iterative.execute_iterative_v2(router.get_pipeline("single"), files)

        assert seen == ["openai"]
        assert list(result.group_summaries) == ["first", "second"]
        assert [s.file for s in result.skipped_files] == ["gone.py"]

    @pytest.mark.asyncio
    async def test_groups_with_same_tail_keep_all_results(
        self, iterative, router, fake_provider, write_files
    ) -> None:
        fake_provider("capable-a").handler = review_handler
        files = write_files({"pkg_a/src/utils/x.py": "x = 1", "pkg_b/src/utils/y.py": "y = 2"})

        result = await iterative.execute_iterative_v2(
            router.get_pipeline("single"),
            files,
            IterativeOptions(aggregation=AggregationOptions(enabled=False)),
        )

        assert list(result.group_summaries) == ["src/utils", "src/utils-2"]
        assert "reviewed pkg_a/src/utils/x.py" in result.aggregated_output
        assert "reviewed pkg_b/src/utils/y.py" in result.aggregated_output
        assert result.files_processed == 2

    @pytest.mark.asyncio
    async def test_custom_grouper_names_made_unique(
        self, executor, registry, router, settings, fake_provider, write_files
    ) -> None:
        fake_provider("capable-a").handler = review_handler
        files = write_files({"x.py": "x = 1", "y.py": "y = 2"})

        async def grouper(group_files, options, registry_arg, router_arg):
            return GroupingResult(
                groups=[FileGroup("same", ["x.py"]), FileGroup("same", ["y.py"])],
                total_files=len(group_files),
            )

        iterative = IterativeExecutor(executor, registry, router, settings, grouper=grouper)
        result = await iterative.execute_iterative_v2(router.get_pipeline("single"), files)

        assert result.group_summaries == {"same": "summary of same", "same-2": "summary of same-2"}


class TestIterativeV3:
    """V3 分诊自适应测试"""

    @pytest.mark.asyncio
    async def test_tiers_select_model_and_tools(
        self, recorder, registry, router, settings, fake_provider, write_files, sink
    ) -> None:
        aggregator_provider = fake_provider("capable-a")
        files = write_files({"crit.py": "c = 1", "norm.py": "n = 1", "low.py": "l = 1"})
        triager = FakeTriager(_triage(["crit.py"], ["norm.py"], ["low.py"]))
        iterative = IterativeExecutor(recorder, registry, router, settings, triager=triager)

        result = await iterative.execute_iterative_v3(TOOLED, files, IterativeOptions(sink=sink))

        assert [c.file for c in recorder.calls] == ["crit.py", "norm.py", "low.py"]
        crit, norm, low = (recorder.call_for(f) for f in ("crit.py", "norm.py", "low.py"))
        assert crit.model_override == "capable"
        assert crit.pipeline.steps[0].allow_tool_use
        assert norm.model_override is None
        assert not norm.pipeline.steps[0].allow_tool_use
        assert low.model_override == "fast"
        assert not low.pipeline.steps[0].allow_tool_use
        assert TOOLED.steps[0].allow_tool_use

        assert result.triage_result.summary == "Fixed triage"
        assert "## Critical Files (deep analysis)" in aggregator_provider.prompts[-1]
        assert result.aggregated_output == "[capable-a] reviewed"
        assert sink.types[:2] == [PipelineEventType.TRIAGE_START, PipelineEventType.TRIAGE_COMPLETE]

        _, options = triager.calls[0]
        assert options.provider_context == "openai"
        assert options.role == "fast"
        assert options.structure is None

    @pytest.mark.asyncio
    async def test_override_precedence(
        self, recorder, registry, router, settings, fake_provider, write_files
    ) -> None:
        fake_provider("capable-a")
        files = write_files({"crit.py": "c = 1", "norm.py": "n = 1", "extra.py": "e = 1"})
        triager = FakeTriager(
            _triage(["crit.py"], ["norm.py"], suggested={"crit.py": "reasoning", "norm.py": "fast"})
        )
        iterative = IterativeExecutor(recorder, registry, router, settings, triager=triager)

        await iterative.execute_iterative_v3(
            TOOLED,
            files,
            IterativeOptions(model_overrides={"norm.py": "reasoning-a"}, enable_agentic_steps=False),
        )

        assert recorder.call_for("crit.py").model_override == "reasoning"
        assert not recorder.call_for("crit.py").pipeline.steps[0].allow_tool_use
        assert recorder.call_for("norm.py").model_override == "reasoning-a"
        assert recorder.call_for("extra.py").model_override is None
        assert [c.file for c in recorder.calls] == ["crit.py", "norm.py", "extra.py"]

    @pytest.mark.asyncio
    async def test_triage_disabled(
        self, recorder, registry, router, settings, fake_provider, write_files
    ) -> None:
        fake_provider("capable-a")
        files = write_files({"a.py": "a = 1", "b.py": "b = 2"})
        triager = FakeTriager()
        iterative = IterativeExecutor(recorder, registry, router, settings, triager=triager)

        result = await iterative.execute_iterative_v3(
            TOOLED, files, IterativeOptions(enable_triage=False)
        )

        assert triager.calls == []
        assert result.triage_result is None
        assert all(c.model_override is None for c in recorder.calls)
        assert result.files_processed == 2

    @pytest.mark.asyncio
    async def test_end_to_end_with_model_triage(
        self, iterative, router, fake_provider, write_files
    ) -> None:
        triage_response = (
            '{"summary": "Two files", "scores": ['
            '{"file": "core.py", "risk": "critical", "complexity": 9, "importance": 9},'
            '{"file": "consts.py", "risk": "low", "complexity": 1, "importance": 1}]}'
        )
        fake_provider("fast-a").scripted = [triage_response]
        files = write_files({"core.py": "def run(): ...", "consts.py": "A = 1"})

        result = await iterative.execute_iterative_v3(router.get_pipeline("single"), files)

        assert result.triage_result.critical_paths == ["core.py"]
        assert result.triage_result.skip_paths == ["consts.py"]
        assert result.file_results["core.py"].models_used == ["capable-a"]
        assert result.file_results["consts.py"].models_used == ["fast-a"]
        assert result.models_used == ["capable-a", "fast-a"]

    @pytest.mark.asyncio
    async def test_tier_concurrency_limits(
        self, registry, router, settings, write_files
    ) -> None:
        critical = [f"crit{i}.py" for i in range(5)]
        normal = [f"norm{i}.py" for i in range(8)]
        skip = [f"low{i}.py" for i in range(12)]
        write_files({f: "pass" for f in critical + normal + skip})
        slow = SlowExecutor()
        iterative = IterativeExecutor(
            slow, registry, router, settings, triager=FakeTriager(_triage(critical, normal, skip))
        )

        result = await iterative.execute_iterative_v3(
            TOOLED,
            critical + normal + skip,
            IterativeOptions(concurrency=4, aggregation=AggregationOptions(enabled=False)),
        )

        assert result.files_processed == 25
        assert slow.peak == {"capable": 2, "normal": 4, "fast": 8}

    @pytest.mark.asyncio
    async def test_critical_tier_never_exceeds_two(
        self, registry, router, settings, write_files
    ) -> None:
        critical = [f"crit{i}.py" for i in range(6)]
        write_files({f: "pass" for f in critical})
        slow = SlowExecutor()
        iterative = IterativeExecutor(
            slow,
            registry,
            router,
            settings.model_copy(update={"critical_concurrency": 3}),
            triager=FakeTriager(_triage(critical)),
        )

        await iterative.execute_iterative_v3(
            TOOLED,
            critical,
            IterativeOptions(concurrency=8, aggregation=AggregationOptions(enabled=False)),
        )

        assert slow.peak == {"capable": 2}


class TestIterativeV4:
    """V4 符号化感知处理测试"""

    FILES = {
        "app/main.py": "import .service\ndef main",
        "app/service.py": "import .models\ndef serve",
        "app/models.py": "class User",
    }

    @pytest.mark.asyncio
    async def test_unknown_pipeline(self, iterative) -> None:
        with pytest.raises(UnknownPipelineError):
            await iterative.execute_iterative_v4("nope", ["a.py"])

    @pytest.mark.asyncio
    async def test_dependency_order_and_context(
        self, recorder, registry, router, settings, fake_provider, write_files, sink
    ) -> None:
        fake_provider("capable-a").handler = review_handler
        files = write_files(self.FILES)
        triager = FakeTriager()
        iterative = IterativeExecutor(
            recorder, registry, router, settings, extractor=LineExtractor(), triager=triager
        )

        result = await iterative.execute_iterative_v4(
            "single",
            files,
            IterativeOptions(sink=sink, aggregation=AggregationOptions(batch_size=2)),
        )

        assert [c.file for c in recorder.calls] == [
            "app/models.py",
            "app/service.py",
            "app/main.py",
        ]

        models_input = recorder.call_for("app/models.py").input
        assert models_input.startswith("## Symbol Context\n> class User")
        assert "## Already Reviewed Dependencies" not in models_input

        service_input = recorder.call_for("app/service.py").input
        assert "## Symbol Context\n> function serve" in service_input
        assert (
            "## Already Reviewed Dependencies\n- app/models.py: reviewed app/models.py"
            in service_input
        )
        assert service_input.index("## Symbol Context") < service_input.index("### File:")

        main_input = recorder.call_for("app/main.py").input
        assert "- app/service.py: reviewed app/service.py" in main_input

        assert result.structure is not None
        assert result.timing.symbolication_ms is not None
        assert result.triage_result.summary.endswith("(enhanced with connectivity)")
        assert triager.calls[0][1].structure is None

        assert len(sink.of_type(PipelineEventType.SYMBOLICATION_PROGRESS)) == 3
        assert sink.types[0] == PipelineEventType.SYMBOLICATION_START
        assert len(sink.of_type(PipelineEventType.BATCH_START)) == 2
        assert result.aggregated_output == "final report"

    @pytest.mark.asyncio
    async def test_without_extractor(
        self, recorder, registry, router, settings, fake_provider, write_files
    ) -> None:
        fake_provider("capable-a")
        files = write_files(self.FILES)
        iterative = IterativeExecutor(recorder, registry, router, settings)

        result = await iterative.execute_iterative_v4(
            "single", files, IterativeOptions(enable_triage=False)
        )

        assert result.structure is None
        assert result.files_processed == 3
        assert all(c.input.startswith("### File:") for c in recorder.calls)

    @pytest.mark.asyncio
    async def test_related_context_disabled(
        self, recorder, registry, router, settings, fake_provider, write_files
    ) -> None:
        fake_provider("capable-a")
        files = write_files(self.FILES)
        iterative = IterativeExecutor(
            recorder, registry, router, settings, extractor=LineExtractor(), triager=FakeTriager()
        )

        await iterative.execute_iterative_v4(
            "single", files, IterativeOptions(include_related_context=False)
        )

        assert [c.file for c in recorder.calls][0] == "app/models.py"
        assert all(c.input.startswith("### File:") for c in recorder.calls)

    @pytest.mark.asyncio
    async def test_triage_order_without_dependency_order(
        self, recorder, registry, router, settings, fake_provider, write_files
    ) -> None:
        fake_provider("capable-a")
        files = write_files(self.FILES)
        triager = FakeTriager(_triage(["app/main.py"], ["app/service.py"], ["app/models.py"]))
        iterative = IterativeExecutor(
            recorder, registry, router, settings, extractor=LineExtractor(), triager=triager
        )

        await iterative.execute_iterative_v4(
            "single", files, IterativeOptions(use_dependency_order=False)
        )

        assert [c.file for c in recorder.calls][0] == "app/main.py"
        assert "## Symbol Context" in recorder.call_for("app/main.py").input
