"""测试流水线事件与接收器"""

import pytest

from modelmap.pipeline.callbacks import CompositeSink, EventSink, LoggingSink, NullSink, emit_event
from modelmap.pipeline.events import (
    PipelineEvent,
    PipelineEventType,
    batch_start_event,
    error_event,
    file_start_event,
    step_start_event,
    tool_call_event,
)


class BrokenSink:
    async def on_event(self, event: PipelineEvent) -> None:
        raise RuntimeError("sink exploded")


class TestPipelineEvent:
    """PipelineEvent 测试"""

    def test_factory_functions(self) -> None:
        event = step_start_event("scan", "fast-a")
        assert event.event_type == PipelineEventType.STEP_START
        assert event.step_name == "scan"
        assert event.data["model_name"] == "fast-a"

        event = file_start_event("a.py", 0, 3)
        assert event.file == "a.py"
        assert event.data["total"] == 3

    def test_error_event_stringifies(self) -> None:
        event = error_event("scan", ValueError("bad input"))
        assert event.data == {"step_name": "scan", "error": "bad input"}

    def test_to_dict(self) -> None:
        d = batch_start_event(0, 3, 15).to_dict()
        assert d["event_type"] == "BATCH_START"
        assert d["data"]["files_in_batch"] == 15
        assert "timestamp" in d


class TestSinks:
    """事件接收器测试"""

    def test_protocol(self) -> None:
        assert isinstance(NullSink(), EventSink)
        assert isinstance(CompositeSink(), EventSink)
        assert isinstance(LoggingSink(), EventSink)

    @pytest.mark.asyncio
    async def test_composite_isolates_failures(self, sink) -> None:
        composite = CompositeSink([BrokenSink(), sink])
        await composite.on_event(step_start_event("a", "m"))
        assert len(sink.events) == 1

    @pytest.mark.asyncio
    async def test_composite_add_remove(self, sink) -> None:
        composite = CompositeSink()
        composite.add(sink)
        await composite.on_event(step_start_event("a", "m"))
        composite.remove(sink)
        await composite.on_event(step_start_event("b", "m"))
        assert [e.step_name for e in sink.events] == ["a"]

    @pytest.mark.asyncio
    async def test_emit_event_tolerates_none_and_failures(self) -> None:
        await emit_event(None, step_start_event("a", "m"))
        await emit_event(BrokenSink(), step_start_event("a", "m"))

    @pytest.mark.asyncio
    async def test_logging_sink_handles_events(self) -> None:
        logging_sink = LoggingSink("INFO")
        for event in [
            file_start_event("a.py", 0, 1),
            step_start_event("a", "m"),
            tool_call_event("a", "read_file", {"path": "x" * 200}),
            batch_start_event(0, 2, 5),
            error_event("a", "boom"),
            PipelineEvent(PipelineEventType.AGGREGATION_START),
        ]:
            await logging_sink.on_event(event)
