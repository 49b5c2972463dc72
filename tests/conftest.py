"""共享测试夹具

FakeProvider 按脚本返回响应并记录收到的提示词；
RecordingSink 收集所有流水线事件。
"""

from collections.abc import Callable
from pathlib import Path

import pytest

from modelmap.core.config import ModelMapSettings
from modelmap.model_map.registry import ModelRegistry
from modelmap.model_map.router import TaskRouter
from modelmap.model_map.schema import ModelMapConfig, parse_model_map
from modelmap.pipeline.events import PipelineEvent, PipelineEventType
from modelmap.pipeline.executor import PipelineExecutor
from modelmap.providers.base import ChatMessage, ChatResponse


class FakeProvider:
    """可编排响应的 Provider

    响应优先级：scripted 队列 > handler > 默认回显。
    """

    def __init__(self, name: str):
        self.name = name
        self.prompts: list[str] = []
        self.tool_lists: list[list | None] = []
        self.scripted: list[ChatResponse | str | Exception] = []
        self.handler: Callable[[list[ChatMessage]], ChatResponse | str] | None = None
        self.fail_with: Exception | None = None

    def _next(self, messages: list[ChatMessage]) -> ChatResponse:
        self.prompts.append(messages[-1].content)
        if self.fail_with is not None:
            raise self.fail_with
        if self.scripted:
            response = self.scripted.pop(0)
            if isinstance(response, Exception):
                raise response
        elif self.handler is not None:
            response = self.handler(messages)
        else:
            response = f"[{self.name}] reviewed"
        if isinstance(response, str):
            response = ChatResponse(content=response)
        return response

    async def stream_chat(self, messages, tools=None, on_text=None) -> ChatResponse:
        self.tool_lists.append(tools)
        response = self._next(messages)
        if on_text and response.content:
            await on_text(response.content)
        return response

    async def chat(self, messages) -> ChatResponse:
        return self._next(messages)


class RecordingSink:
    """记录所有事件的接收器"""

    def __init__(self):
        self.events: list[PipelineEvent] = []

    async def on_event(self, event: PipelineEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: PipelineEventType) -> list[PipelineEvent]:
        return [e for e in self.events if e.event_type == event_type]

    @property
    def types(self) -> list[PipelineEventType]:
        return [e.event_type for e in self.events]


MODEL_MAP = {
    "version": 1,
    "models": {
        "fast-a": {"provider": "openai", "model": "gpt-mini"},
        "capable-a": {"provider": "openai", "model": "gpt-large"},
        "reasoning-a": {"provider": "openai", "model": "gpt-reasoner"},
        "claude-fast": {"provider": "anthropic", "model": "claude-haiku"},
    },
    "model-roles": {
        "fast": {"openai": "fast-a", "anthropic": "claude-fast"},
        "capable": {"openai": "capable-a"},
        "reasoning": {"openai": "reasoning-a"},
    },
    "tasks": {
        "code": {"model": "capable-a"},
        "fast": {"model": "fast-a"},
    },
    "commands": {
        "review": {"pipeline": "review"},
        "explain": {"model": "reasoning-a"},
        "commit": {"task": "fast"},
    },
    "fallbacks": {"primary": ["capable-a", "fast-a"]},
    "pipelines": {
        "review": {
            "description": "Two step review",
            "provider": "openai",
            "steps": [
                {
                    "name": "scan",
                    "role": "fast",
                    "prompt": "Scan this code:\n{input}",
                    "output": "findings",
                },
                {
                    "name": "report",
                    "role": "capable",
                    "prompt": "Write a report from: {findings}",
                    "output": "report",
                },
            ],
            "result": "{report}",
        },
        "single": {
            "steps": [
                {"name": "analyze", "role": "capable", "prompt": "Review {input}", "output": "review"}
            ]
        },
    },
}


@pytest.fixture
def model_map() -> ModelMapConfig:
    return parse_model_map(MODEL_MAP)


@pytest.fixture
def providers() -> dict[str, FakeProvider]:
    """按模型名创建的 FakeProvider（首次获取时创建）"""
    return {}


@pytest.fixture
def provider_factory(providers):
    def factory(name, definition):
        if name not in providers:
            providers[name] = FakeProvider(name)
        return providers[name]

    return factory


@pytest.fixture
def fake_provider(providers) -> Callable[[str], FakeProvider]:
    """预先创建（或取回）指定模型的 FakeProvider，以便编排响应"""

    def get(name: str) -> FakeProvider:
        if name not in providers:
            providers[name] = FakeProvider(name)
        return providers[name]

    return get


@pytest.fixture
def registry(model_map, provider_factory) -> ModelRegistry:
    return ModelRegistry(model_map, provider_factory)


@pytest.fixture
def router(model_map, registry) -> TaskRouter:
    return TaskRouter(model_map, registry)


@pytest.fixture
def settings(tmp_path: Path) -> ModelMapSettings:
    return ModelMapSettings(project_root=tmp_path, _env_file=None)


@pytest.fixture
def executor(registry, router, settings) -> PipelineExecutor:
    return PipelineExecutor(registry, router, settings=settings)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def write_files(tmp_path: Path) -> Callable[..., list[str]]:
    """在 tmp_path 下写入文件，返回相对路径列表"""

    def write(files: dict[str, str]) -> list[str]:
        for name, content in files.items():
            path = tmp_path / name
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        return list(files.keys())

    return write
