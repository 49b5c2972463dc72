"""测试任务路由器"""

import pytest

from modelmap.core.exceptions import ConfigurationError, NoModelsDefinedError
from modelmap.model_map.registry import ModelRegistry
from modelmap.model_map.router import (
    ModelRoute,
    PipelineRoute,
    RoleLookupStatus,
    RoleTable,
    TaskRouter,
)
from modelmap.model_map.schema import parse_model_map


def _router(data: dict, provider_factory) -> TaskRouter:
    config = parse_model_map(data)
    return TaskRouter(config, ModelRegistry(config, provider_factory))


class TestRouteCommand:
    """route_command 优先级测试"""

    def test_pipeline_override(self, router) -> None:
        result = router.route_command("review")
        assert isinstance(result, PipelineRoute)
        assert result.pipeline_name == "review"
        assert len(result.pipeline.steps) == 2

    def test_direct_model_override(self, router) -> None:
        result = router.route_command("explain")
        assert isinstance(result, ModelRoute)
        assert result.model.name == "reasoning-a"

    def test_task_override(self, router) -> None:
        result = router.route_command("commit")
        assert result.model.name == "fast-a"

    def test_default_command_task(self, router) -> None:
        """测试内置默认任务表（refactor -> code）"""
        result = router.route_command("refactor")
        assert result.model.name == "capable-a"

    def test_unknown_command_uses_code_task(self, router) -> None:
        assert router.route_command("whatever").model.name == "capable-a"

    def test_unknown_pipeline_raises(self, provider_factory) -> None:
        router = _router(
            {
                "models": {"m": {"provider": "openai", "model": "x"}},
                "commands": {"review": {"pipeline": "missing"}},
            },
            provider_factory,
        )
        with pytest.raises(ConfigurationError, match='unknown pipeline "missing"'):
            router.route_command("review")

    def test_primary_fallback_then_first_model(self, provider_factory) -> None:
        router = _router(
            {
                "models": {
                    "first": {"provider": "openai", "model": "a"},
                    "second": {"provider": "openai", "model": "b"},
                },
                "fallbacks": {"primary": ["second"]},
            },
            provider_factory,
        )
        assert router.route_command("anything").model.name == "second"

        router = _router({"models": {"first": {"provider": "openai", "model": "a"}}}, provider_factory)
        assert router.route_command("anything").model.name == "first"

    def test_no_models(self, provider_factory) -> None:
        router = _router({}, provider_factory)
        with pytest.raises(NoModelsDefinedError):
            router.route_command("anything")

    def test_undefined_task_uses_default(self, router) -> None:
        assert router.route_task("nonexistent").model.name == "capable-a"


class TestRoleResolution:
    """角色解析测试"""

    def test_resolve_role(self, router) -> None:
        resolved = router.resolve_role("fast", "anthropic")
        assert resolved.name == "claude-fast"
        assert resolved.provider == "anthropic"

    def test_missing_role_or_context(self, router) -> None:
        assert router.resolve_role("nonexistent", "openai") is None
        assert router.resolve_role("capable", "anthropic") is None

    def test_unresolvable_model_name(self, provider_factory) -> None:
        router = _router(
            {
                "models": {"m": {"provider": "openai", "model": "x"}},
                "model-roles": {"fast": {"openai": "ghost"}},
            },
            provider_factory,
        )
        assert router.resolve_role("fast", "openai") is None

    def test_role_table_statuses(self) -> None:
        table = RoleTable({"fast": {"openai": "fast-a", "ollama": ""}})
        assert table.lookup("fast", "openai").model_name == "fast-a"
        assert table.lookup("slow", "openai").status == RoleLookupStatus.ROLE_ABSENT
        assert table.lookup("fast", "anthropic").status == RoleLookupStatus.CONTEXT_ABSENT
        assert table.lookup("fast", "ollama").status == RoleLookupStatus.EMPTY_NAME
        assert not table.lookup("fast", "ollama").found

    def test_role_listing(self, router) -> None:
        assert router.get_roles() == ["fast", "capable", "reasoning"]
        assert router.get_role_providers("fast") == ["openai", "anthropic"]
        assert router.get_role_providers("missing") == []


class TestRouterQueries:
    """辅助查询测试"""

    def test_pipelines(self, router) -> None:
        assert router.get_pipeline_names() == ["review", "single"]
        assert router.get_pipeline("missing") is None
        assert router.command_has_pipeline("review")
        assert not router.command_has_pipeline("explain")

    def test_command_task(self, router) -> None:
        assert router.get_command_task("commit") == "fast"
        assert router.get_command_task("debug") == "complex"
        assert router.get_command_task("unknown") is None

    def test_summarize_and_primary(self, router) -> None:
        assert router.get_summarize_model().name == "fast-a"
        assert router.get_primary_model().name == "capable-a"

    def test_update_config(self, router, provider_factory) -> None:
        config = parse_model_map(
            {
                "models": {"m": {"provider": "openai", "model": "x"}},
                "model-roles": {"fast": {"openai": "m"}},
            }
        )
        router._registry.update_config(config)
        router.update_config(config)
        assert router.get_pipeline_names() == []
        assert router.resolve_role("fast", "openai").name == "m"
