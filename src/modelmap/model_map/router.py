"""任务路由器

将命令、任务类别和角色路由到具体模型或流水线。

路由优先级（route_command）：
1. 命令级覆盖（pipeline > task > model）
2. 内置默认任务表
3. 通用 'code' 任务
4. primary 回退链的第一个模型
5. 配置中定义的第一个模型
"""

from dataclasses import dataclass
from enum import Enum

from loguru import logger

from modelmap.core.exceptions import (
    ConfigurationError,
    NoModelsDefinedError,
    UnknownPipelineError,
)
from modelmap.model_map.registry import ModelRegistry, ResolvedModel
from modelmap.model_map.schema import CommandConfig, ModelMapConfig, PipelineDefinition

# 内置命令的默认任务类别
DEFAULT_COMMAND_TASKS: dict[str, str] = {
    # 快速任务
    "commit": "fast",
    "pr": "fast",
    "branch": "fast",
    "stash": "fast",
    "gitstatus": "fast",
    "log": "fast",
    # 常规代码任务
    "explain": "code",
    "refactor": "code",
    "test": "code",
    "review": "code",
    "doc": "code",
    "optimize": "code",
    # 复杂任务
    "fix": "complex",
    "debug": "complex",
    "scaffold": "complex",
    "migrate": "complex",
}


class RoleLookupStatus(str, Enum):
    """角色表查找状态"""

    RESOLVED = "resolved"
    ROLE_ABSENT = "role_absent"
    CONTEXT_ABSENT = "context_absent"
    EMPTY_NAME = "empty_name"


@dataclass(frozen=True)
class RoleLookup:
    """角色表查找结果"""

    status: RoleLookupStatus
    model_name: str | None = None

    @property
    def found(self) -> bool:
        return self.status == RoleLookupStatus.RESOLVED


class RoleTable:
    """角色映射表：(role, provider_context) -> 模型名

    以复合键存储，区分"角色不存在"、"上下文不存在"和"映射为空"。
    """

    def __init__(self, mapping: dict[str, dict[str, str]] | None = None):
        self._entries: dict[tuple[str, str], str] = {}
        self._contexts: dict[str, list[str]] = {}
        for role, contexts in (mapping or {}).items():
            self._contexts[role] = list(contexts.keys())
            for context, model_name in contexts.items():
                self._entries[(role, context)] = model_name

    def lookup(self, role: str, provider_context: str) -> RoleLookup:
        if role not in self._contexts:
            return RoleLookup(RoleLookupStatus.ROLE_ABSENT)
        model_name = self._entries.get((role, provider_context))
        if model_name is None:
            return RoleLookup(RoleLookupStatus.CONTEXT_ABSENT)
        if not model_name:
            return RoleLookup(RoleLookupStatus.EMPTY_NAME)
        return RoleLookup(RoleLookupStatus.RESOLVED, model_name)

    def roles(self) -> list[str]:
        return list(self._contexts.keys())

    def contexts(self, role: str) -> list[str]:
        return list(self._contexts.get(role, []))


@dataclass(frozen=True)
class ModelRoute:
    """路由到单个模型"""

    model: ResolvedModel


@dataclass(frozen=True)
class PipelineRoute:
    """路由到流水线"""

    pipeline: PipelineDefinition
    pipeline_name: str


RoutingResult = ModelRoute | PipelineRoute


class TaskRouter:
    """任务路由器

    构造后只读（update_config 除外），可在并发任务间共享。
    """

    def __init__(self, config: ModelMapConfig, registry: ModelRegistry):
        self._config = config
        self._registry = registry
        self._roles = RoleTable(config.model_roles)

    @property
    def config(self) -> ModelMapConfig:
        return self._config

    def route_command(self, command_name: str) -> RoutingResult:
        """将命令路由到模型或流水线

        Raises:
            ConfigurationError: 引用了未知流水线，或未定义任何模型
        """
        command_config = self._config.commands.get(command_name)
        if command_config:
            return self._resolve_command_config(command_name, command_config)

        default_task = DEFAULT_COMMAND_TASKS.get(command_name)
        if default_task:
            return self.route_task(default_task)

        if "code" in self._config.tasks:
            return self.route_task("code")

        return self._get_default_model()

    def route_task(self, task_type: str) -> RoutingResult:
        """将任务类别路由到模型（未定义的任务使用默认模型）"""
        task = self._config.tasks.get(task_type)
        if task is None:
            return self._get_default_model()
        return ModelRoute(self._registry.resolve_model(task.model))

    def resolve_role(self, role: str, provider_context: str) -> ResolvedModel | None:
        """按 provider 上下文解析角色

        任一层缺失，或模型名无法被注册表解析时返回 None（不是错误），
        调用方需要自行提供回退路径。
        """
        entry = self._roles.lookup(role, provider_context)
        if not entry.found:
            logger.debug(f"角色 {role} 在上下文 {provider_context} 中未解析: {entry.status.value}")
            return None

        try:
            return self._registry.resolve_model(entry.model_name)
        except ConfigurationError:
            logger.debug(f"角色 {role} 映射的模型 {entry.model_name} 未定义")
            return None

    def get_summarize_model(self) -> ResolvedModel:
        """获取摘要任务使用的模型

        顺序：summarize 任务 > fast 任务 > primary 回退链 > 第一个模型。
        """
        for task_name in ("summarize", "fast"):
            task = self._config.tasks.get(task_name)
            if task:
                return self._registry.resolve_model(task.model)
        return self.get_primary_model()

    def get_primary_model(self) -> ResolvedModel:
        """获取主模型（primary 回退链第一个，或第一个定义的模型）"""
        return self._get_default_model().model

    def get_pipeline(self, name: str) -> PipelineDefinition | None:
        return self._config.pipelines.get(name)

    def get_pipeline_names(self) -> list[str]:
        return list(self._config.pipelines.keys())

    def command_has_pipeline(self, command_name: str) -> bool:
        command_config = self._config.commands.get(command_name)
        return bool(command_config and command_config.pipeline)

    def get_command_task(self, command_name: str) -> str | None:
        """获取命令的任务类别（配置优先，其次默认表）"""
        command_config = self._config.commands.get(command_name)
        if command_config and command_config.task:
            return command_config.task
        return DEFAULT_COMMAND_TASKS.get(command_name)

    def get_role_providers(self, role: str) -> list[str]:
        """获取角色已配置的 provider 上下文"""
        return self._roles.contexts(role)

    def get_roles(self) -> list[str]:
        return self._roles.roles()

    def update_config(self, config: ModelMapConfig) -> None:
        """热更新配置"""
        self._config = config
        self._roles = RoleTable(config.model_roles)

    def _resolve_command_config(self, command_name: str, config: CommandConfig) -> RoutingResult:
        if config.pipeline:
            pipeline = self._config.pipelines.get(config.pipeline)
            if pipeline is None:
                raise UnknownPipelineError(config.pipeline, command_name)
            return PipelineRoute(pipeline=pipeline, pipeline_name=config.pipeline)

        if config.task:
            return self.route_task(config.task)

        if config.model:
            return ModelRoute(self._registry.resolve_model(config.model))

        return self._get_default_model()

    def _get_default_model(self) -> ModelRoute:
        primary = self._config.fallbacks.get("primary")
        if primary:
            return ModelRoute(self._registry.resolve_model(primary[0]))

        model_names = self._registry.get_model_names()
        if not model_names:
            raise NoModelsDefinedError()
        return ModelRoute(self._registry.resolve_model(model_names[0]))
