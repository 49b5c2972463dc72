"""模型映射：配置、注册表与路由"""

from .registry import ModelRegistry, ResolvedModel
from .router import (
    DEFAULT_COMMAND_TASKS,
    ModelRoute,
    PipelineRoute,
    RoleTable,
    RoutingResult,
    TaskRouter,
)
from .schema import (
    CommandConfig,
    ModelDefinition,
    ModelMapConfig,
    PipelineDefinition,
    PipelineStep,
    TaskDefinition,
    find_model_map,
    load_model_map,
    parse_model_map,
)

__all__ = [
    # Schema
    "ModelDefinition",
    "TaskDefinition",
    "CommandConfig",
    "PipelineStep",
    "PipelineDefinition",
    "ModelMapConfig",
    "load_model_map",
    "parse_model_map",
    "find_model_map",
    # Registry
    "ModelRegistry",
    "ResolvedModel",
    # Router
    "TaskRouter",
    "RoleTable",
    "ModelRoute",
    "PipelineRoute",
    "RoutingResult",
    "DEFAULT_COMMAND_TASKS",
]
