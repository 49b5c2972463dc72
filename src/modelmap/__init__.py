"""ModelMap - 多模型流水线编排核心

按角色和 provider 上下文为每个工作单元选择模型，
顺序执行多步流水线，并以自适应策略遍历代码库、合并结果。
"""

__version__ = "0.1.0"

from .core import ConfigurationError, ModelMapError, ModelMapSettings, get_settings
from .model_map import ModelMapConfig, ModelRegistry, TaskRouter, load_model_map
from .orchestrator import IterativeExecutor, IterativeOptions, IterativeResult
from .pipeline import PipelineExecutor, PipelineResult

__all__ = [
    "__version__",
    # Config
    "ModelMapSettings",
    "get_settings",
    "ModelMapConfig",
    "load_model_map",
    # Core
    "ModelRegistry",
    "TaskRouter",
    "PipelineExecutor",
    "PipelineResult",
    "IterativeExecutor",
    "IterativeOptions",
    "IterativeResult",
    # Exceptions
    "ModelMapError",
    "ConfigurationError",
]
