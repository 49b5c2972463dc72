"""ModelMap 核心层

提供全局配置、日志和异常定义。
"""

from .config import ModelMapSettings, get_settings
from .exceptions import (
    ConfigurationError,
    FileSkippedError,
    ModelMapError,
    NoModelsDefinedError,
    PipelineStepError,
    StepResolutionError,
    UnknownModelError,
    UnknownPipelineError,
)
from .logging import setup_logging

__all__ = [
    # Config
    "ModelMapSettings",
    "get_settings",
    "setup_logging",
    # Exceptions
    "ModelMapError",
    "ConfigurationError",
    "UnknownModelError",
    "UnknownPipelineError",
    "NoModelsDefinedError",
    "StepResolutionError",
    "PipelineStepError",
    "FileSkippedError",
]
