"""模型映射配置数据模型

定义模型、角色、任务、命令、回退链与流水线的配置结构，
以及从 YAML 文件加载配置的入口。
"""

from __future__ import annotations

from pathlib import Path

import yaml
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from modelmap.core.exceptions import ConfigurationError

# 配置文件名（按优先级）
MODEL_MAP_FILES = ("modelmap.yaml", "modelmap.yml")


class ModelDefinition(BaseModel):
    """命名模型定义"""

    model_config = ConfigDict(populate_by_name=True)

    provider: str = Field(description="Provider 类型（anthropic, openai, ollama 等）")
    model: str = Field(description="模型名称/ID")
    description: str | None = Field(default=None, description="模型描述")
    max_tokens: int | None = Field(default=None, alias="maxTokens", description="最大输出 token 数")
    temperature: float | None = Field(default=None, description="温度（0-1）")
    base_url: str | None = Field(default=None, alias="baseUrl", description="自定义 API 地址")


class TaskDefinition(BaseModel):
    """任务类别定义"""

    model: str = Field(description="模型名称引用")
    description: str | None = Field(default=None, description="任务描述")


class CommandConfig(BaseModel):
    """单个命令的路由覆盖

    优先级：pipeline > task > model。
    """

    model: str | None = Field(default=None, description="直接模型引用")
    task: str | None = Field(default=None, description="任务类别引用")
    pipeline: str | None = Field(default=None, description="流水线引用")


class PipelineStep(BaseModel):
    """流水线中的单个步骤"""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    name: str = Field(description="步骤名称")
    prompt: str = Field(description="提示词模板（包含 {var} 占位符）")
    output: str = Field(description="输出变量名")
    condition: str | None = Field(default=None, description="执行条件（'var' 或 '!var'）")
    model: str | None = Field(default=None, description="直接模型引用（优先于 role）")
    role: str | None = Field(default=None, description="角色引用（与 provider 上下文组合解析）")

    # Agentic 能力
    allow_tool_use: bool = Field(default=False, alias="allowToolUse", description="是否允许工具调用")
    tools: list[str] = Field(default_factory=list, description="可用工具名称列表")
    max_iterations: int | None = Field(
        default=None, alias="maxIterations", description="工具循环最大次数（默认 5）"
    )


class PipelineDefinition(BaseModel):
    """多模型流水线定义

    加载后不可变，由 Router 与 Executor 引用而非复制。
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    description: str | None = Field(default=None, description="流水线描述")
    provider: str | None = Field(default=None, description="默认 provider 上下文")
    steps: list[PipelineStep] = Field(min_length=1, description="有序步骤列表")
    result: str | None = Field(default=None, description="结果模板")


class ModelMapConfig(BaseModel):
    """完整的模型映射配置"""

    model_config = ConfigDict(populate_by_name=True)

    version: str = Field(default="1", description="配置版本")
    models: dict[str, ModelDefinition] = Field(default_factory=dict, description="命名模型")
    model_roles: dict[str, dict[str, str]] = Field(
        default_factory=dict,
        alias="model-roles",
        description="角色映射：role -> provider 上下文 -> 模型名",
    )
    tasks: dict[str, TaskDefinition] = Field(default_factory=dict, description="任务类别")
    commands: dict[str, CommandConfig] = Field(default_factory=dict, description="命令覆盖")
    fallbacks: dict[str, list[str]] = Field(default_factory=dict, description="回退链")
    pipelines: dict[str, PipelineDefinition] = Field(default_factory=dict, description="流水线")


def parse_model_map(data: dict | None) -> ModelMapConfig:
    """从字典解析模型映射配置

    Args:
        data: YAML 解析得到的原始数据（None 视为空配置）

    Returns:
        ModelMapConfig 实例

    Raises:
        ConfigurationError: 结构校验失败
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError("Model map must be a mapping at the top level")

    # YAML 中的空段落（如 `tasks:`）解析为 None，按缺省处理
    cleaned = {key: value for key, value in data.items() if value is not None}
    if "version" in cleaned:
        cleaned["version"] = str(cleaned["version"])

    try:
        return ModelMapConfig.model_validate(cleaned)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid model map: {e}") from e


def load_model_map(path: str | Path) -> ModelMapConfig:
    """从 YAML 文件加载模型映射配置

    Args:
        path: 配置文件路径

    Returns:
        ModelMapConfig 实例

    Raises:
        ConfigurationError: 文件不存在或解析失败
    """
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Model map not found: {path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to parse {path}: {e}") from e

    config = parse_model_map(data)
    logger.debug(
        f"加载模型映射: {path} (models={len(config.models)}, pipelines={len(config.pipelines)})"
    )
    return config


def find_model_map(cwd: str | Path | None = None) -> Path | None:
    """在目录中查找模型映射配置文件

    Args:
        cwd: 搜索目录（默认当前目录）

    Returns:
        找到的配置文件路径，未找到返回 None
    """
    base = Path(cwd) if cwd else Path.cwd()
    for name in MODEL_MAP_FILES:
        candidate = base / name
        if candidate.exists():
            return candidate
    return None
