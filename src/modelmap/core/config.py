"""ModelMap 配置管理

使用 Pydantic Settings 管理运行时配置，支持环境变量和 .env 文件。
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ModelMapSettings(BaseSettings):
    """ModelMap 全局配置"""

    model_config = SettingsConfigDict(
        env_prefix="MODELMAP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # 模型映射配置文件
    config_path: Path = Field(
        default=Path("modelmap.yaml"),
        description="模型映射配置文件路径（YAML）",
    )
    project_root: Path = Field(
        default_factory=Path.cwd,
        description="项目根目录（用于模块路径解析）",
    )

    # 文件读取
    max_file_size: int = Field(
        default=50_000,
        description="迭代处理时单个文件的最大字节数，超过则跳过",
    )

    # 聚合
    batch_size: int = Field(
        default=15,
        description="分批聚合的批大小（0 表示不分批）",
    )
    aggregation_role: str = Field(
        default="capable",
        description="聚合使用的模型角色",
    )

    # 并发
    concurrency: int = Field(
        default=4,
        description="文件级流水线的默认并发数",
    )
    critical_concurrency: int = Field(
        default=2,
        ge=1,
        le=2,
        description="关键文件层的最大并发数（1-2）",
    )

    # 流水线
    default_provider_context: str = Field(
        default="openai",
        description="未指定时的默认 provider 上下文",
    )
    max_tool_iterations: int = Field(
        default=5,
        description="Agentic 步骤的默认最大工具循环次数",
    )

    # 分诊
    triage_role: str = Field(
        default="fast",
        description="分诊使用的模型角色",
    )
    deep_threshold: float = Field(
        default=6,
        description="优先级 >= 此值的文件进入关键层",
    )
    skip_threshold: float = Field(
        default=3,
        description="优先级 <= 此值的文件进入快速层",
    )

    # 日志
    log_level: str = Field(
        default="INFO",
        description="日志级别",
    )


@lru_cache
def get_settings() -> ModelMapSettings:
    """获取全局配置单例"""
    return ModelMapSettings()
