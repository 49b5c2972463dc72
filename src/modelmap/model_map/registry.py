"""模型注册表

管理 Provider 的惰性创建与连接池。
"""

import time
from dataclasses import dataclass, field

from loguru import logger

from modelmap.core.exceptions import ConfigurationError, UnknownModelError
from modelmap.model_map.schema import ModelDefinition, ModelMapConfig
from modelmap.providers.base import ModelProvider, ProviderFactory

DEFAULT_MAX_POOL_SIZE = 5
DEFAULT_IDLE_TIMEOUT_SECONDS = 5 * 60


@dataclass
class ResolvedModel:
    """解析后的模型"""

    name: str
    """配置中的模型名"""
    provider: str
    """Provider 类型"""
    model: str
    """模型 ID"""
    definition: ModelDefinition
    """完整模型定义"""


@dataclass
class PooledProvider:
    """池中的 Provider 及其使用统计"""

    provider: ModelProvider
    model_name: str
    last_used: float = field(default_factory=time.monotonic)
    use_count: int = 1


class ModelRegistry:
    """模型注册表

    - 首次使用时才创建 Provider
    - 池满时淘汰最久未使用的 Provider
    - 支持回退链
    """

    def __init__(
        self,
        config: ModelMapConfig,
        provider_factory: ProviderFactory,
        max_pool_size: int = DEFAULT_MAX_POOL_SIZE,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT_SECONDS,
    ):
        """初始化注册表

        Args:
            config: 模型映射配置
            provider_factory: Provider 工厂函数
            max_pool_size: 池容量
            idle_timeout: 空闲超时（秒），由 cleanup_idle 使用
        """
        self._config = config
        self._factory = provider_factory
        self._max_pool_size = max_pool_size
        self._idle_timeout = idle_timeout
        self._pool: dict[str, PooledProvider] = {}

    @property
    def config(self) -> ModelMapConfig:
        return self._config

    def get_provider(self, model_name: str) -> ModelProvider:
        """获取命名模型的 Provider（惰性创建）

        Args:
            model_name: 模型名

        Returns:
            ModelProvider 实例

        Raises:
            UnknownModelError: 模型未定义
            ConfigurationError: Provider 创建失败
        """
        pooled = self._pool.get(model_name)
        if pooled:
            pooled.last_used = time.monotonic()
            pooled.use_count += 1
            return pooled.provider

        definition = self._config.models.get(model_name)
        if definition is None:
            raise UnknownModelError(model_name)

        try:
            provider = self._factory(model_name, definition)
        except Exception as e:
            raise ConfigurationError(
                f'Failed to create provider for model "{model_name}": {e}'
            ) from e

        self._add_to_pool(model_name, provider)
        logger.debug(f"创建 Provider: {model_name} ({definition.provider}/{definition.model})")
        return provider

    def get_provider_with_fallback(self, chain_name: str) -> ModelProvider:
        """按回退链依次尝试获取 Provider

        Raises:
            ConfigurationError: 回退链未定义或链上所有模型均失败
        """
        chain = self._config.fallbacks.get(chain_name)
        if not chain:
            raise ConfigurationError(f"Unknown fallback chain: {chain_name}")

        last_error: Exception | None = None
        for model_name in chain:
            try:
                return self.get_provider(model_name)
            except ConfigurationError as e:
                logger.debug(f"回退链 {chain_name}: {model_name} 不可用: {e}")
                last_error = e

        raise ConfigurationError(
            f'All models in fallback chain "{chain_name}" failed. Last error: {last_error}'
        )

    def resolve_model(self, model_name: str) -> ResolvedModel:
        """将模型名解析为完整定义

        Raises:
            UnknownModelError: 模型未定义
        """
        definition = self._config.models.get(model_name)
        if definition is None:
            raise UnknownModelError(model_name)
        return ResolvedModel(
            name=model_name,
            provider=definition.provider,
            model=definition.model,
            definition=definition,
        )

    def get_model_names(self) -> list[str]:
        """返回配置中所有模型名（保持定义顺序）"""
        return list(self._config.models.keys())

    def get_model_definition(self, name: str) -> ModelDefinition | None:
        return self._config.models.get(name)

    def has_model(self, name: str) -> bool:
        return name in self._config.models

    def get_pool_stats(self) -> dict:
        """返回连接池统计信息"""
        return {
            "size": len(self._pool),
            "max_size": self._max_pool_size,
            "models": [
                {"name": name, "use_count": pooled.use_count}
                for name, pooled in self._pool.items()
            ],
        }

    def cleanup_idle(self) -> list[str]:
        """移除空闲超时的 Provider

        Returns:
            被移除的模型名列表
        """
        now = time.monotonic()
        expired = [
            name for name, pooled in self._pool.items()
            if now - pooled.last_used > self._idle_timeout
        ]
        for name in expired:
            del self._pool[name]
        return expired

    def clear_pool(self) -> None:
        self._pool.clear()

    def shutdown(self) -> None:
        """关闭注册表，释放所有 Provider"""
        self.clear_pool()

    def update_config(self, config: ModelMapConfig) -> None:
        """热更新配置（模型可能变化，清空池）"""
        self._config = config
        self.clear_pool()

    def _add_to_pool(self, model_name: str, provider: ModelProvider) -> None:
        if len(self._pool) >= self._max_pool_size:
            self._evict_oldest()
        self._pool[model_name] = PooledProvider(provider=provider, model_name=model_name)

    def _evict_oldest(self) -> None:
        if not self._pool:
            return
        oldest = min(self._pool.items(), key=lambda item: item[1].last_used)[0]
        del self._pool[oldest]
        logger.debug(f"淘汰 Provider: {oldest}")
