"""模型 Provider 接口"""

from .base import ChatMessage, ChatResponse, ModelProvider, ProviderFactory, TextCallback

__all__ = [
    "ChatMessage",
    "ChatResponse",
    "ModelProvider",
    "ProviderFactory",
    "TextCallback",
]
