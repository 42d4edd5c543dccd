"""
LLM Gateway - 统一的大语言模型调用层

提供：
- 统一的LLM调用接口（Gemini / Grok，OpenAI 兼容）
- 回退链与道歉文案降级
- Token统计和成本追踪
"""

from .gateway import (
    LLMGateway,
    GenerationParams,
    GenerationResult,
    GenerationError,
    ModelNotAvailableError,
    FALLBACK_APOLOGY,
    build_messages,
    build_llm_gateway,
)
from .providers import LLMProvider, OpenAICompatibleProvider, ProviderConfig
from .token_counter import TokenCounter, UsageStats

__all__ = [
    'LLMGateway',
    'GenerationParams',
    'GenerationResult',
    'GenerationError',
    'ModelNotAvailableError',
    'FALLBACK_APOLOGY',
    'build_messages',
    'build_llm_gateway',
    'LLMProvider',
    'OpenAICompatibleProvider',
    'ProviderConfig',
    'TokenCounter',
    'UsageStats',
]
