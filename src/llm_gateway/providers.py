"""
LLM Providers - 各LLM服务提供商的实现

Gemini 与 Grok 都提供 OpenAI 兼容接口，统一使用 openai.AsyncOpenAI 调用：
- gemini: https://generativelanguage.googleapis.com/v1beta/openai/
- grok:   https://api.x.ai/v1
"""
from abc import ABC, abstractmethod
from typing import List, Dict, Any, Optional
from dataclasses import dataclass
import time
import uuid
import openai
from loguru import logger


@dataclass
class ProviderConfig:
    """Provider配置"""
    api_key: Optional[str] = None
    api_url: Optional[str] = None
    model: str = "gemini-2.5-flash"
    max_tokens: int = 1000
    temperature: float = 0.8
    timeout: int = 60


class LLMProvider(ABC):
    """LLM Provider抽象基类"""

    def __init__(self, config: ProviderConfig, name: str = "base"):
        self.config = config
        self._name = name

    @property
    def name(self) -> str:
        """Provider名称"""
        return self._name

    def _log_request(
        self,
        messages: List[Dict[str, str]],
        model: str,
        max_tokens: int,
        temperature: float
    ) -> str:
        """记录请求日志，返回请求ID用于关联响应"""
        request_id = str(uuid.uuid4())[:8]
        total_chars = sum(len(msg.get("content", "")) for msg in messages)

        logger.info(
            f"🚀 [LLM-REQ][{request_id}] provider={self._name} | "
            f"model={model} | messages={len(messages)} | chars={total_chars} | "
            f"max_tokens={max_tokens} | temperature={temperature}"
        )
        return request_id

    def _log_response(
        self,
        request_id: str,
        content: str,
        usage: Dict[str, int],
        model: str,
        latency_ms: float
    ) -> None:
        """记录响应日志"""
        preview = (content[:150] + "...") if len(content) > 150 else content

        logger.info(
            f"✅ [LLM-RES][{request_id}] provider={self._name} | "
            f"model={model} | latency={latency_ms:.0f}ms | "
            f"tokens(prompt={usage.get('prompt_tokens', 0)}, "
            f"completion={usage.get('completion_tokens', 0)})"
        )
        logger.debug(f"📤 [LLM-RES][{request_id}] response_preview: {preview.replace(chr(10), ' ')}")

    def _log_error(
        self,
        request_id: str,
        error: Exception,
        latency_ms: float
    ) -> None:
        """记录错误日志"""
        logger.error(
            f"❌ [LLM-ERR][{request_id}] provider={self._name} | "
            f"latency={latency_ms:.0f}ms | error_type={type(error).__name__} | "
            f"error={str(error)}"
        )

    @abstractmethod
    async def generate(
        self,
        messages: List[Dict[str, str]],
        **kwargs
    ) -> Dict[str, Any]:
        """生成响应"""
        pass


class OpenAICompatibleProvider(LLMProvider):
    """
    OpenAI 兼容接口 Provider

    同一个 Provider 服务该厂商的所有模型，模型ID由调用方传入。
    """

    def __init__(self, name: str, config: ProviderConfig):
        super().__init__(config, name=name)
        if not config.api_key:
            raise ValueError(f"{name} API key is required")
        self.client = openai.AsyncOpenAI(
            api_key=config.api_key,
            base_url=config.api_url,
            timeout=config.timeout
        )

    async def generate(
        self,
        messages: List[Dict[str, str]],
        **kwargs
    ) -> Dict[str, Any]:
        """调用 chat.completions 生成响应"""
        model = kwargs.get("model") or self.config.model
        max_tokens = kwargs.get("max_tokens", self.config.max_tokens)
        temperature = kwargs.get("temperature", self.config.temperature)

        request_id = self._log_request(messages, model, max_tokens, temperature)
        start_time = time.perf_counter()

        try:
            response = await self.client.chat.completions.create(
                model=model,
                messages=messages,
                max_tokens=max_tokens,
                temperature=temperature
            )

            latency_ms = (time.perf_counter() - start_time) * 1000
            usage = response.usage

            result = {
                "content": (response.choices[0].message.content or "").strip(),
                "usage": {
                    "prompt_tokens": usage.prompt_tokens if usage else 0,
                    "completion_tokens": usage.completion_tokens if usage else 0,
                },
                "model": response.model or model,
                "finish_reason": response.choices[0].finish_reason
            }

            self._log_response(
                request_id=request_id,
                content=result["content"],
                usage=result["usage"],
                model=result["model"],
                latency_ms=latency_ms
            )
            return result

        except Exception as e:
            latency_ms = (time.perf_counter() - start_time) * 1000
            self._log_error(request_id, e, latency_ms)
            raise
