"""
LLM Gateway - 统一的大语言模型调用网关

提供：
- 统一的 generate_text 接口（按模型ID路由到 Provider）
- 超时与重试
- 回退链：首选模型失败后依次尝试回退模型，全部失败时返回固定的道歉文案
- Token统计和成本追踪
"""
import asyncio
import uuid
from typing import List, Dict, Any, Optional, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from loguru import logger

from src.routing.catalog import RoutingCatalog
from .providers import LLMProvider, ProviderConfig, OpenAICompatibleProvider
from .token_counter import TokenCounter, UsageStats


# 所有回退都失败时发给用户的唯一一条道歉消息
FALLBACK_APOLOGY = "抱歉，我这会儿有点忙不过来，稍后再找我聊好吗？🙏"


class GenerationError(Exception):
    """单个模型生成失败"""

    def __init__(self, message: str, model_id: Optional[str] = None):
        super().__init__(message)
        self.model_id = model_id


class ModelNotAvailableError(GenerationError):
    """没有已注册的 Provider 能服务该模型"""


@dataclass
class GenerationParams:
    """生成参数"""
    max_tokens: int = 1000
    temperature: float = 0.8


@dataclass
class GenerationResult:
    """
    生成结果

    Attributes:
        text: 生成的文本（degraded 时为道歉文案）
        model_id: 实际使用的模型
        provider: 实际使用的Provider
        tokens_in: 输入token数
        tokens_out: 输出token数
        latency_ms: 响应延迟（毫秒）
        degraded: 是否所有模型都失败、使用了固定文案
        attempted_models: 按顺序尝试过的模型
        usage: Token使用统计
    """
    text: str
    model_id: str
    provider: str = ""
    tokens_in: int = 0
    tokens_out: int = 0
    latency_ms: float = 0.0
    degraded: bool = False
    attempted_models: List[str] = field(default_factory=list)
    usage: Optional[UsageStats] = None

    @property
    def total_tokens(self) -> int:
        return self.tokens_in + self.tokens_out


def build_messages(
    system_prompt: Optional[str],
    history: Optional[Sequence[Dict[str, str]]],
    user_prompt: Optional[str]
) -> List[Dict[str, str]]:
    """组装 OpenAI 格式的消息列表（agent 角色映射为 assistant）"""
    messages: List[Dict[str, str]] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    for turn in history or []:
        role = "assistant" if turn.get("role") in ("agent", "assistant") else "user"
        messages.append({"role": role, "content": turn.get("content", "")})
    if user_prompt:
        messages.append({"role": "user", "content": user_prompt})
    return messages


class LLMGateway:
    """
    统一的LLM调用网关

    Usage:
        gateway = LLMGateway(catalog)
        gateway.register_provider("gemini", OpenAICompatibleProvider("gemini", config))

        result = await gateway.generate_with_fallback(
            "gemini-2.5-pro", system_prompt, history, "你好"
        )
    """

    def __init__(
        self,
        catalog: RoutingCatalog,
        max_retries: int = 1,
        retry_delay: float = 1.0,
        timeout: Optional[float] = 60.0
    ):
        """
        初始化LLM Gateway

        Args:
            catalog: 路由目录（模型 -> Provider、回退链、排除列表）
            max_retries: 单个模型的最大尝试次数
            retry_delay: 重试间隔（秒）
            timeout: 单次调用超时（秒），None 表示不限制
        """
        self.catalog = catalog
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.timeout = timeout

        self._providers: Dict[str, LLMProvider] = {}
        self.token_counter = TokenCounter()

        self._request_count = 0
        self._success_count = 0
        self._failure_count = 0
        self._degraded_count = 0

        logger.info("LLM Gateway initialized")

    def register_provider(self, name: str, provider: LLMProvider) -> None:
        """注册LLM Provider"""
        self._providers[name] = provider
        logger.info(f"Registered LLM provider: {name}")

    def has_provider(self, name: str) -> bool:
        return name in self._providers

    def list_providers(self) -> List[str]:
        """列出所有已注册的Provider"""
        return list(self._providers.keys())

    def get_provider_for(self, model_id: str) -> LLMProvider:
        """
        获取服务该模型的Provider

        Raises:
            ModelNotAvailableError: 如果Provider未注册
        """
        provider_name = self.catalog.provider_of(model_id)
        provider = self._providers.get(provider_name)
        if provider is None:
            raise ModelNotAvailableError(
                f"Provider not registered: {provider_name}", model_id=model_id
            )
        return provider

    async def generate_text(
        self,
        model_id: str,
        system_prompt: Optional[str],
        history: Optional[Sequence[Dict[str, str]]],
        user_prompt: Optional[str],
        params: Optional[GenerationParams] = None,
        chat_id: Optional[str] = None,
        agent: Optional[str] = None
    ) -> GenerationResult:
        """
        使用指定模型生成文本

        Raises:
            GenerationError: 调用失败、超时或返回空内容
        """
        params = params or GenerationParams()
        provider = self.get_provider_for(model_id)
        messages = build_messages(system_prompt, history, user_prompt)
        request_id = str(uuid.uuid4())
        start_time = datetime.now(timezone.utc)
        self._request_count += 1

        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries):
            try:
                result = await asyncio.wait_for(
                    provider.generate(
                        messages=messages,
                        model=model_id,
                        max_tokens=params.max_tokens,
                        temperature=params.temperature
                    ),
                    timeout=self.timeout
                )
                if not result.get("content"):
                    raise GenerationError("Empty response", model_id=model_id)

                latency_ms = (datetime.now(timezone.utc) - start_time).total_seconds() * 1000
                usage = self.token_counter.record_usage(
                    prompt_tokens=result["usage"]["prompt_tokens"],
                    completion_tokens=result["usage"]["completion_tokens"],
                    model=model_id,
                    provider=provider.name,
                    chat_id=chat_id,
                    agent=agent,
                    request_id=request_id
                )
                self._success_count += 1

                return GenerationResult(
                    text=result["content"],
                    model_id=model_id,
                    provider=provider.name,
                    tokens_in=usage.prompt_tokens,
                    tokens_out=usage.completion_tokens,
                    latency_ms=latency_ms,
                    attempted_models=[model_id],
                    usage=usage
                )

            except asyncio.TimeoutError as e:
                last_error = e
                logger.warning(
                    f"LLM request timed out after {self.timeout}s "
                    f"(model: {model_id}, attempt {attempt + 1})"
                )
            except Exception as e:
                last_error = e
                logger.warning(
                    f"LLM request failed (model: {model_id}, attempt {attempt + 1}): {e}"
                )

            if attempt < self.max_retries - 1:
                await asyncio.sleep(self.retry_delay * (attempt + 1))

        self._failure_count += 1
        raise GenerationError(
            f"All retries failed for {model_id}: {last_error}", model_id=model_id
        )

    def fallback_candidates(self, model_id: str) -> List[str]:
        """首选模型 + 回退链（去除排除模型与重复项）"""
        candidates: List[str] = []
        for candidate in [model_id] + self.catalog.get_fallback_models(model_id):
            if candidate in candidates or self.catalog.is_excluded(candidate):
                continue
            candidates.append(candidate)
        return candidates

    async def generate_with_fallback(
        self,
        model_id: str,
        system_prompt: Optional[str],
        history: Optional[Sequence[Dict[str, str]]],
        user_prompt: Optional[str],
        params: Optional[GenerationParams] = None,
        chat_id: Optional[str] = None,
        agent: Optional[str] = None,
        category: Optional[str] = None
    ) -> GenerationResult:
        """
        按回退链生成文本，从不抛出生成异常

        Returns:
            GenerationResult: 全部失败时 degraded=True，text 为道歉文案
        """
        attempted: List[str] = []
        for candidate in self.fallback_candidates(model_id):
            attempted.append(candidate)
            try:
                result = await self.generate_text(
                    candidate, system_prompt, history, user_prompt,
                    params=params, chat_id=chat_id, agent=agent
                )
            except GenerationError as e:
                logger.warning(
                    f"⚠️ [FALLBACK] model={candidate} failed | category={category} | "
                    f"chat={chat_id} | agent={agent} | error={e}"
                )
                continue

            if candidate != model_id:
                logger.info(f"🔁 [FALLBACK] {model_id} -> {candidate} succeeded (chat={chat_id})")
            result.attempted_models = attempted
            return result

        self._degraded_count += 1
        logger.error(
            f"❌ [FALLBACK] all models failed | requested={model_id} | tried={attempted} | "
            f"category={category} | chat={chat_id} | agent={agent}"
        )
        return GenerationResult(
            text=FALLBACK_APOLOGY,
            model_id=model_id,
            degraded=True,
            attempted_models=attempted
        )

    def get_stats(self) -> Dict[str, Any]:
        """获取Gateway统计信息"""
        return {
            "total_requests": self._request_count,
            "successful_requests": self._success_count,
            "failed_requests": self._failure_count,
            "degraded_responses": self._degraded_count,
            "success_rate": (
                self._success_count / self._request_count
                if self._request_count > 0 else 0
            ),
            "token_stats": self.token_counter.get_total_stats(),
            "registered_providers": self.list_providers()
        }


def build_llm_gateway(settings, catalog: RoutingCatalog) -> LLMGateway:
    """
    根据配置创建 Gateway 并注册可用的 Provider

    Args:
        settings: config.Settings 实例
        catalog: 路由目录
    """
    gateway = LLMGateway(
        catalog,
        max_retries=settings.generation_max_retries,
        timeout=settings.generation_timeout_seconds
    )

    provider_specs = [
        ("gemini", settings.gemini_api_key, settings.gemini_api_url),
        ("grok", settings.grok_api_key, settings.grok_api_url),
    ]
    for name, api_key, api_url in provider_specs:
        if not api_key:
            logger.warning(f"{name} API key not configured, provider disabled")
            continue
        try:
            config = ProviderConfig(
                api_key=api_key,
                api_url=api_url,
                timeout=int(settings.generation_timeout_seconds)
            )
            gateway.register_provider(name, OpenAICompatibleProvider(name, config))
        except Exception as e:
            logger.warning(f"Failed to register {name} provider: {e}")

    return gateway
