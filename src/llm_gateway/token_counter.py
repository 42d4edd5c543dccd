"""
Token Counter - Token统计和成本追踪

按模型、按Agent、按会话统计 token 使用与预估成本
"""
from dataclasses import dataclass, field
from typing import Dict, Optional
from datetime import datetime, timezone
from loguru import logger


@dataclass
class UsageStats:
    """
    单次调用的使用统计

    Attributes:
        prompt_tokens: 输入token数
        completion_tokens: 输出token数
        total_tokens: 总token数
        cost: 预估成本（美元）
        model: 使用的模型
        provider: 服务提供商
        timestamp: 时间戳
        request_id: 请求ID
        chat_id: 会话ID（用户或群组）
        agent: 发起调用的Agent
    """
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost: float = 0.0
    model: str = ""
    provider: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    request_id: Optional[str] = None
    chat_id: Optional[str] = None
    agent: Optional[str] = None


# 模型定价表（每1000 tokens的价格，美元）
# Gemini Flash 系列在免费额度内按 0 计
MODEL_PRICING = {
    "gemini-2.5-pro": {"input": 0.00125, "output": 0.01},
    "gemini-2.5-flash": {"input": 0.0, "output": 0.0},
    "gemini-2.0-flash": {"input": 0.0, "output": 0.0},
    "gemini-2.0-flash-exp": {"input": 0.0, "output": 0.0},
    "gemini-2.5-flash-lite": {"input": 0.0, "output": 0.0},
    "grok-3-mini": {"input": 0.0003, "output": 0.0005},
    "grok-4-fast-non-reasoning": {"input": 0.0002, "output": 0.0005},
    "default": {"input": 0.0, "output": 0.0}
}


def _empty_bucket() -> Dict:
    return {
        "prompt_tokens": 0,
        "completion_tokens": 0,
        "total_tokens": 0,
        "requests": 0,
        "cost": 0.0
    }


class TokenCounter:
    """
    Token统计器 - 追踪和统计token使用情况
    """

    def __init__(self):
        # 累计统计
        self._total_stats: Dict[str, float] = {
            "prompt_tokens": 0,
            "completion_tokens": 0,
            "total_tokens": 0,
            "total_requests": 0,
            "total_cost": 0.0
        }

        # 按模型 / 按Agent 统计
        self._model_stats: Dict[str, Dict] = {}
        self._agent_stats: Dict[str, Dict] = {}

    def calculate_cost(
        self,
        model: str,
        prompt_tokens: int,
        completion_tokens: int
    ) -> float:
        """
        计算API调用成本

        Args:
            model: 模型名称
            prompt_tokens: 输入token数
            completion_tokens: 输出token数

        Returns:
            预估成本（美元）
        """
        pricing = MODEL_PRICING.get(model, MODEL_PRICING["default"])

        input_cost = (prompt_tokens / 1000) * pricing["input"]
        output_cost = (completion_tokens / 1000) * pricing["output"]

        return round(input_cost + output_cost, 6)

    @staticmethod
    def _accumulate(bucket: Dict, stats: UsageStats) -> None:
        bucket["prompt_tokens"] += stats.prompt_tokens
        bucket["completion_tokens"] += stats.completion_tokens
        bucket["total_tokens"] += stats.total_tokens
        bucket["requests"] += 1
        bucket["cost"] += stats.cost

    def record_usage(
        self,
        prompt_tokens: int,
        completion_tokens: int,
        model: str,
        provider: str,
        chat_id: Optional[str] = None,
        agent: Optional[str] = None,
        request_id: Optional[str] = None
    ) -> UsageStats:
        """
        记录使用情况

        Returns:
            UsageStats对象
        """
        stats = UsageStats(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
            cost=self.calculate_cost(model, prompt_tokens, completion_tokens),
            model=model,
            provider=provider,
            chat_id=chat_id,
            agent=agent,
            request_id=request_id
        )

        self._total_stats["prompt_tokens"] += stats.prompt_tokens
        self._total_stats["completion_tokens"] += stats.completion_tokens
        self._total_stats["total_tokens"] += stats.total_tokens
        self._total_stats["total_requests"] += 1
        self._total_stats["total_cost"] += stats.cost

        self._accumulate(self._model_stats.setdefault(model, _empty_bucket()), stats)
        if agent:
            self._accumulate(self._agent_stats.setdefault(agent, _empty_bucket()), stats)

        logger.debug(
            f"Token usage recorded: {stats.total_tokens} tokens, ${stats.cost:.6f} "
            f"(model: {model}, agent: {agent}, chat: {chat_id})"
        )

        return stats

    def get_total_stats(self) -> Dict:
        """获取总体统计"""
        return dict(self._total_stats)

    def get_agent_stats(self, agent: str) -> Optional[Dict]:
        """获取Agent统计"""
        return self._agent_stats.get(agent)

    def get_model_stats(self, model: Optional[str] = None) -> Dict:
        """获取模型统计"""
        if model:
            return self._model_stats.get(model, {})
        return dict(self._model_stats)
