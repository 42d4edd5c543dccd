"""
Agent基础类

主Agent和影子Agent共用的部分：
- 人设（系统提示词、模板）
- 通过 LLM Gateway 生成文本（带回退链）
- 可注入的随机数源
"""
import random
from typing import Dict, List, Optional, Sequence

from src.bot.persona_loader import PersonaConfig
from src.llm_gateway import GenerationParams, GenerationResult, LLMGateway
from src.routing.catalog import RoutingCatalog
from .models import AgentReply


class CompanionAgent:
    """
    Agent基类

    Args:
        persona: 人设配置
        gateway: LLM调用网关
        catalog: 路由目录（把 provider.type 解析为模型ID）
        rng: 随机数源（测试时可注入确定序列）
    """

    def __init__(
        self,
        persona: PersonaConfig,
        gateway: LLMGateway,
        catalog: RoutingCatalog,
        rng: Optional[random.Random] = None
    ):
        self.persona = persona
        self.gateway = gateway
        self.catalog = catalog
        self.rng = rng or random.Random()

    @property
    def name(self) -> str:
        return self.persona.name

    def resolve_model(self, key_or_id: Optional[str], default: str) -> str:
        """把人设中配置的模型（key 或 ID）解析为模型ID"""
        if not key_or_id:
            return default
        info = self.catalog.get_model(key_or_id)
        return info.id if info else key_or_id

    def pick(self, options: Sequence[str], default: str = "") -> str:
        """随机取一个模板"""
        if not options:
            return default
        return options[self.rng.randrange(len(options))]

    async def generate(
        self,
        model_id: str,
        user_prompt: str,
        history: Optional[Sequence[Dict[str, str]]] = None,
        chat_id: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        category: Optional[str] = None
    ) -> GenerationResult:
        """以人设的系统提示词生成文本，失败时沿回退链降级（不抛出异常）"""
        params = GenerationParams(
            max_tokens=max_tokens or self.persona.ai.max_tokens,
            temperature=temperature if temperature is not None else self.persona.ai.temperature
        )
        return await self.gateway.generate_with_fallback(
            model_id,
            self.persona.get_system_prompt(),
            history,
            user_prompt,
            params=params,
            chat_id=str(chat_id) if chat_id is not None else None,
            agent=self.name,
            category=category
        )

    def to_reply(self, result: GenerationResult, **extra) -> AgentReply:
        info = self.catalog.get_model(result.model_id)
        return AgentReply(
            text=result.text,
            model_id=result.model_id,
            model_name=info.name if info else result.model_id,
            icon=info.icon if info else "",
            tokens=result.total_tokens,
            degraded=result.degraded,
            **extra
        )


def format_history(history: Sequence[Dict[str, str]], limit: int = 20) -> str:
    """把历史转换为 "说话人: 内容" 形式的文本"""
    lines: List[str] = []
    for turn in list(history)[-limit:]:
        speaker = turn.get("speaker") or ("Agent" if turn.get("role") == "agent" else "用户")
        lines.append(f"{speaker}: {turn.get('content', '')}")
    return "\n".join(lines)
