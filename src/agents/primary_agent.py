"""
主Agent (BongBong)

- 回复用户消息：语义路由选择模型，失败时沿回退链降级
- 反击：影子Agent接话后，以小概率回一句（只回一次）
- 空闲闲聊：按权重抽取任务类型，生成开场白和短句
- 展开分段：对缓存的分段内容做详细展开
"""
import random
from typing import Dict, Optional, Sequence

from loguru import logger

from src.bot.persona_loader import IdleTaskType, PersonaConfig, DEFAULT_TASK_TYPES
from src.llm_gateway import LLMGateway
from src.routing.models import RoutingDecision
from src.routing.router import SmartRouter
from .base_agent import CompanionAgent, format_history
from .models import AgentReply


COUNTER_REPLY_PREFIX = "🎯"
DEFAULT_COUNTER_FALLBACK = "...（沉默是最好的反击）"
DEFAULT_MEME = "好家伙"


class PrimaryAgent(CompanionAgent):
    """
    主Agent

    Usage:
        agent = PrimaryAgent(persona, router, gateway)
        reply = await agent.reply(chat_id, "今天天气怎么样？", history)
    """

    def __init__(
        self,
        persona: PersonaConfig,
        router: SmartRouter,
        gateway: LLMGateway,
        counter_reply_rate: float = 0.15,
        rng: Optional[random.Random] = None
    ):
        super().__init__(persona, gateway, router.catalog, rng=rng)
        if not 0.0 <= counter_reply_rate <= 1.0:
            raise ValueError(f"counter_reply_rate必须在0.0-1.0之间，当前值: {counter_reply_rate}")
        self.router = router
        self.counter_reply_rate = counter_reply_rate

    def route(self, text: str, override_model: Optional[str] = None) -> RoutingDecision:
        """为用户消息选择模型（人设指定的模型视作用户覆盖）"""
        return self.router.route(text, override_model=override_model or self.persona.ai.model)

    async def reply(
        self,
        chat_id: str,
        text: str,
        history: Optional[Sequence[Dict[str, str]]] = None,
        override_model: Optional[str] = None,
        decision: Optional[RoutingDecision] = None
    ) -> AgentReply:
        """
        回复用户消息

        Args:
            chat_id: 会话ID
            text: 用户消息
            history: 此前的对话历史（不含本条消息）
            override_model: 用户指定的模型
            decision: 已选好的路由结果，为空时调用 route()

        Returns:
            AgentReply: 所有模型都失败时 degraded=True，text 为道歉文案
        """
        if decision is None:
            decision = self.route(text, override_model)
        result = await self.generate(
            decision.model_id,
            text,
            history=history,
            chat_id=chat_id,
            category=decision.category
        )
        return self.to_reply(result, decision=decision)

    def should_counter_reply(self) -> bool:
        return self.rng.random() < self.counter_reply_rate

    async def counter_reply(self, chat_id: str, shadow_text: str) -> str:
        """生成对影子Agent的反击（不带前缀）"""
        prompt = self.persona.render_prompt("counter_reply", message=shadow_text)
        if prompt is None:
            prompt = f"Avatar 刚才说：「{shadow_text}」。用一两句话高冷地回应他。"

        model_id = self.resolve_model(self.persona.ai.counter_model, self.catalog.cheap_model)
        result = await self.generate(model_id, prompt, chat_id=chat_id, temperature=0.9, max_tokens=200)
        if result.degraded:
            return self.pick(self.persona.get_templates("counter_fallback"), DEFAULT_COUNTER_FALLBACK)
        return result.text

    def select_task_type(self) -> IdleTaskType:
        """
        按权重随机选择空闲闲聊任务类型

        在 [0, 总权重) 中均匀取值，依次减去各任务权重，剩余值 <= 0 时选中。
        """
        task_types = self.persona.idle_chat.task_types or DEFAULT_TASK_TYPES
        total_weight = sum(task.weight for task in task_types)
        remainder = self.rng.random() * total_weight
        for task in task_types:
            remainder -= task.weight
            if remainder <= 0:
                return task
        return task_types[0]

    def pick_opener(self, task_type: IdleTaskType) -> str:
        return self.pick(self.persona.get_openers(task_type.type), "对了")

    async def generate_idle_turn(
        self,
        chat_id: str,
        task_type: IdleTaskType,
        round_index: int,
        total_rounds: int,
        history: Optional[Sequence[Dict[str, str]]] = None
    ) -> str:
        """
        生成一句空闲闲聊

        生成失败时返回随机梗模板。
        """
        variables = {"round": round_index + 1, "total": total_rounds}
        try:
            instruction = task_type.prompt.format(**variables) if task_type.prompt else ""
        except (KeyError, IndexError):
            instruction = task_type.prompt
        if not instruction:
            instruction = f"这是第 {round_index + 1}/{total_rounds} 句闲聊，用一句话随便聊聊。"

        prompt = instruction
        if history and task_type.type != "random_chat":
            header = self.persona.render_prompt("idle_header", history=format_history(history))
            if header:
                prompt = f"{header}\n{instruction}"

        model_id = self.resolve_model(self.persona.ai.idle_model, self.catalog.cheap_model)
        result = await self.generate(
            model_id,
            prompt,
            chat_id=chat_id,
            temperature=self.persona.ai.idle_temperature,
            max_tokens=self.persona.ai.idle_max_tokens,
            category=task_type.type
        )
        if result.degraded:
            logger.warning(f"💤 [IDLE] generation failed in {chat_id}, using meme template")
            return self.pick(self.persona.get_templates("memes"), DEFAULT_MEME)
        return result.text

    async def expand_segment(self, chat_id: str, content: str) -> AgentReply:
        """对一个缓存的分段做详细展开（使用高能力模型）"""
        prompt = self.persona.render_prompt("expand", content=content)
        if prompt is None:
            prompt = f"请把下面这段内容展开讲得更详细一些：\n\n{content}"
        result = await self.generate(self.catalog.high_capability_model, prompt, chat_id=chat_id)
        return self.to_reply(result)
