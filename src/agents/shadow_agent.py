"""
影子Agent (Avatar)

在主Agent回复群聊后接话，或对空闲闲聊做出反应。
是否开口由自己的概率和人设决定；没有可用模型时使用接话模板。
"""
import random
from typing import Dict, Optional, Sequence

from loguru import logger

from src.bot.persona_loader import PersonaConfig
from src.llm_gateway import FALLBACK_APOLOGY, LLMGateway
from src.routing.catalog import RoutingCatalog
from .base_agent import CompanionAgent


class ShadowAgent(CompanionAgent):
    """
    影子Agent

    Usage:
        agent = ShadowAgent(persona, gateway, catalog)
        text = await agent.respond_to_primary(chat_id, primary_text, history)
    """

    def __init__(
        self,
        persona: PersonaConfig,
        gateway: LLMGateway,
        catalog: RoutingCatalog,
        reply_rate: float = 0.7,
        rng: Optional[random.Random] = None
    ):
        super().__init__(persona, gateway, catalog, rng=rng)
        if not 0.0 <= reply_rate <= 1.0:
            raise ValueError(f"reply_rate必须在0.0-1.0之间，当前值: {reply_rate}")
        self.reply_rate = reply_rate
        self.model_id = self.resolve_model(persona.ai.model, catalog.secondary_model)

    def should_respond(self, primary_text: Optional[str]) -> bool:
        """主Agent说了有内容的话（不是道歉文案）时，按概率决定是否接话"""
        if not primary_text or not primary_text.strip() or primary_text == FALLBACK_APOLOGY:
            return False
        return self.rng.random() < self.reply_rate

    async def _speak(
        self,
        chat_id: str,
        prompt_key: str,
        message: str,
        history: Optional[Sequence[Dict[str, str]]]
    ) -> str:
        prompt = self.persona.render_prompt(prompt_key, message=message)
        if prompt is None:
            prompt = f"BongBong 说：「{message}」。用一句话接话。"

        result = await self.generate(self.model_id, prompt, history=history, chat_id=chat_id)
        if result.degraded:
            logger.info(f"👥 [SHADOW] no model available in {chat_id}, using template reply")
            return self.pick(self.persona.get_templates("after_primary"), "...")
        return result.text

    async def respond_to_primary(
        self,
        chat_id: str,
        primary_text: str,
        history: Optional[Sequence[Dict[str, str]]] = None
    ) -> Optional[str]:
        """
        对主Agent的回复接话

        Returns:
            接话内容，决定不接话时返回 None
        """
        if not self.should_respond(primary_text):
            return None
        return await self._speak(chat_id, "after_primary", primary_text, history)

    async def react_to_burst(self, chat_id: str, burst_text: str) -> Optional[str]:
        """对空闲闲聊中的一句做出反应，决定不接话时返回 None"""
        if not self.should_respond(burst_text):
            return None
        return await self._speak(chat_id, "burst_reaction", burst_text, None)
