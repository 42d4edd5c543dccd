"""
Dual-Agent Launcher - 双Agent启动器
==========================================

启动主Agent (BongBong) 的 Telegram 轮询，影子Agent (Avatar) 只负责发送消息。
所有服务在启动时创建一次，并显式传递给需要它们的组件。

使用方法:
  python main.py              # 启动
  python main.py --stats      # 打印路由目录与配置后退出
"""
import asyncio
import random
import signal
import sys
from dataclasses import dataclass
from typing import Optional

from loguru import logger
from telegram import Bot, Update
from telegram.ext import Application

from config import Settings, settings
from src.agents import (
    AgentEventBus, CoordinatorConfig, DualAgentCoordinator, PrimaryAgent, ShadowAgent
)
from src.bot.handlers import CompanionHandlers
from src.bot.persona_loader import PersonaConfig, PersonaLoader
from src.bot.transport import TelegramTransport
from src.conversation import AgentSessionStore
from src.llm_gateway import LLMGateway, build_llm_gateway
from src.routing import RoutingCatalog, SmartRouter, UsageCounter, load_routing_catalog
from src.services.history_store import HistoryStore
from src.services.segment_service import SegmentCache, SegmentService


@dataclass
class CompanionServices:
    """启动时创建一次的共享服务"""
    catalog: RoutingCatalog
    router: SmartRouter
    gateway: LLMGateway
    sessions: AgentSessionStore
    history_store: HistoryStore
    segment_cache: SegmentCache
    segment_service: SegmentService
    event_bus: AgentEventBus
    primary_persona: PersonaConfig
    shadow_persona: PersonaConfig


def build_services(app_settings: Settings, bots_dir: str = "bots",
                   rng: Optional[random.Random] = None) -> CompanionServices:
    """根据配置创建所有共享服务"""
    rng = rng or random.Random()
    catalog = load_routing_catalog(app_settings.routing_config_path)
    router = SmartRouter(
        catalog,
        usage_counter=UsageCounter(ceiling=app_settings.usage_ceiling),
        target_secondary_ratio=app_settings.secondary_target_ratio,
        rng=rng
    )
    gateway = build_llm_gateway(app_settings, catalog)

    loader = PersonaLoader(bots_dir)
    primary_persona = loader.get_persona(app_settings.primary_bot_username) or PersonaConfig(name="BongBong")
    shadow_persona = loader.get_persona(app_settings.shadow_bot_username) or PersonaConfig(
        name="Avatar", role="shadow"
    )

    segment_cache = SegmentCache(ttl_seconds=app_settings.segment_ttl_seconds)
    return CompanionServices(
        catalog=catalog,
        router=router,
        gateway=gateway,
        sessions=AgentSessionStore(max_turns=app_settings.history_max_turns),
        history_store=HistoryStore(app_settings.redis_url, ttl=app_settings.history_store_ttl),
        segment_cache=segment_cache,
        segment_service=SegmentService(
            segment_cache,
            min_length=app_settings.segment_min_length,
            split_threshold=app_settings.segment_split_threshold,
            max_chunk=app_settings.segment_max_chunk
        ),
        event_bus=AgentEventBus(),
        primary_persona=primary_persona,
        shadow_persona=shadow_persona,
    )


class CompanionLauncher:
    """
    双Agent启动器

    负责创建两个 Telegram Bot、协调器和处理器，并运行主Bot的轮询循环。
    """

    def __init__(self, app_settings: Settings = settings, bots_dir: str = "bots"):
        self.settings = app_settings
        self.bots_dir = bots_dir
        self._shutdown_event = asyncio.Event()
        self.application: Optional[Application] = None
        self.shadow_bot: Optional[Bot] = None
        self.coordinator: Optional[DualAgentCoordinator] = None
        logger.info("CompanionLauncher initialized")

    def build_coordinator(self, services: CompanionServices, primary_transport, shadow_transport,
                          rng: Optional[random.Random] = None) -> DualAgentCoordinator:
        rng = rng or random.Random()
        primary = PrimaryAgent(
            services.primary_persona,
            services.router,
            services.gateway,
            counter_reply_rate=self.settings.counter_reply_rate,
            rng=rng
        )
        shadow = ShadowAgent(
            services.shadow_persona,
            services.gateway,
            services.catalog,
            reply_rate=self.settings.shadow_reply_rate,
            rng=rng
        )
        return DualAgentCoordinator(
            primary,
            shadow,
            services.sessions,
            services.segment_service,
            primary_transport,
            shadow_transport,
            history_store=services.history_store,
            event_bus=services.event_bus,
            config=CoordinatorConfig.from_settings(self.settings),
            rng=rng
        )

    async def start(self) -> None:
        """启动主Bot轮询直到收到停止信号"""
        if not self.settings.primary_bot_token or not self.settings.shadow_bot_token:
            logger.error("❌ PRIMARY_BOT_TOKEN and SHADOW_BOT_TOKEN must both be set")
            return

        services = build_services(self.settings, self.bots_dir)
        if not services.gateway.list_providers():
            logger.warning("⚠️ No LLM provider configured, every reply will be the fallback apology")

        self.application = Application.builder().token(self.settings.primary_bot_token).build()
        self.shadow_bot = Bot(self.settings.shadow_bot_token)

        self.coordinator = self.build_coordinator(
            services,
            TelegramTransport(self.application.bot, name=services.primary_persona.name),
            TelegramTransport(self.shadow_bot, name=services.shadow_persona.name)
        )
        self.coordinator.register_interjection_callback(
            lambda event: logger.debug(f"👥 {event.agent} spoke in {event.chat_id}: {event.text[:50]}")
        )
        CompanionHandlers(self.coordinator, services.segment_cache, services.history_store).register(
            self.application
        )

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._shutdown_event.set)
            except NotImplementedError:
                # Windows 不支持 add_signal_handler
                pass

        try:
            await self.shadow_bot.initialize()
            await self.application.initialize()
            await self.application.start()
            await self.application.updater.start_polling(
                allowed_updates=Update.ALL_TYPES,
                drop_pending_updates=True
            )
            await self.coordinator.start()
            logger.info(
                f"✅ {services.primary_persona.name} is polling, "
                f"{services.shadow_persona.name} ready to interject"
            )
            await self._shutdown_event.wait()
        finally:
            await self.stop()

    async def stop(self) -> None:
        """停止协调器和两个Bot"""
        self._shutdown_event.set()
        if self.coordinator:
            await self.coordinator.stop()
            logger.info(f"📊 Usage stats: {self.coordinator.get_usage_stats()}")

        try:
            if self.application:
                if self.application.updater and self.application.updater.running:
                    await self.application.updater.stop()
                if self.application.running:
                    await self.application.stop()
                await self.application.shutdown()
            if self.shadow_bot:
                await self.shadow_bot.shutdown()
        except Exception as e:
            logger.error(f"Error stopping bots: {e}")
        logger.info("All bots stopped")


def print_catalog(app_settings: Settings) -> None:
    catalog = load_routing_catalog(app_settings.routing_config_path)
    print(f"\n📋 Providers: primary={catalog.primary_provider} secondary={catalog.secondary_provider}")
    print(f"   cheap={catalog.cheap_model} high={catalog.high_capability_model} "
          f"secondary={catalog.secondary_model}")
    print(f"   categories: {', '.join(catalog.category_names)}")
    print(f"   excluded: {', '.join(sorted(catalog.excluded_models))}\n")


async def main():
    """主入口"""
    import argparse

    parser = argparse.ArgumentParser(description="Dual-Agent Launcher - 双Agent启动器")
    parser.add_argument("--stats", action="store_true", help="打印路由目录后退出")
    parser.add_argument("--bots-dir", type=str, default="bots", help="人设配置目录")
    args = parser.parse_args()

    # 配置日志
    logger.remove()
    logger.add(sys.stderr, level=settings.log_level)
    logger.add(
        "logs/companion_{time}.log",
        rotation="1 day",
        retention="7 days",
        level="INFO",
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {name}:{function}:{line} - {message}"
    )

    if args.stats:
        print_catalog(settings)
        return

    launcher = CompanionLauncher(settings, bots_dir=args.bots_dir)
    try:
        await launcher.start()
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")
        await launcher.stop()


if __name__ == "__main__":
    asyncio.run(main())
