"""
Dual-Agent Coordinator - 双Agent协调器

协调主Agent (BongBong) 与影子Agent (Avatar) 在同一群组中的互动：

1. 每条群消息重置该群的空闲定时器（随机 30-60 分钟），任何时刻每个群最多一个待触发定时器
2. 主Agent回复用户消息；长回复切分为带按钮的分段
3. 主Agent回复后，延迟若干秒由影子Agent决定是否接话
4. 影子Agent接话后，主Agent以小概率反击一次（不再继续往返）
5. 定时器触发后重新确认群组确实空闲、且距离上次闲聊超过冷却时间，然后进行多轮空闲闲聊；
   闲聊过程中有真实用户消息到达时放弃剩余轮次
6. 定期清理长期不活跃的群组

群组状态：ACTIVE -> IDLE -> BURSTING -> ACTIVE
"""
import asyncio
import random
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Coroutine, Dict, List, Optional, Set

from loguru import logger

from src.conversation.session_store import (
    AgentSessionStore, GroupActivityState, GroupState, ROLE_AGENT, ROLE_USER
)
from src.llm_gateway import FALLBACK_APOLOGY
from src.services.history_store import HistoryStore
from src.services.segment_service import SegmentService, build_compact_dashboard
from .events import AgentEvent, AgentEventBus, AgentEventType
from .models import AgentReply, InboundMessage
from .primary_agent import COUNTER_REPLY_PREFIX, PrimaryAgent
from .shadow_agent import ShadowAgent


@dataclass
class CoordinatorConfig:
    """协调器配置（时间单位见字段名）"""
    idle_chat_enabled: bool = True
    idle_min_minutes: float = 30
    idle_max_minutes: float = 60
    idle_cooldown_minutes: float = 60
    burst_turns: int = 10
    turn_interval_seconds: float = 3.0
    react_every: int = 3
    interjection_delay_seconds: float = 2.0
    counter_reply_delay_seconds: float = 2.0
    stale_group_days: float = 30
    sweep_interval_minutes: float = 60
    history_limit: int = 20
    show_dashboard: bool = True

    def __post_init__(self):
        if self.idle_min_minutes > self.idle_max_minutes:
            raise ValueError(
                f"idle_min_minutes ({self.idle_min_minutes}) 不能大于 idle_max_minutes ({self.idle_max_minutes})"
            )
        if self.burst_turns < 1:
            raise ValueError(f"burst_turns must be positive, got {self.burst_turns}")

    @classmethod
    def from_settings(cls, settings) -> "CoordinatorConfig":
        return cls(
            idle_chat_enabled=settings.idle_chat_enabled,
            idle_min_minutes=settings.idle_min_minutes,
            idle_max_minutes=settings.idle_max_minutes,
            idle_cooldown_minutes=settings.idle_cooldown_minutes,
            burst_turns=settings.idle_burst_turns,
            turn_interval_seconds=settings.idle_turn_interval_seconds,
            react_every=settings.idle_react_every,
            interjection_delay_seconds=settings.interjection_delay_seconds,
            counter_reply_delay_seconds=settings.counter_reply_delay_seconds,
            stale_group_days=settings.stale_group_days,
            sweep_interval_minutes=settings.sweep_interval_minutes,
            history_limit=settings.history_max_turns,
        )


class DualAgentCoordinator:
    """
    双Agent协调器

    Usage:
        coordinator = DualAgentCoordinator(
            primary, shadow, session_store, segment_service,
            primary_transport, shadow_transport, history_store=history_store
        )
        await coordinator.start()
        await coordinator.handle_inbound_message(InboundMessage(chat_id="-100", text="大家好", is_group=True))
    """

    def __init__(
        self,
        primary: PrimaryAgent,
        shadow: ShadowAgent,
        session_store: AgentSessionStore,
        segment_service: SegmentService,
        primary_transport,
        shadow_transport,
        history_store: Optional[HistoryStore] = None,
        event_bus: Optional[AgentEventBus] = None,
        config: Optional[CoordinatorConfig] = None,
        rng: Optional[random.Random] = None
    ):
        """
        Args:
            primary: 主Agent
            shadow: 影子Agent
            session_store: 进程内会话存储
            segment_service: 分段服务
            primary_transport: 主Agent的发送通道（send_message / edit_message）
            shadow_transport: 影子Agent的发送通道
            history_store: 持久化对话记录（可选）
            event_bus: 事件总线（为空时新建）
            config: 协调器配置
            rng: 随机数源（空闲延迟）
        """
        self.primary = primary
        self.shadow = shadow
        self.sessions = session_store
        self.segments = segment_service
        self.primary_transport = primary_transport
        self.shadow_transport = shadow_transport
        self.history_store = history_store
        self.bus = event_bus or AgentEventBus()
        self.config = config or CoordinatorConfig()
        self.rng = rng or random.Random()

        self._tasks: Set[asyncio.Task] = set()
        self._sweep_task: Optional[asyncio.Task] = None
        self._running = False

        self.bus.subscribe(AgentEventType.PRIMARY_REPLIED, self._on_primary_replied)
        self.bus.subscribe(AgentEventType.SHADOW_SPOKE, self._on_shadow_spoke)
        self.bus.subscribe(AgentEventType.BURST_TURN, self._on_burst_turn)

    # ==================== 生命周期 ====================

    async def start(self) -> None:
        """启动过期群组清理任务"""
        if self._running:
            logger.warning("Dual-agent coordinator is already running")
            return

        self._running = True
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info("🤝 Dual-agent coordinator started")

    async def stop(self) -> None:
        """停止清理任务，取消所有定时器和后台任务"""
        self._running = False
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        for group_id in self.sessions.group_ids():
            group = self.sessions.get_group(group_id)
            if group is not None:
                group.cancel_timer()

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("🤝 Dual-agent coordinator stopped")

    async def _sweep_loop(self) -> None:
        interval = self.config.sweep_interval_minutes * 60
        while self._running:
            await asyncio.sleep(interval)
            try:
                self.sweep_stale_groups()
            except Exception as e:
                logger.error(f"Error in stale group sweep: {e}", exc_info=True)

    def sweep_stale_groups(self) -> List[str]:
        """清理超过 stale_group_days 未活跃的群组"""
        return self.sessions.evict_stale(timedelta(days=self.config.stale_group_days))

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _after(self, delay: float, coro: Coroutine) -> None:
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            coro.close()
            raise
        await coro

    def schedule(self, delay: float, coro: Coroutine) -> asyncio.Task:
        """延迟 delay 秒后在后台执行 coro"""
        return self._spawn(self._after(delay, coro))

    # ==================== 对外接口 ====================

    def register_interjection_callback(self, callback: Callable[[AgentEvent], Any]) -> None:
        """影子Agent每次开口时通知宿主应用"""
        self.bus.subscribe(AgentEventType.SHADOW_SPOKE, callback)

    def get_usage_stats(self) -> Dict[str, Any]:
        """路由使用比例与 token 统计"""
        stats = self.primary.router.get_stats()
        stats["tokens"] = self.primary.gateway.get_stats().get("token_stats", {})
        return stats

    async def handle_inbound_message(self, message: InboundMessage) -> Optional[AgentReply]:
        """
        处理一条用户消息（主入口）

        从不抛出异常：出错时记录日志并向会话发送一条道歉消息。

        Returns:
            主Agent的回复，出错时返回 None
        """
        chat_id = str(message.chat_id)
        decision = None
        try:
            if message.is_group:
                self._mark_user_activity(chat_id)

            history = self.sessions.get_messages(chat_id, self.config.history_limit)
            self._record(chat_id, ROLE_USER, message.text, message.user_name or message.user_id)

            decision = self.primary.route(message.text, message.override_model)
            reply = await self.primary.reply(chat_id, message.text, history, decision=decision)
            if reply.degraded:
                logger.error(
                    f"❌ [COORD] degraded reply in chat {chat_id} | "
                    f"model={decision.model_id} | "
                    f"category={decision.category}"
                )
                await self.primary_transport.send_message(
                    chat_id, reply.text, reply_to_message_id=message.message_id
                )
                return reply

            reply.message_id = await self.send_reply(chat_id, reply, message.message_id)
            self._record(chat_id, ROLE_AGENT, reply.text, self.primary.name, is_group=message.is_group)

            await self.bus.publish(AgentEvent(
                type=AgentEventType.PRIMARY_REPLIED,
                chat_id=chat_id,
                agent=self.primary.name,
                text=reply.text,
                message_id=reply.message_id,
                hop=0,
                is_group=message.is_group
            ))
            return reply

        except Exception as e:
            logger.error(
                f"❌ [COORD] failed to handle message in chat {chat_id} "
                f"(user={message.user_id}) | "
                f"model={decision.model_id if decision else '-'} | "
                f"category={decision.category if decision else '-'}: {e}",
                exc_info=True
            )
            await self.primary_transport.send_message(chat_id, FALLBACK_APOLOGY)
            return None

    async def send_reply(self, chat_id: str, reply: AgentReply, reply_to: Optional[int]) -> Optional[int]:
        """发送回复（长回复切分为带按钮的分段，仪表盘附在最后一段）"""
        parts = self.segments.prepare(reply.text, chat_id)
        if self.config.show_dashboard and parts:
            footer = build_compact_dashboard(reply.model_name, reply.tokens, reply.icon)
            text, markup = parts[-1]
            parts[-1] = (f"{text}{footer}", markup)

        first_id = None
        for index, (text, markup) in enumerate(parts):
            message_id = await self.primary_transport.send_message(
                chat_id,
                text,
                reply_to_message_id=reply_to if index == 0 else None,
                reply_markup=markup
            )
            if first_id is None:
                first_id = message_id
        return first_id

    def _record(
        self,
        chat_id: str,
        role: str,
        text: str,
        speaker: Optional[str],
        is_group: bool = False,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """写入进程内历史和持久化历史；群组中的Agent消息同样算作活动"""
        self.sessions.append(chat_id, role, text, speaker=speaker)
        if is_group and role == ROLE_AGENT:
            self.sessions.record_activity(chat_id)
        if self.history_store is not None:
            entry = {"role": role, "speaker": speaker}
            entry.update(metadata or {})
            try:
                self.history_store.append_history(chat_id, text, entry)
            except Exception as e:
                logger.warning(f"HistoryStore append failed for {chat_id}: {e}")

    # ==================== 空闲定时器 ====================

    def _mark_user_activity(self, group_id: str) -> None:
        group = self.sessions.record_activity(group_id)
        if group.state == GroupState.BURSTING:
            logger.info(f"💤 [IDLE] real message in {group_id}, abandoning idle burst")
        group.state = GroupState.ACTIVE
        self.reset_idle_timer(group_id)

    def reset_idle_timer(self, group_id: str, delay: Optional[float] = None) -> float:
        """
        取消该群已有的空闲定时器并安装新的定时器

        Args:
            group_id: 群组ID
            delay: 延迟秒数，为空时在 [min, max] 分钟内均匀随机

        Returns:
            实际使用的延迟（秒）
        """
        if delay is None:
            delay = self.rng.uniform(
                self.config.idle_min_minutes * 60,
                self.config.idle_max_minutes * 60
            )
        group = self.sessions.ensure_group(group_id)
        loop = asyncio.get_running_loop()
        group.replace_timer(loop.call_later(delay, self._on_idle_timer, group_id))
        logger.debug(f"💤 [IDLE] timer for {group_id} set to {delay / 60:.1f} minutes")
        return delay

    def _on_idle_timer(self, group_id: str) -> None:
        group = self.sessions.get_group(group_id)
        if group is None:
            return
        group.idle_timer_handle = None
        self._spawn(self.check_idle(group_id))

    def _is_really_idle(self, group: GroupActivityState) -> bool:
        threshold = timedelta(minutes=self.config.idle_min_minutes)
        if group.idle_for(self.sessions.now()) < threshold:
            return False
        if self.history_store is not None:
            return self.history_store.is_idle(group.group_id, self.config.idle_min_minutes)
        return True

    async def check_idle(self, group_id: str) -> bool:
        """
        定时器触发后的检查

        定时器触发并不保证群组空闲（活动可能与定时器竞争），
        因此重新计算空闲时长；不满足时重新安排定时器。

        Returns:
            是否进行了空闲闲聊
        """
        group = self.sessions.get_group(group_id)
        if group is None or not self.config.idle_chat_enabled:
            return False
        if group.state == GroupState.BURSTING:
            return False

        if not self._is_really_idle(group):
            if not group.has_pending_timer:
                threshold = self.config.idle_min_minutes * 60
                remaining = threshold - group.idle_for(self.sessions.now()).total_seconds()
                self.reset_idle_timer(group_id, remaining if remaining > 0 else None)
            logger.debug(f"💤 [IDLE] {group_id} not idle yet, timer rescheduled")
            return False

        now = self.sessions.now()
        cooldown = timedelta(minutes=self.config.idle_cooldown_minutes)
        if group.last_idle_burst_at is not None and now - group.last_idle_burst_at < cooldown:
            if not group.has_pending_timer:
                remaining = (cooldown - (now - group.last_idle_burst_at)).total_seconds()
                self.reset_idle_timer(group_id, remaining)
            logger.debug(f"💤 [IDLE] {group_id} in cooldown, timer rescheduled after cooldown")
            return False

        group.state = GroupState.IDLE
        await self.run_idle_burst(group_id)
        return True

    def _burst_abandoned(self, group_id: str, group: GroupActivityState) -> bool:
        return self.sessions.get_group(group_id) is not group or group.state != GroupState.BURSTING

    async def run_idle_burst(self, group_id: str) -> int:
        """
        多轮空闲闲聊

        Returns:
            实际发送的闲聊句数（不含开场白）
        """
        group = self.sessions.ensure_group(group_id)
        group.state = GroupState.BURSTING
        group.last_idle_burst_at = self.sessions.now()

        task_type = self.primary.select_task_type()
        turns = self.config.burst_turns
        sent = 0
        logger.info(f"💤 [IDLE] starting idle chat in {group_id}: {task_type.name} ({turns} turns)")

        try:
            opener = self.primary.pick_opener(task_type)
            await self.primary_transport.send_message(group_id, opener)
            self._record(group_id, ROLE_AGENT, opener, self.primary.name, is_group=True)

            for index in range(turns):
                await asyncio.sleep(self.config.turn_interval_seconds)
                if self._burst_abandoned(group_id, group):
                    logger.info(f"💤 [IDLE] idle chat in {group_id} abandoned after {sent} turns")
                    break

                history = self.sessions.get_messages(group_id, self.config.history_limit)
                text = await self.primary.generate_idle_turn(group_id, task_type, index, turns, history)
                message_id = await self.primary_transport.send_message(group_id, text)
                self._record(
                    group_id, ROLE_AGENT, text, self.primary.name, is_group=True,
                    metadata={"type": "idle_chat", "task_type": task_type.type, "round": index}
                )
                sent += 1

                await self.bus.publish(AgentEvent(
                    type=AgentEventType.BURST_TURN,
                    chat_id=group_id,
                    agent=self.primary.name,
                    text=text,
                    message_id=message_id,
                    metadata={"turn": index, "task_type": task_type.type}
                ))
        finally:
            if group.state == GroupState.BURSTING:
                group.state = GroupState.ACTIVE

        logger.info(f"💤 [IDLE] idle chat in {group_id} finished: {sent}/{turns} turns")
        return sent

    # ==================== 跨Agent互动 ====================

    def _on_primary_replied(self, event: AgentEvent) -> None:
        if event.hop != 0 or not event.is_group:
            return
        self.schedule(self.config.interjection_delay_seconds, self._shadow_interject(event))

    async def _on_burst_turn(self, event: AgentEvent) -> None:
        react_every = self.config.react_every
        if react_every < 1 or event.metadata.get("turn", 0) % react_every != 0:
            return
        text = await self.shadow.react_to_burst(event.chat_id, event.text)
        if text:
            await self._shadow_say(event, text)

    async def _shadow_interject(self, event: AgentEvent) -> None:
        try:
            history = self.sessions.get_messages(event.chat_id, self.config.history_limit)
            text = await self.shadow.respond_to_primary(event.chat_id, event.text, history)
            if text:
                await self._shadow_say(event, text)
        except Exception as e:
            logger.error(f"👥 [SHADOW] interjection failed in {event.chat_id}: {e}", exc_info=True)

    async def _shadow_say(self, source: AgentEvent, text: str) -> None:
        message_id = await self.shadow_transport.send_message(
            source.chat_id, text, reply_to_message_id=source.message_id
        )
        self._record(source.chat_id, ROLE_AGENT, text, self.shadow.name, is_group=True)
        logger.info(f"👥 [SHADOW] {self.shadow.name} spoke in {source.chat_id}")

        await self.bus.publish(AgentEvent(
            type=AgentEventType.SHADOW_SPOKE,
            chat_id=source.chat_id,
            agent=self.shadow.name,
            text=text,
            message_id=message_id,
            hop=source.hop + 1
        ))

    def _on_shadow_spoke(self, event: AgentEvent) -> None:
        if event.hop != 1 or not self.primary.should_counter_reply():
            return
        self.schedule(self.config.counter_reply_delay_seconds, self._counter_reply(event))

    async def _counter_reply(self, event: AgentEvent) -> None:
        try:
            text = await self.primary.counter_reply(event.chat_id, event.text)
            message = f"{COUNTER_REPLY_PREFIX} {text}"
            message_id = await self.primary_transport.send_message(
                event.chat_id, message, reply_to_message_id=event.message_id
            )
            self._record(event.chat_id, ROLE_AGENT, text, self.primary.name, is_group=True)
            logger.info(f"🎯 [COUNTER] {self.primary.name} countered in {event.chat_id}")

            await self.bus.publish(AgentEvent(
                type=AgentEventType.PRIMARY_REPLIED,
                chat_id=event.chat_id,
                agent=self.primary.name,
                text=text,
                message_id=message_id,
                hop=event.hop + 1
            ))
        except Exception as e:
            logger.error(f"🎯 [COUNTER] counter-reply failed in {event.chat_id}: {e}", exc_info=True)
