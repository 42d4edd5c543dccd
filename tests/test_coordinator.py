"""
双Agent协调器测试

测试内容：
- 用户消息处理、分段发送与仪表盘
- 降级回复与异常时的道歉消息
- 影子Agent接话与主Agent反击（最多一个来回）
- 空闲定时器：每个群最多一个待触发定时器
- 空闲闲聊：轮次、影子反应、冷却、被真实消息打断
- 过期群组清理
"""
import asyncio
import random
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from loguru import logger

from src.agents import (
    AgentEventType, CoordinatorConfig, DualAgentCoordinator, InboundMessage,
    PrimaryAgent, ShadowAgent
)
from src.conversation import AgentSessionStore, GroupState
from src.llm_gateway import FALLBACK_APOLOGY, LLMGateway
from src.routing import SmartRouter
from src.services.history_store import HistoryStore
from src.services.segment_service import SegmentCache, SegmentService
from conftest import FakeProvider, make_transport
from test_segment_service import STRUCTURED_TEXT


GROUP = "-100"


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def fast_config(**overrides):
    values = dict(
        idle_min_minutes=30,
        idle_max_minutes=60,
        idle_cooldown_minutes=60,
        burst_turns=3,
        turn_interval_seconds=0,
        react_every=3,
        interjection_delay_seconds=0,
        counter_reply_delay_seconds=0,
    )
    values.update(overrides)
    return CoordinatorConfig(**values)


@pytest.fixture
def make_coordinator(catalog, personas):
    def factory(config=None, shadow_rate=0.0, counter_rate=0.0, primary_reply="我是BongBong",
                gateway=None, clock=None, history_store=None):
        if gateway is None:
            gateway = LLMGateway(catalog, retry_delay=0)
            gateway.register_provider("gemini", FakeProvider("gemini", default_reply=primary_reply))
            gateway.register_provider("grok", FakeProvider("grok", default_reply="我是Avatar"))
        router = SmartRouter(catalog, rng=random.Random(0))
        primary = PrimaryAgent(personas[0], router, gateway, counter_reply_rate=counter_rate, rng=random.Random(1))
        shadow = ShadowAgent(personas[1], gateway, catalog, reply_rate=shadow_rate, rng=random.Random(2))
        return DualAgentCoordinator(
            primary,
            shadow,
            AgentSessionStore(clock=clock),
            SegmentService(SegmentCache()),
            make_transport(),
            make_transport(),
            history_store=history_store,
            config=config or fast_config(),
            rng=random.Random(3)
        )
    return factory


def group_message(text="大家好", message_id=1):
    return InboundMessage(chat_id=GROUP, text=text, user_id="7", user_name="小明",
                          message_id=message_id, is_group=True)


async def settle(coordinator):
    """等待所有后台任务（接话、反击、空闲检查）完成"""
    await asyncio.sleep(0)
    while coordinator._tasks:
        await asyncio.gather(*list(coordinator._tasks), return_exceptions=True)
        await asyncio.sleep(0)


def sent_texts(transport):
    return [c.args[1] for c in transport.send_message.call_args_list]


class TestConfig:
    def test_invalid_idle_window(self):
        with pytest.raises(ValueError):
            CoordinatorConfig(idle_min_minutes=60, idle_max_minutes=30)

    def test_invalid_burst_turns(self):
        with pytest.raises(ValueError):
            CoordinatorConfig(burst_turns=0)


class TestInboundMessage:
    """测试用户消息处理"""

    @pytest.mark.asyncio
    async def test_reply_with_dashboard(self, make_coordinator):
        coordinator = make_coordinator()
        reply = await coordinator.handle_inbound_message(group_message())

        assert reply.text == "我是BongBong"
        transport = coordinator.primary_transport
        transport.send_message.assert_awaited_once()
        args, kwargs = transport.send_message.call_args
        assert args[1].startswith("我是BongBong\n───\n📊 ⚡ Gemini 2.5 Flash | 15t |")
        assert kwargs["reply_to_message_id"] == 1
        assert reply.message_id == 1000

        history = coordinator.sessions.get_history(GROUP)
        assert [(turn.role, turn.speaker) for turn in history] == [("user", "小明"), ("agent", "BongBong")]
        await coordinator.stop()

    @pytest.mark.asyncio
    async def test_long_reply_is_segmented(self, make_coordinator):
        coordinator = make_coordinator(primary_reply=STRUCTURED_TEXT)
        await coordinator.handle_inbound_message(group_message(message_id=55))

        calls = coordinator.primary_transport.send_message.call_args_list
        assert len(calls) == 3
        assert calls[0].kwargs["reply_to_message_id"] == 55
        assert calls[1].kwargs["reply_to_message_id"] is None
        assert all(c.kwargs["reply_markup"] is not None for c in calls)
        assert "📊" in calls[-1].args[1]
        assert "📊" not in calls[0].args[1]
        await coordinator.stop()

    @pytest.mark.asyncio
    async def test_history_passed_to_primary_excludes_current_message(self, make_coordinator):
        coordinator = make_coordinator()
        coordinator.primary.reply = AsyncMock(wraps=coordinator.primary.reply)

        await coordinator.handle_inbound_message(group_message("第一句"))
        await coordinator.handle_inbound_message(group_message("第二句", message_id=2))

        history = coordinator.primary.reply.call_args.args[2]
        assert [turn["content"] for turn in history] == ["第一句", "我是BongBong"]
        await coordinator.stop()

    @pytest.mark.asyncio
    async def test_degraded_reply_sends_apology_once(self, make_coordinator, catalog):
        coordinator = make_coordinator(shadow_rate=1.0, gateway=LLMGateway(catalog))
        reply = await coordinator.handle_inbound_message(group_message())
        await settle(coordinator)

        assert reply.degraded
        assert sent_texts(coordinator.primary_transport) == [FALLBACK_APOLOGY]
        coordinator.shadow_transport.send_message.assert_not_awaited()
        await coordinator.stop()

    @pytest.mark.asyncio
    async def test_unexpected_error_sends_apology(self, make_coordinator):
        coordinator = make_coordinator()
        coordinator.primary.reply = AsyncMock(side_effect=RuntimeError("boom"))

        assert await coordinator.handle_inbound_message(group_message()) is None
        assert sent_texts(coordinator.primary_transport) == [FALLBACK_APOLOGY]
        await coordinator.stop()

    @pytest.mark.asyncio
    async def test_unexpected_error_log_carries_routing(self, make_coordinator):
        coordinator = make_coordinator()
        coordinator.send_reply = AsyncMock(side_effect=RuntimeError("boom"))
        errors = []
        sink_id = logger.add(errors.append, level="ERROR", format="{message}")
        try:
            assert await coordinator.handle_inbound_message(group_message()) is None
        finally:
            logger.remove(sink_id)

        assert any("model=gemini-2.5-flash" in line and "category=casual" in line for line in errors)
        await coordinator.stop()

    @pytest.mark.asyncio
    async def test_history_store_receives_both_sides(self, make_coordinator):
        store = HistoryStore(redis_url=None)
        coordinator = make_coordinator(history_store=store)
        await coordinator.handle_inbound_message(group_message())

        turns = store.query_history(GROUP)
        assert [(turn.role, turn.content) for turn in turns] == [("user", "大家好"), ("agent", "我是BongBong")]
        await coordinator.stop()

    @pytest.mark.asyncio
    async def test_usage_stats(self, make_coordinator):
        coordinator = make_coordinator()
        await coordinator.handle_inbound_message(group_message())

        stats = coordinator.get_usage_stats()
        assert stats["total"] == 1
        assert stats["tokens"]["total_tokens"] == 15
        await coordinator.stop()


class TestCrossAgent:
    """测试影子Agent接话与反击"""

    @pytest.mark.asyncio
    async def test_shadow_interjects_after_group_reply(self, make_coordinator):
        coordinator = make_coordinator(shadow_rate=1.0)
        spoken = []
        coordinator.register_interjection_callback(spoken.append)

        await coordinator.handle_inbound_message(group_message())
        await settle(coordinator)

        shadow = coordinator.shadow_transport
        shadow.send_message.assert_awaited_once()
        args, kwargs = shadow.send_message.call_args
        assert args[1] == "我是Avatar"
        assert kwargs["reply_to_message_id"] == 1000
        assert spoken[0].type == AgentEventType.SHADOW_SPOKE
        assert spoken[0].hop == 1
        assert coordinator.sessions.get_history(GROUP)[-1].speaker == "Avatar"
        await coordinator.stop()

    @pytest.mark.asyncio
    async def test_shadow_stays_silent(self, make_coordinator):
        coordinator = make_coordinator(shadow_rate=0.0)
        await coordinator.handle_inbound_message(group_message())
        await settle(coordinator)
        coordinator.shadow_transport.send_message.assert_not_awaited()
        await coordinator.stop()

    @pytest.mark.asyncio
    async def test_no_interjection_in_private_chat(self, make_coordinator):
        coordinator = make_coordinator(shadow_rate=1.0)
        await coordinator.handle_inbound_message(InboundMessage(chat_id="42", text="你好", is_group=False))
        await settle(coordinator)

        coordinator.shadow_transport.send_message.assert_not_awaited()
        assert coordinator.sessions.get_group("42") is None
        await coordinator.stop()

    @pytest.mark.asyncio
    async def test_counter_reply_ends_the_exchange(self, make_coordinator):
        """影子接话 -> 主Agent反击，之后不再继续往返"""
        coordinator = make_coordinator(shadow_rate=1.0, counter_rate=1.0)
        await coordinator.handle_inbound_message(group_message())
        await settle(coordinator)

        primary_texts = sent_texts(coordinator.primary_transport)
        assert len(primary_texts) == 2
        assert primary_texts[1] == "🎯 我是BongBong"
        assert coordinator.primary_transport.send_message.call_args.kwargs["reply_to_message_id"] == 1000
        assert coordinator.shadow_transport.send_message.await_count == 1
        await coordinator.stop()

    @pytest.mark.asyncio
    async def test_no_counter_reply(self, make_coordinator):
        coordinator = make_coordinator(shadow_rate=1.0, counter_rate=0.0)
        await coordinator.handle_inbound_message(group_message())
        await settle(coordinator)
        assert len(sent_texts(coordinator.primary_transport)) == 1
        await coordinator.stop()


class TestIdleTimer:
    """测试空闲定时器"""

    @pytest.mark.asyncio
    async def test_single_pending_timer_per_group(self, make_coordinator):
        coordinator = make_coordinator()
        handles = []
        for i in range(5):
            await coordinator.handle_inbound_message(group_message(f"消息{i}", message_id=i))
            handles.append(coordinator.sessions.get_group(GROUP).idle_timer_handle)
            assert coordinator.sessions.pending_timer_count(GROUP) == 1

        assert all(handle.cancelled() for handle in handles[:-1])
        assert not handles[-1].cancelled()
        await coordinator.stop()
        assert handles[-1].cancelled()

    @pytest.mark.asyncio
    async def test_delay_within_window(self, make_coordinator):
        coordinator = make_coordinator()
        for _ in range(20):
            delay = coordinator.reset_idle_timer(GROUP)
            assert 30 * 60 <= delay <= 60 * 60
        assert coordinator.sessions.pending_timer_count(GROUP) == 1
        await coordinator.stop()

    @pytest.mark.asyncio
    async def test_check_idle_reschedules_when_active(self, make_coordinator):
        coordinator = make_coordinator(clock=FakeClock())
        coordinator.sessions.record_activity(GROUP)

        assert not await coordinator.check_idle(GROUP)
        assert coordinator.sessions.pending_timer_count(GROUP) == 1
        coordinator.primary_transport.send_message.assert_not_awaited()
        await coordinator.stop()

    @pytest.mark.asyncio
    async def test_check_idle_keeps_existing_timer(self, make_coordinator):
        coordinator = make_coordinator(clock=FakeClock())
        coordinator.sessions.record_activity(GROUP)
        coordinator.reset_idle_timer(GROUP)
        handle = coordinator.sessions.get_group(GROUP).idle_timer_handle

        assert not await coordinator.check_idle(GROUP)
        assert coordinator.sessions.get_group(GROUP).idle_timer_handle is handle
        assert not handle.cancelled()
        await coordinator.stop()

    @pytest.mark.asyncio
    async def test_timer_fires_idle_burst(self, make_coordinator):
        config = fast_config(idle_min_minutes=0.0001, idle_max_minutes=0.0002, burst_turns=2)
        coordinator = make_coordinator(config=config)
        coordinator.sessions.record_activity(GROUP)
        coordinator.reset_idle_timer(GROUP, delay=0.02)

        await asyncio.sleep(0.1)
        await settle(coordinator)

        # 开场白 + 2 句
        assert coordinator.primary_transport.send_message.await_count == 3
        assert coordinator.sessions.get_group(GROUP).last_idle_burst_at is not None
        await coordinator.stop()


class TestIdleBurst:
    """测试空闲闲聊"""

    @pytest.mark.asyncio
    async def test_burst_turns_and_shadow_reactions(self, make_coordinator):
        coordinator = make_coordinator(config=fast_config(burst_turns=4, react_every=3), shadow_rate=1.0)
        turns = []
        coordinator.bus.subscribe(AgentEventType.BURST_TURN, turns.append)

        sent = await coordinator.run_idle_burst(GROUP)

        assert sent == 4
        assert coordinator.primary_transport.send_message.await_count == 5
        assert [event.metadata["turn"] for event in turns] == [0, 1, 2, 3]
        # 第 0 句和第 3 句时影子Agent接话
        assert coordinator.shadow_transport.send_message.await_count == 2

        group = coordinator.sessions.get_group(GROUP)
        assert group.state == GroupState.ACTIVE
        assert group.last_idle_burst_at is not None
        await coordinator.stop()

    @pytest.mark.asyncio
    async def test_real_message_abandons_burst(self, make_coordinator):
        coordinator = make_coordinator(config=fast_config(burst_turns=10))
        original = coordinator.primary.generate_idle_turn
        calls = []

        async def generate_idle_turn(*args, **kwargs):
            calls.append(args)
            if len(calls) == 3:
                await coordinator.handle_inbound_message(group_message("我回来了", message_id=99))
            return await original(*args, **kwargs)

        coordinator.primary.generate_idle_turn = generate_idle_turn
        sent = await coordinator.run_idle_burst(GROUP)

        assert sent == 3
        group = coordinator.sessions.get_group(GROUP)
        assert group.state == GroupState.ACTIVE
        assert coordinator.sessions.pending_timer_count(GROUP) == 1
        await coordinator.stop()

    @pytest.mark.asyncio
    async def test_cooldown(self, make_coordinator):
        clock = FakeClock()
        coordinator = make_coordinator(config=fast_config(burst_turns=1), clock=clock)
        coordinator.sessions.record_activity(GROUP)

        clock.advance(minutes=45)
        assert await coordinator.check_idle(GROUP)

        clock.advance(minutes=45)
        assert not await coordinator.check_idle(GROUP)

        clock.advance(minutes=20)
        assert await coordinator.check_idle(GROUP)
        await coordinator.stop()

    @pytest.mark.asyncio
    async def test_cooldown_skip_rearms_timer(self, make_coordinator):
        clock = FakeClock()
        coordinator = make_coordinator(config=fast_config(burst_turns=1), clock=clock)
        coordinator.sessions.record_activity(GROUP)

        clock.advance(minutes=45)
        assert await coordinator.check_idle(GROUP)
        coordinator.sessions.record_activity(GROUP)
        coordinator.sessions.get_group(GROUP).cancel_timer()

        clock.advance(minutes=40)
        assert not await coordinator.check_idle(GROUP)
        assert coordinator.sessions.pending_timer_count(GROUP) == 1

        handle = coordinator.sessions.get_group(GROUP).idle_timer_handle
        remaining = handle.when() - asyncio.get_running_loop().time()
        assert 19 * 60 < remaining <= 20 * 60
        await coordinator.stop()

    @pytest.mark.asyncio
    async def test_history_store_must_agree(self, make_coordinator):
        clock = FakeClock()
        history_store = MagicMock()
        history_store.is_idle.return_value = False
        coordinator = make_coordinator(clock=clock, history_store=history_store)
        coordinator.sessions.record_activity(GROUP)

        clock.advance(minutes=45)
        assert not await coordinator.check_idle(GROUP)
        history_store.is_idle.assert_called_once_with(GROUP, 30)
        await coordinator.stop()

    @pytest.mark.asyncio
    async def test_no_burst_while_bursting_or_disabled(self, make_coordinator):
        clock = FakeClock()
        coordinator = make_coordinator(clock=clock)
        coordinator.sessions.record_activity(GROUP).state = GroupState.BURSTING
        clock.advance(minutes=45)
        assert not await coordinator.check_idle(GROUP)

        coordinator = make_coordinator(config=fast_config(idle_chat_enabled=False), clock=clock)
        coordinator.sessions.record_activity(GROUP)
        clock.advance(minutes=45)
        assert not await coordinator.check_idle(GROUP)


class TestLifecycle:
    """测试启动、停止与清理"""

    @pytest.mark.asyncio
    async def test_sweep_stale_groups(self, make_coordinator):
        clock = FakeClock()
        coordinator = make_coordinator(clock=clock)
        coordinator.sessions.record_activity(GROUP)
        coordinator.reset_idle_timer(GROUP)
        handle = coordinator.sessions.get_group(GROUP).idle_timer_handle

        clock.advance(days=31)
        assert coordinator.sweep_stale_groups() == [GROUP]
        assert handle.cancelled()
        assert coordinator.sessions.get_group(GROUP) is None

    @pytest.mark.asyncio
    async def test_start_and_stop(self, make_coordinator):
        coordinator = make_coordinator()
        await coordinator.start()
        await coordinator.handle_inbound_message(group_message())
        assert coordinator.sessions.pending_timer_count(GROUP) == 1

        await coordinator.stop()
        assert coordinator.sessions.pending_timer_count(GROUP) == 0
        assert coordinator._sweep_task is None
