"""
Agent 会话存储测试

测试内容：
- 对话轮次的上限与先进先出淘汰
- 群组活跃状态与定时器替换
- 过期群组清理
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from src.conversation import (
    AgentSessionStore, ConversationTurn, GroupActivityState, GroupState
)


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return AgentSessionStore(max_turns=5, clock=clock)


class TestConversationTurn:
    def test_invalid_role(self):
        with pytest.raises(ValueError):
            ConversationTurn(role="system", content="hi")

    def test_to_dict(self):
        assert ConversationTurn("agent", "嗨", speaker="BongBong").to_dict() == {
            "role": "agent", "content": "嗨", "speaker": "BongBong"
        }
        assert ConversationTurn("user", "你好").to_dict() == {"role": "user", "content": "你好"}


class TestHistory:
    """测试对话历史"""

    def test_append_and_get(self, store):
        store.append("group_1", "user", "大家好", speaker="小明")
        store.append("group_1", "agent", "你好", speaker="BongBong")

        history = store.get_history("group_1")
        assert [turn.content for turn in history] == ["大家好", "你好"]
        assert history[0].speaker == "小明"

    def test_cap_evicts_oldest_first(self, store):
        for i in range(8):
            store.append("group_1", "user", f"消息{i}")

        history = store.get_history("group_1")
        assert len(history) == 5
        assert [turn.content for turn in history] == [f"消息{i}" for i in range(3, 8)]

    def test_keys_are_independent(self, store):
        store.append("a", "user", "1")
        store.append("b", "user", "2")
        assert len(store.get_history("a")) == 1
        assert sorted(store.history_keys()) == ["a", "b"]

    def test_limit(self, store):
        for i in range(4):
            store.append("k", "user", str(i))
        assert [turn.content for turn in store.get_history("k", limit=2)] == ["2", "3"]
        assert store.get_history("k", limit=0) == []

    def test_get_messages(self, store):
        store.append("k", "user", "你好")
        assert store.get_messages("k") == [{"role": "user", "content": "你好"}]

    def test_unknown_key_is_empty(self, store):
        assert store.get_history("missing") == []

    def test_clear_history(self, store):
        store.append("k", "user", "你好")
        store.clear_history("k")
        assert store.get_history("k") == []

    def test_invalid_max_turns(self):
        with pytest.raises(ValueError):
            AgentSessionStore(max_turns=0)


class TestGroupActivity:
    """测试群组活跃状态"""

    def test_record_activity(self, store, clock):
        group = store.record_activity("g")
        assert group.state == GroupState.ACTIVE
        clock.advance(minutes=10)
        assert group.idle_for(clock()) == timedelta(minutes=10)

        store.record_activity("g")
        assert group.idle_for(clock()) == timedelta(0)

    def test_replace_timer_cancels_previous(self):
        group = GroupActivityState(group_id="g")
        first, second = MagicMock(), MagicMock()
        first.cancelled.return_value = False
        second.cancelled.return_value = False

        group.replace_timer(first)
        group.replace_timer(second)

        first.cancel.assert_called_once()
        second.cancel.assert_not_called()
        assert group.has_pending_timer

    def test_cancel_timer(self, store):
        group = store.ensure_group("g")
        handle = MagicMock()
        handle.cancelled.return_value = False
        group.replace_timer(handle)
        assert store.pending_timer_count("g") == 1

        group.cancel_timer()
        handle.cancel.assert_called_once()
        assert store.pending_timer_count("g") == 0


class TestEvictStale:
    """测试过期群组清理"""

    def test_stale_group_is_evicted(self, store, clock):
        store.record_activity("old")
        store.append("old", "user", "很久以前")
        handle = MagicMock()
        store.get_group("old").replace_timer(handle)

        clock.advance(days=31)
        store.record_activity("fresh")

        evicted = store.evict_stale(timedelta(days=30))

        assert evicted == ["old"]
        assert store.get_group("old") is None
        assert store.get_history("old") == []
        assert store.get_group("fresh") is not None
        handle.cancel.assert_called_once()

    def test_bursting_group_is_kept(self, store, clock):
        store.record_activity("g").state = GroupState.BURSTING
        clock.advance(days=31)
        assert store.evict_stale(timedelta(days=30)) == []
        assert store.get_group("g") is not None

    def test_recent_group_is_kept(self, store, clock):
        store.record_activity("g")
        clock.advance(days=29)
        assert store.evict_stale(timedelta(days=30)) == []
