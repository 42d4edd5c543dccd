"""
持久化对话记录服务的单元测试

测试内容：
- 内存降级模式下的记录增删查
- 记录数量限制
- 空闲判断
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from src.services.history_store import HistoryStore, notes_key


class TestHistoryStoreFallback:
    """测试对话记录存储（降级到内存模式）"""

    @pytest.fixture
    def store(self):
        return HistoryStore(redis_url=None, max_messages=5)

    def test_fallback_mode(self, store):
        assert store.is_fallback

    def test_append_and_query(self, store):
        store.append_history("-100", "大家好", {"role": "user", "speaker": "小明"})
        store.append_history("-100", "你好", {"role": "agent", "speaker": "BongBong"})

        turns = store.query_history("-100")
        assert [turn.role for turn in turns] == ["user", "agent"]
        assert turns[1].speaker == "BongBong"

    def test_query_empty(self, store):
        assert store.query_history("missing") == []

    def test_query_with_limit(self, store):
        for i in range(4):
            store.append_history("k", f"消息{i}")
        turns = store.query_history("k", limit=2)
        assert [turn.content for turn in turns] == ["消息2", "消息3"]

    def test_max_messages(self, store):
        for i in range(8):
            store.append_history("k", f"消息{i}")
        turns = store.query_history("k")
        assert len(turns) == 5
        assert turns[0].content == "消息3"

    def test_assistant_role_maps_to_agent(self, store):
        store.append_history("k", "嗨", {"role": "assistant"})
        assert store.query_history("k")[0].role == "agent"

    def test_clear_history(self, store):
        store.append_history("k", "你好")
        store.clear_history("k")
        assert store.query_history("k") == []

    def test_notes_key(self):
        assert notes_key(123) == "notes:123"


class TestIsIdle:
    """测试空闲判断"""

    def test_no_entries_is_idle(self):
        store = HistoryStore(redis_url=None)
        assert store.is_idle("-100", 30)

    def test_recent_entry_is_not_idle(self):
        store = HistoryStore(redis_url=None)
        store.append_history("-100", "刚说的话")
        assert not store.is_idle("-100", 30)

    def test_old_entry_is_idle(self):
        store = HistoryStore(redis_url=None)
        store.append_history("-100", "很久以前")
        old = datetime.now(timezone.utc) - timedelta(minutes=45)
        store._fallback["-100"][-1]["timestamp"] = old.isoformat()

        assert store.is_idle("-100", 30)
        assert not store.is_idle("-100", 60)


class TestRedisBackend:
    """测试 Redis 模式（使用 mock 客户端）"""

    def test_append_uses_list_commands(self):
        client = MagicMock()
        with patch("src.services.history_store.redis.from_url", return_value=client):
            store = HistoryStore(redis_url="redis://localhost:6379/0", ttl=60, max_messages=10)

        assert not store.is_fallback
        store.append_history("-100", "你好", {"role": "user"})

        client.rpush.assert_called_once()
        assert client.rpush.call_args[0][0] == "companion_history:-100"
        client.ltrim.assert_called_once_with("companion_history:-100", -10, -1)
        client.expire.assert_called_once_with("companion_history:-100", 60)

    def test_connection_failure_falls_back(self):
        client = MagicMock()
        client.ping.side_effect = ConnectionError("refused")
        with patch("src.services.history_store.redis.from_url", return_value=client):
            store = HistoryStore(redis_url="redis://localhost:6379/0")
        assert store.is_fallback
