"""
持久化对话记录服务

对外提供：
- append_history(key, content, metadata)
- query_history(key, limit) -> List[ConversationTurn]
- is_idle(group_key, threshold_minutes) -> bool

使用 Redis List 存储，Redis 不可用时降级到内存存储。
"""
import json
from datetime import datetime, timezone, timedelta
from typing import Any, Dict, List, Optional

import redis
from loguru import logger
from redis import Redis

from src.conversation.session_store import ConversationTurn, ROLE_AGENT, ROLE_USER


NOTES_PREFIX = "notes"


def notes_key(user_id) -> str:
    """用户收藏（笔记）的 key"""
    return f"{NOTES_PREFIX}:{user_id}"


class HistoryStore:
    """
    基于 Redis 的对话记录存储

    特点：
    - 每个 key 一个 Redis List，按时间顺序排列
    - 每条记录带时间戳，用于 is_idle 判断
    - Redis 不可用时降级到内存字典存储
    """

    KEY_PREFIX = "companion_history"
    DEFAULT_TTL = 7 * 24 * 3600  # 默认 7 天过期
    MAX_MESSAGES = 200  # 每个 key 最大存储条数

    def __init__(
        self,
        redis_url: Optional[str] = None,
        ttl: int = DEFAULT_TTL,
        max_messages: int = MAX_MESSAGES
    ):
        self._redis: Optional[Redis] = None
        self._fallback: Dict[str, List[Dict[str, Any]]] = {}
        self._ttl = ttl
        self._max_messages = max_messages
        self._init_redis(redis_url)

    def _init_redis(self, redis_url: Optional[str]):
        """初始化 Redis 连接"""
        if redis_url:
            try:
                self._redis = redis.from_url(
                    redis_url,
                    decode_responses=True,
                    socket_connect_timeout=5,
                    socket_timeout=5,
                )
                self._redis.ping()
                logger.info("HistoryStore: Redis connected successfully")
            except Exception as e:
                logger.warning(f"HistoryStore: Redis connection failed: {e}, using fallback mode")
                self._redis = None
        else:
            logger.warning("HistoryStore: redis_url not configured, using fallback mode")

    @property
    def is_fallback(self) -> bool:
        return self._redis is None

    def _get_key(self, key: str) -> str:
        return f"{self.KEY_PREFIX}:{key}"

    def append_history(
        self,
        key: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        追加一条记录

        Args:
            key: 用户ID、群组ID或笔记 key
            content: 消息内容
            metadata: 附加信息（role、agent、model 等）
        """
        metadata = dict(metadata or {})
        entry = {
            "role": metadata.pop("role", ROLE_USER),
            "content": content,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "metadata": metadata,
        }

        if self._redis:
            try:
                redis_key = self._get_key(key)
                self._redis.rpush(redis_key, json.dumps(entry, ensure_ascii=False))
                self._redis.ltrim(redis_key, -self._max_messages, -1)
                self._redis.expire(redis_key, self._ttl)
                return
            except Exception as e:
                logger.warning(f"HistoryStore: Redis write failed: {e}, falling back to memory")

        entries = self._fallback.setdefault(key, [])
        entries.append(entry)
        if len(entries) > self._max_messages:
            self._fallback[key] = entries[-self._max_messages:]

    def _load_entries(self, key: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        if self._redis:
            try:
                redis_key = self._get_key(key)
                if limit:
                    raw_entries = self._redis.lrange(redis_key, -limit, -1)
                else:
                    raw_entries = self._redis.lrange(redis_key, 0, -1)
                return [json.loads(raw) for raw in raw_entries]
            except Exception as e:
                logger.warning(f"HistoryStore: Redis read failed: {e}, falling back to memory")

        entries = self._fallback.get(key, [])
        if limit:
            return entries[-limit:]
        return list(entries)

    def query_history(self, key: str, limit: Optional[int] = None) -> List[ConversationTurn]:
        """
        查询最近的记录

        Args:
            key: 记录 key
            limit: 最大返回条数（None 表示全部）

        Returns:
            按时间顺序排列的对话轮次
        """
        turns = []
        for entry in self._load_entries(key, limit):
            role = ROLE_AGENT if entry.get("role") in (ROLE_AGENT, "assistant") else ROLE_USER
            speaker = (entry.get("metadata") or {}).get("speaker")
            turns.append(ConversationTurn(role=role, content=entry.get("content", ""), speaker=speaker))
        return turns

    def last_activity_at(self, key: str) -> Optional[datetime]:
        entries = self._load_entries(key, limit=1)
        if not entries:
            return None
        return datetime.fromisoformat(entries[-1]["timestamp"])

    def is_idle(self, group_key: str, threshold_minutes: float) -> bool:
        """群组最后一条记录距今是否已超过 threshold_minutes（无记录视为空闲）"""
        last = self.last_activity_at(group_key)
        if last is None:
            return True
        return datetime.now(timezone.utc) - last >= timedelta(minutes=threshold_minutes)

    def clear_history(self, key: str) -> None:
        if self._redis:
            try:
                self._redis.delete(self._get_key(key))
                return
            except Exception as e:
                logger.warning(f"HistoryStore: Redis delete failed: {e}")

        self._fallback.pop(key, None)
