"""
Agent Session Store - 进程内的有界对话历史与群组活跃状态

管理：
- 按 key（用户ID或群组ID）存储的对话轮次，超过上限时先进先出淘汰
- 每个群组的活跃状态（最后活跃时间、空闲定时器、上次空闲闲聊时间）
- 长期不活跃群组的清理

数据只保存在内存中，进程重启即丢失；持久化历史见 src.services.history_store。
"""
import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional

from loguru import logger


ROLE_USER = "user"
ROLE_AGENT = "agent"
DEFAULT_MAX_TURNS = 20


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class GroupState(str, Enum):
    """群组状态"""
    ACTIVE = "active"
    IDLE = "idle"
    BURSTING = "bursting"


@dataclass(frozen=True)
class ConversationTurn:
    """
    一轮对话

    Attributes:
        role: "user" 或 "agent"
        content: 消息内容
        speaker: 发言者名称（用户名或Agent名，可选）
    """
    role: str
    content: str
    speaker: Optional[str] = None

    def __post_init__(self):
        if self.role not in (ROLE_USER, ROLE_AGENT):
            raise ValueError(f"Invalid role: {self.role}")

    def to_dict(self) -> Dict[str, str]:
        data = {"role": self.role, "content": self.content}
        if self.speaker:
            data["speaker"] = self.speaker
        return data


@dataclass
class GroupActivityState:
    """
    群组活跃状态

    Attributes:
        group_id: 群组ID
        last_activity_at: 最后一条消息（用户或Agent）的时间
        idle_timer_handle: 当前待触发的空闲定时器
        last_idle_burst_at: 上一次空闲闲聊开始的时间
        state: 当前状态
    """
    group_id: str
    last_activity_at: datetime = field(default_factory=utc_now)
    idle_timer_handle: Optional[asyncio.TimerHandle] = None
    last_idle_burst_at: Optional[datetime] = None
    state: GroupState = GroupState.ACTIVE

    @property
    def has_pending_timer(self) -> bool:
        handle = self.idle_timer_handle
        return handle is not None and not handle.cancelled()

    def replace_timer(self, handle: Optional[asyncio.TimerHandle]) -> None:
        """取消旧定时器并安装新定时器"""
        if self.idle_timer_handle is not None:
            self.idle_timer_handle.cancel()
        self.idle_timer_handle = handle

    def cancel_timer(self) -> None:
        self.replace_timer(None)

    def idle_for(self, now: Optional[datetime] = None) -> timedelta:
        return (now or utc_now()) - self.last_activity_at


class AgentSessionStore:
    """
    Agent 会话存储

    Usage:
        store = AgentSessionStore(max_turns=20)
        store.append("group_1", "user", "大家好")
        history = store.get_history("group_1")
    """

    def __init__(
        self,
        max_turns: int = DEFAULT_MAX_TURNS,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Args:
            max_turns: 每个 key 保留的最大轮次数
            clock: 当前时间来源（测试时可注入）
        """
        if max_turns < 1:
            raise ValueError(f"max_turns must be positive, got {max_turns}")
        self.max_turns = max_turns
        self._clock = clock or utc_now
        self._histories: Dict[str, Deque[ConversationTurn]] = {}
        self._groups: Dict[str, GroupActivityState] = {}

    def now(self) -> datetime:
        return self._clock()

    # ---------- 对话历史 ----------

    def append(
        self,
        key: str,
        role: str,
        content: str,
        speaker: Optional[str] = None
    ) -> ConversationTurn:
        """追加一轮对话，超过上限时淘汰最早的轮次"""
        turn = ConversationTurn(role=role, content=content, speaker=speaker)
        history = self._histories.get(key)
        if history is None:
            history = deque(maxlen=self.max_turns)
            self._histories[key] = history
        history.append(turn)
        return turn

    def get_history(self, key: str, limit: Optional[int] = None) -> List[ConversationTurn]:
        """获取对话历史（按时间顺序），limit 表示只取最近的若干轮"""
        turns = list(self._histories.get(key, ()))
        if limit is not None:
            return turns[-limit:] if limit > 0 else []
        return turns

    def get_messages(self, key: str, limit: Optional[int] = None) -> List[Dict[str, str]]:
        """以 {role, content} 字典列表返回历史，供 LLM 调用"""
        return [turn.to_dict() for turn in self.get_history(key, limit)]

    def clear_history(self, key: str) -> None:
        self._histories.pop(key, None)

    def history_keys(self) -> List[str]:
        return list(self._histories.keys())

    # ---------- 群组活跃状态 ----------

    def get_group(self, group_id: str) -> Optional[GroupActivityState]:
        return self._groups.get(group_id)

    def ensure_group(self, group_id: str) -> GroupActivityState:
        group = self._groups.get(group_id)
        if group is None:
            group = GroupActivityState(group_id=group_id, last_activity_at=self.now())
            self._groups[group_id] = group
        return group

    def record_activity(self, group_id: str) -> GroupActivityState:
        """记录一次群组活动（用户或Agent的消息）"""
        group = self.ensure_group(group_id)
        group.last_activity_at = self.now()
        return group

    def group_ids(self) -> List[str]:
        return list(self._groups.keys())

    def pending_timer_count(self, group_id: str) -> int:
        group = self._groups.get(group_id)
        return 1 if group is not None and group.has_pending_timer else 0

    def evict_stale(self, horizon: timedelta) -> List[str]:
        """
        清理超过 horizon 未活跃的群组，取消其定时器并删除历史

        Returns:
            被清理的群组ID列表
        """
        now = self.now()
        stale = [
            group_id for group_id, group in self._groups.items()
            if group.state != GroupState.BURSTING and group.idle_for(now) > horizon
        ]
        for group_id in stale:
            group = self._groups.pop(group_id)
            group.cancel_timer()
            self._histories.pop(group_id, None)

        if stale:
            logger.info(f"🧹 [SESSION] Evicted {len(stale)} stale groups: {stale}")
        return stale
