"""
Conversation Module - 会话状态管理

提供：
- 有界的对话历史（按用户/群组）
- 群组活跃状态与空闲定时器句柄
"""

from .session_store import (
    AgentSessionStore,
    ConversationTurn,
    GroupActivityState,
    GroupState,
    ROLE_USER,
    ROLE_AGENT,
)

__all__ = [
    'AgentSessionStore',
    'ConversationTurn',
    'GroupActivityState',
    'GroupState',
    'ROLE_USER',
    'ROLE_AGENT',
]
