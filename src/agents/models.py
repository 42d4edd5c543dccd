"""
Data models for the dual-agent companion system.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from src.routing.models import RoutingDecision


@dataclass
class InboundMessage:
    """
    A user message delivered by the transport layer.

    Attributes:
        chat_id: Chat (group or private) the message was sent in
        text: Message text
        user_id: Sender id
        user_name: Sender display name
        message_id: Transport message id, used as the reply target
        is_group: Whether the chat is a group or supergroup
        override_model: Model id or catalog key the user asked for explicitly
        timestamp: When the message was received
    """
    chat_id: str
    text: str
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    message_id: Optional[int] = None
    is_group: bool = False
    override_model: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class AgentReply:
    """
    Text produced by an agent, with the model that produced it.

    Attributes:
        text: Reply text (the canned apology when degraded)
        model_id: Model actually used
        model_name: Display name of the model
        icon: Display icon of the model
        tokens: Total tokens consumed
        degraded: Whether every model in the fallback chain failed
        decision: Routing decision, when the reply went through the router
        message_id: Transport id of the first sent message, set after sending
    """
    text: str
    model_id: str = ""
    model_name: str = ""
    icon: str = ""
    tokens: int = 0
    degraded: bool = False
    decision: Optional[RoutingDecision] = None
    message_id: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
