"""
Agent event bus.

Agents and the coordinator publish typed events here instead of calling
each other through late-bound callbacks. Handlers may be plain functions
or coroutine functions and run in subscription order.
"""
import inspect
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from loguru import logger


class AgentEventType(str, Enum):
    PRIMARY_REPLIED = "primary_replied"
    SHADOW_SPOKE = "shadow_spoke"
    BURST_TURN = "burst_turn"


@dataclass(frozen=True)
class AgentEvent:
    """
    Something an agent said in a chat.

    Attributes:
        type: Event type
        chat_id: Chat the text was sent to
        agent: Name of the agent that spoke
        text: What was said
        message_id: Transport id of the sent message (None if unknown)
        hop: Position in the cross-agent bounce; 0 answers a user or opens
            a burst turn, 1 is the shadow's interjection, 2 the counter-reply
        is_group: Whether the chat is a group
        metadata: Extra fields, e.g. burst turn index
    """
    type: AgentEventType
    chat_id: str
    agent: str
    text: str
    message_id: Optional[int] = None
    hop: int = 0
    is_group: bool = True
    metadata: Dict[str, Any] = field(default_factory=dict)


EventHandler = Callable[[AgentEvent], Any]


class AgentEventBus:
    """In-process publish/subscribe channel between agents."""

    def __init__(self):
        self._handlers: Dict[AgentEventType, List[EventHandler]] = {}

    def subscribe(self, event_type: AgentEventType, handler: EventHandler) -> EventHandler:
        self._handlers.setdefault(event_type, []).append(handler)
        return handler

    def unsubscribe(self, event_type: AgentEventType, handler: EventHandler) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def handler_count(self, event_type: AgentEventType) -> int:
        return len(self._handlers.get(event_type, []))

    async def publish(self, event: AgentEvent) -> None:
        """
        Deliver an event to every subscriber.

        A failing handler is logged and does not stop delivery to the others.
        """
        for handler in list(self._handlers.get(event.type, [])):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    f"📣 [EVENT] handler {getattr(handler, '__name__', handler)} failed "
                    f"for {event.type.value} in chat {event.chat_id}: {e}",
                    exc_info=True
                )
