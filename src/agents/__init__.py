"""
Dual-agent companion system.

Two agents share one group context:
- PrimaryAgent answers users through the semantic router and runs idle chat
- ShadowAgent interjects after the primary agent speaks
- DualAgentCoordinator owns idle timers, bursts and the cross-agent bounce
- AgentEventBus carries what each agent said to whoever subscribed

Example usage:
    from src.agents import DualAgentCoordinator, InboundMessage

    coordinator = DualAgentCoordinator(primary, shadow, sessions, segments,
                                       primary_transport, shadow_transport)
    await coordinator.handle_inbound_message(
        InboundMessage(chat_id="-100123", text="大家好", is_group=True)
    )
"""
from .models import InboundMessage, AgentReply
from .events import AgentEvent, AgentEventBus, AgentEventType
from .base_agent import CompanionAgent
from .primary_agent import PrimaryAgent
from .shadow_agent import ShadowAgent
from .coordinator import DualAgentCoordinator, CoordinatorConfig

__all__ = [
    # Data models
    "InboundMessage",
    "AgentReply",

    # Events
    "AgentEvent",
    "AgentEventBus",
    "AgentEventType",

    # Agents
    "CompanionAgent",
    "PrimaryAgent",
    "ShadowAgent",

    # Coordination
    "DualAgentCoordinator",
    "CoordinatorConfig",
]
