"""Channel adapters for the supported messaging platforms."""
from channels.base import (
    ChannelAdapter,
    ChannelRegistry,
    ChannelError,
    CircuitOpenError,
    CircuitBreaker,
    ChannelMetrics,
    DeliveryResult,
    OutboundDeduplicator,
)
from channels.messenger_adapter import MessengerAdapter
from channels.whatsapp_adapter import WhatsAppAdapter

__all__ = [
    "ChannelAdapter", "ChannelRegistry", "ChannelError", "CircuitOpenError",
    "CircuitBreaker", "ChannelMetrics", "DeliveryResult", "OutboundDeduplicator",
    "MessengerAdapter", "WhatsAppAdapter",
]
