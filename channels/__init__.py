from channels.base import (
    ChannelError, SessionBusyError, SessionAcquireError, SessionUnavailableError,
    SendError, SessionResource, SessionDriver, SendMetrics, is_busy_error,
)
from channels.whatsapp_adapter import WppConnectDriver, WppConnectSession, parse_wppconnect_event
from channels.mock_session import MockSession, MockSessionDriver
from channels.inbound_relay import InboundRelay, WebhookDeliveryError

__all__ = [
    "ChannelError", "SessionBusyError", "SessionAcquireError", "SessionUnavailableError",
    "SendError", "SessionResource", "SessionDriver", "SendMetrics", "is_busy_error",
    "WppConnectDriver", "WppConnectSession", "parse_wppconnect_event",
    "MockSession", "MockSessionDriver",
    "InboundRelay", "WebhookDeliveryError",
]
