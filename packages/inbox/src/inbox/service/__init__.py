"""
Inbox Services

Stream handlers for the worker, plus the services behind the HTTP API.
"""

from inbox.service.automation import AutomationEngine
from inbox.service.inbound_handler import InboundHandler
from inbox.service.outbound_handler import OutboundHandler

__all__ = [
    "AutomationEngine",
    "InboundHandler",
    "OutboundHandler",
]
