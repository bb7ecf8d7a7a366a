"""
agent/__init__.py — Session reconciliation engine
"""

from __future__ import annotations

from julesbridge.agent.formatter import Notification, NotificationKind, format_activity
from julesbridge.agent.monitor import MonitorRegistry, SessionMonitor
from julesbridge.agent.resolver import SourceResolver
from julesbridge.agent.router import ConversationPhase, SessionRouter

__all__ = [
    "Notification",
    "NotificationKind",
    "format_activity",
    "MonitorRegistry",
    "SessionMonitor",
    "SourceResolver",
    "ConversationPhase",
    "SessionRouter",
]
