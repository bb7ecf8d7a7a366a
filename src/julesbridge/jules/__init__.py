"""
jules/__init__.py — Jules remote agent service
"""

from __future__ import annotations

from julesbridge.jules.client import JulesClient
from julesbridge.jules.types import (
    Activity,
    ActivityPage,
    Artifact,
    Originator,
    PayloadKind,
    RemoteSession,
    Source,
)

__all__ = [
    "JulesClient",
    "Activity",
    "ActivityPage",
    "Artifact",
    "Originator",
    "PayloadKind",
    "RemoteSession",
    "Source",
]
