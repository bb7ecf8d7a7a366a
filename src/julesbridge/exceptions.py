"""
exceptions.py — JulesBridge Unified Error Hierarchy

All JulesBridge-specific exceptions live here. Every layer of the bridge
raises typed subclasses of JulesBridgeError — never bare Exception.

Import from here, not from individual modules:
    from julesbridge.exceptions import NotFoundError, RemoteServiceError

Hierarchy:
    JulesBridgeError
    ├── RemoteServiceError      (any non-success response from Jules)
    │   └── NotFoundError       (session expired / unknown — recoverable)
    ├── TransformServiceError   (language-model call failed — always recovered)
    ├── PollError               (one activity page could not be fetched)
    ├── ScalingError            (compute scaling control call failed)
    └── LLMError  (re-exported from brain for convenience)
        ├── LLMConnectionError
        ├── LLMRateLimitError
        └── LLMInvalidRequestError
"""

from __future__ import annotations

import json
from typing import Optional


# ─────────────────────────────────────────────────────────────────────────────
# Root
# ─────────────────────────────────────────────────────────────────────────────

class JulesBridgeError(Exception):
    """Base class for all JulesBridge exceptions."""


# ─────────────────────────────────────────────────────────────────────────────
# Remote agent service
# ─────────────────────────────────────────────────────────────────────────────

class RemoteServiceError(JulesBridgeError):
    """The Jules API answered with a non-2xx status (or not at all).

    status is 0 when the request never produced an HTTP response
    (timeout, connection refused, DNS failure).
    """

    def __init__(self, status: int, body: str = "", message: str = "") -> None:
        self.status = status
        self.body = body
        super().__init__(message or f"Jules API error {status}: {body[:300]}")


class NotFoundError(RemoteServiceError):
    """The addressed session no longer exists on the remote side."""


def is_not_found(status: int, body: str) -> bool:
    """True for a 404, or a Google-style error body whose status is NOT_FOUND."""
    if status == 404:
        return True
    try:
        data = json.loads(body)
    except ValueError:
        return False
    if not isinstance(data, dict):
        return False
    error = data.get("error", data)
    return isinstance(error, dict) and error.get("status") == "NOT_FOUND"


# ─────────────────────────────────────────────────────────────────────────────
# Bridge internals
# ─────────────────────────────────────────────────────────────────────────────

class TransformServiceError(JulesBridgeError):
    """Translation or source matching through the language model failed."""


class PollError(JulesBridgeError):
    """A single activity-feed fetch failed; the monitor retries next tick."""

    def __init__(self, session_id: str, cause: Optional[Exception] = None) -> None:
        self.session_id = session_id
        self.cause = cause
        super().__init__(f"Polling session '{session_id}' failed: {cause}")


class ScalingError(JulesBridgeError):
    """The compute scaling control call did not succeed."""


# ─────────────────────────────────────────────────────────────────────────────
# LLM layer  (re-exported; defined in brain/llm_client.py)
# ─────────────────────────────────────────────────────────────────────────────

from julesbridge.brain.llm_client import (  # noqa: E402,F401
    LLMConnectionError,
    LLMError,
    LLMInvalidRequestError,
    LLMRateLimitError,
)


__all__ = [
    "JulesBridgeError",
    # Remote
    "RemoteServiceError",
    "NotFoundError",
    "is_not_found",
    # Bridge
    "TransformServiceError",
    "PollError",
    "ScalingError",
    # LLM (re-exported)
    "LLMError",
    "LLMConnectionError",
    "LLMRateLimitError",
    "LLMInvalidRequestError",
]
