"""
agent/formatter.py — Activity → Notification

format_activity() is a pure, total function: it never raises, performs no
I/O, and returns None when an activity has nothing worth showing.

Rendering by payload kind (payload is already resolved by precedence at
decode time, see jules/types.py):
  plan       numbered step list under an announcement line
  progress   title, plus description when it says something different
  outputs    first pull request's URL and title (no text if none)
  completed  fixed terminal line
  failed     failure line with the reason
  message    the agent's message verbatim

Artifacts are appended whatever the kind: bash transcripts as fenced code
blocks, base64 media as binary attachments with a short caption.
"""

from __future__ import annotations

import base64
import binascii
import mimetypes
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from julesbridge.jules.types import (
    Activity,
    AgentMessaged,
    Artifact,
    OutputsProduced,
    PlanGenerated,
    ProgressUpdated,
    SessionCompleted,
    SessionFailed,
)

COMPLETED_TEXT = "✅ Session completed."
_MAX_TRANSCRIPT_CHARS = 1500


class NotificationKind(str, Enum):
    PLAN = "plan"
    PROGRESS = "progress"
    OUTPUTS = "outputs"
    COMPLETED = "completed"
    FAILED = "failed"
    MESSAGE = "message"
    FILLER = "filler"           # idle "still working" line from the monitor
    NOTICE = "notice"           # monitor lifecycle notices (e.g. timeout)


@dataclass(frozen=True)
class Attachment:
    filename: str
    data: bytes
    mime_type: str

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")


@dataclass
class Notification:
    """Something the bridge wants to show the user."""
    kind: NotificationKind
    text: str = ""
    attachments: list[Attachment] = field(default_factory=list)
    activity_id: Optional[str] = None
    # Set on PLAN notifications so the transport can render an approve control
    approval_session_id: Optional[str] = None

    @property
    def needs_approval_control(self) -> bool:
        return self.kind == NotificationKind.PLAN and self.approval_session_id is not None


def format_activity(activity: Activity) -> Optional[Notification]:
    """Map one activity to a displayable notification, or None."""
    payload = activity.payload
    if payload is None:
        return None

    kind = NotificationKind(payload.kind.value)
    text = _primary_text(payload)

    artifact_blocks: list[str] = []
    attachments: list[Attachment] = []
    for n, artifact in enumerate(activity.artifacts):
        block, attachment = _render_artifact(artifact, activity.id, n)
        if block:
            artifact_blocks.append(block)
        if attachment is not None:
            attachments.append(attachment)

    if not text and not artifact_blocks and not attachments:
        return None

    body = "\n\n".join(part for part in [text, *artifact_blocks] if part)
    return Notification(kind=kind, text=body, attachments=attachments, activity_id=activity.id)


# ─────────────────────────────────────────────────────────────────────────────
# Primary text
# ─────────────────────────────────────────────────────────────────────────────


def _primary_text(payload) -> str:
    if isinstance(payload, PlanGenerated):
        lines = ["📋 Jules has proposed a plan:"]
        lines += [f"{i}. {step.title}" for i, step in enumerate(payload.steps, start=1)]
        return "\n".join(lines)

    if isinstance(payload, ProgressUpdated):
        title = payload.title.strip()
        description = payload.description.strip()
        if description and description != title:
            return f"⏳ {title}\n{description}" if title else f"⏳ {description}"
        return f"⏳ {title}" if title else ""

    if isinstance(payload, OutputsProduced):
        pr = next((o.pull_request for o in payload.outputs if o.pull_request), None)
        if pr is None:
            return ""
        return f"🚀 Pull request ready: {pr.title}\n{pr.url}" if pr.title else f"🚀 Pull request ready: {pr.url}"

    if isinstance(payload, SessionCompleted):
        return COMPLETED_TEXT

    if isinstance(payload, SessionFailed):
        reason = payload.reason.strip() or "no reason given"
        return f"❌ Session failed: {reason}"

    if isinstance(payload, AgentMessaged):
        return f"💬 {payload.text.strip()}" if payload.text.strip() else ""

    return ""


# ─────────────────────────────────────────────────────────────────────────────
# Artifacts
# ─────────────────────────────────────────────────────────────────────────────


def _render_artifact(
    artifact: Artifact, activity_id: str, n: int
) -> tuple[str, Optional[Attachment]]:
    if artifact.bash_output is not None:
        bash = artifact.bash_output
        output = bash.output.rstrip()
        if len(output) > _MAX_TRANSCRIPT_CHARS:
            output = output[:_MAX_TRANSCRIPT_CHARS] + "\n… (truncated)"
        lines = [f"$ {bash.command}"]
        if output:
            lines.append(output)
        if bash.exit_code not in (None, 0):
            lines.append(f"[exit code {bash.exit_code}]")
        return "```\n" + "\n".join(lines) + "\n```", None

    if artifact.media is not None and artifact.media.data:
        try:
            data = base64.b64decode(artifact.media.data, validate=True)
        except (binascii.Error, ValueError):
            return "🖼️ (an attachment could not be decoded)", None
        mime_type = artifact.media.mime_type or "application/octet-stream"
        ext = mimetypes.guess_extension(mime_type) or ".bin"
        attachment = Attachment(
            filename=f"{activity_id}-{n}{ext}",
            data=data,
            mime_type=mime_type,
        )
        caption = "🖼️ Screenshot attached." if attachment.is_image else "📎 File attached."
        return caption, attachment

    return "", None


__all__ = [
    "Attachment",
    "Notification",
    "NotificationKind",
    "format_activity",
    "COMPLETED_TEXT",
]
