"""
jules/types.py — Jules API Data Models

Wire shapes of the Jules REST API (sources, sessions, activities) mapped
into typed Pydantic models. Activity payloads are decoded once, here, into
a tagged union so nothing downstream has to branch on which optional JSON
field happens to be populated.

Payload precedence when the wire record carries more than one shape
(first match wins):
    planGenerated > progressUpdated > outputs > sessionCompleted
    > sessionFailed > agentMessaged
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


class _WireModel(BaseModel):
    """Accepts camelCase from the API, snake_case from our own code."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        # explicit JSON nulls fall back to the field default
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data


# ─────────────────────────────────────────────────────────────────────────────
# Sources & sessions
# ─────────────────────────────────────────────────────────────────────────────


class GitHubRepo(_WireModel):
    owner: str = ""
    repo: str = ""


class Source(_WireModel):
    """A repository the Jules account can operate on."""
    name: str                                   # "sources/github/owner/repo"
    id: str = ""
    github_repo: Optional[GitHubRepo] = Field(default=None, alias="githubRepo")

    @property
    def is_github(self) -> bool:
        return self.github_repo is not None

    @property
    def display_name(self) -> str:
        if self.github_repo and self.github_repo.owner:
            return f"{self.github_repo.owner}/{self.github_repo.repo}"
        return self.id or self.name.rsplit("/", 1)[-1]


class RemoteSession(_WireModel):
    """Session resource as returned by POST /sessions."""
    name: str = ""                              # "sessions/<id>"
    id: str = ""
    title: str = ""
    prompt: str = ""
    create_time: Optional[str] = Field(default=None, alias="createTime")

    @property
    def session_id(self) -> str:
        return self.id or self.name.rsplit("/", 1)[-1]


# ─────────────────────────────────────────────────────────────────────────────
# Activity payloads (tagged union)
# ─────────────────────────────────────────────────────────────────────────────


class PayloadKind(str, Enum):
    PLAN = "plan"
    PROGRESS = "progress"
    OUTPUTS = "outputs"
    COMPLETED = "completed"
    FAILED = "failed"
    MESSAGE = "message"


class PlanStep(_WireModel):
    id: str = ""
    title: str = ""
    index: int = 0


class PlanGenerated(_WireModel):
    kind: Literal[PayloadKind.PLAN] = PayloadKind.PLAN
    steps: list[PlanStep] = Field(default_factory=list)


class ProgressUpdated(_WireModel):
    kind: Literal[PayloadKind.PROGRESS] = PayloadKind.PROGRESS
    title: str = ""
    description: str = ""


class PullRequest(_WireModel):
    url: str = ""
    title: str = ""
    description: str = ""


class Output(_WireModel):
    pull_request: Optional[PullRequest] = Field(default=None, alias="pullRequest")


class OutputsProduced(_WireModel):
    kind: Literal[PayloadKind.OUTPUTS] = PayloadKind.OUTPUTS
    outputs: list[Output] = Field(default_factory=list)


class SessionCompleted(_WireModel):
    kind: Literal[PayloadKind.COMPLETED] = PayloadKind.COMPLETED


class SessionFailed(_WireModel):
    kind: Literal[PayloadKind.FAILED] = PayloadKind.FAILED
    reason: str = ""


class AgentMessaged(_WireModel):
    kind: Literal[PayloadKind.MESSAGE] = PayloadKind.MESSAGE
    text: str = ""


ActivityPayload = Annotated[
    Union[
        PlanGenerated,
        ProgressUpdated,
        OutputsProduced,
        SessionCompleted,
        SessionFailed,
        AgentMessaged,
    ],
    Field(discriminator="kind"),
]


# ─────────────────────────────────────────────────────────────────────────────
# Artifacts
# ─────────────────────────────────────────────────────────────────────────────


class BashOutput(_WireModel):
    command: str = ""
    output: str = ""
    exit_code: Optional[int] = Field(default=None, alias="exitCode")


class Media(_WireModel):
    data: str = ""                              # base64
    mime_type: str = Field(default="image/png", alias="mimeType")


class Artifact(_WireModel):
    bash_output: Optional[BashOutput] = Field(default=None, alias="bashOutput")
    media: Optional[Media] = None


# ─────────────────────────────────────────────────────────────────────────────
# Activity
# ─────────────────────────────────────────────────────────────────────────────


class Originator(str, Enum):
    USER = "user"
    AGENT = "agent"
    SYSTEM = "system"


class Activity(_WireModel):
    """One immutable entry in a session's append-only activity log."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    id: str
    name: str = ""
    originator: Originator = Originator.AGENT
    create_time: Optional[str] = Field(default=None, alias="createTime")
    payload: Optional[ActivityPayload] = None
    artifacts: list[Artifact] = Field(default_factory=list)

    @property
    def kind(self) -> Optional[PayloadKind]:
        return self.payload.kind if self.payload is not None else None

    @classmethod
    def from_api(cls, raw: dict[str, Any]) -> "Activity":
        """Decode one wire record, resolving the payload by precedence."""
        name = raw.get("name") or ""
        activity_id = raw.get("id") or name.rsplit("/", 1)[-1]
        originator = str(raw.get("originator") or "agent").lower()
        if originator not in {o.value for o in Originator}:
            originator = Originator.SYSTEM.value

        return cls(
            id=activity_id,
            name=name,
            originator=Originator(originator),
            create_time=raw.get("createTime"),
            payload=_decode_payload(raw),
            artifacts=[Artifact.model_validate(a) for a in raw.get("artifacts") or []],
        )


def _body(raw: dict[str, Any], key: str) -> dict[str, Any]:
    value = raw.get(key)
    return value if isinstance(value, dict) else {}


def _decode_payload(raw: dict[str, Any]) -> Optional[Any]:
    if "planGenerated" in raw:
        plan = _body(_body(raw, "planGenerated"), "plan")
        steps = [PlanStep.model_validate(s) for s in plan.get("steps") or []]
        steps.sort(key=lambda s: s.index)
        return PlanGenerated(steps=steps)

    if "progressUpdated" in raw:
        body = _body(raw, "progressUpdated")
        return ProgressUpdated(
            title=body.get("title") or "",
            description=body.get("description") or "",
        )

    if "outputs" in raw:
        return OutputsProduced(
            outputs=[Output.model_validate(o) for o in raw["outputs"] or []]
        )

    if "sessionCompleted" in raw:
        return SessionCompleted()

    if "sessionFailed" in raw:
        return SessionFailed(reason=_body(raw, "sessionFailed").get("reason") or "")

    if "agentMessaged" in raw:
        return AgentMessaged(text=_body(raw, "agentMessaged").get("agentMessage") or "")

    return None


class ActivityPage(BaseModel):
    activities: list[Activity] = Field(default_factory=list)
    next_page_token: Optional[str] = None
