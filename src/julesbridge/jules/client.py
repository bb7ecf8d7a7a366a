"""
jules/client.py — Jules REST API Client

Typed async wrapper around the five operations the bridge needs:

    list_sources()                 GET  /sources            (all pages)
    create_session(source, text)   POST /sessions
    send_message(session_id, text) POST /sessions/{id}:sendMessage
    approve_plan(session_id)       POST /sessions/{id}:approvePlan
    list_activities(session_id)    GET  /sessions/{id}/activities  (one page)

Every non-2xx response raises RemoteServiceError(status, body); a 404, or an
error body whose status is NOT_FOUND, raises NotFoundError so callers can
evict expired sessions.
Transport failures (timeouts, refused connections) surface as
RemoteServiceError with status 0. All requests carry a network timeout.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from julesbridge.exceptions import NotFoundError, RemoteServiceError, is_not_found
from julesbridge.jules.types import Activity, ActivityPage, RemoteSession, Source
from julesbridge.observability.logger import get_logger

log = get_logger(__name__)

DEFAULT_BASE_URL = "https://jules.googleapis.com/v1alpha"


class JulesClient:
    """
    Async Jules API client. One instance is shared by the whole process.

    Pass `transport` to swap the network layer (httpx.MockTransport in tests).
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout_seconds: float = 30.0,
        page_size: int = 50,
        automation_mode: str = "AUTO_CREATE_PR",
        require_plan_approval: bool = True,
        starting_branch: str = "main",
        session_title_prefix: str = "Telegram Session",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._page_size = page_size
        self._automation_mode = automation_mode
        self._require_plan_approval = require_plan_approval
        self._starting_branch = starting_branch
        self._title_prefix = session_title_prefix
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={
                "X-Goog-Api-Key": api_key,
                "Content-Type": "application/json",
            },
            timeout=timeout_seconds,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings) -> "JulesClient":
        cfg = settings.jules
        return cls(
            api_key=settings.jules_api_key or "",
            base_url=cfg.base_url,
            timeout_seconds=cfg.request_timeout_seconds,
            page_size=cfg.page_size,
            automation_mode=cfg.automation_mode,
            require_plan_approval=cfg.require_plan_approval,
            starting_branch=cfg.starting_branch,
            session_title_prefix=cfg.session_title_prefix,
        )

    async def close(self) -> None:
        await self._http.aclose()

    # ── Public API ────────────────────────────────────────────────────────────

    async def list_sources(self) -> list[Source]:
        """Enumerate every source the account can use, following pagination."""
        sources: list[Source] = []
        page_token: Optional[str] = None
        while True:
            params: dict[str, Any] = {}
            if page_token:
                params["pageToken"] = page_token
            data = await self._request("GET", "/sources", params=params)
            sources.extend(Source.model_validate(s) for s in data.get("sources") or [])
            page_token = data.get("nextPageToken")
            if not page_token:
                break
        log.debug("jules.sources_listed", count=len(sources))
        return sources

    async def create_session(self, source: Source, instruction: str) -> RemoteSession:
        """
        Start a remote task against `source`.

        Plan approval gating is only requested for version-control-backed
        sources; the automation mode always asks Jules to open a PR itself.
        """
        source_context: dict[str, Any] = {"source": source.name}
        payload: dict[str, Any] = {
            "prompt": instruction,
            "sourceContext": source_context,
            "title": f"{self._title_prefix} - {datetime.now(timezone.utc).isoformat()}",
            "automationMode": self._automation_mode,
        }
        if source.is_github:
            source_context["githubRepoContext"] = {"startingBranch": self._starting_branch}
            payload["requirePlanApproval"] = self._require_plan_approval

        data = await self._request("POST", "/sessions", json=payload)
        session = RemoteSession.model_validate(data)
        log.info("jules.session_created", session_id=session.session_id, source=source.name)
        return session

    async def send_message(self, session_id: str, text: str) -> None:
        await self._request(
            "POST", f"{_session_path(session_id)}:sendMessage", json={"prompt": text}
        )

    async def approve_plan(self, session_id: str) -> None:
        await self._request("POST", f"{_session_path(session_id)}:approvePlan", json={})
        log.info("jules.plan_approved", session_id=session_id)

    async def list_activities(
        self,
        session_id: str,
        page_token: Optional[str] = None,
    ) -> ActivityPage:
        """
        Return one page of the activity feed in creation order.

        A missing next_page_token means "end of what exists right now", not
        end of stream; more activities can appear later. Records that cannot
        be decoded are logged and skipped. A page whose overall shape is wrong
        raises RemoteServiceError like any other failed fetch.
        """
        params: dict[str, Any] = {"pageSize": self._page_size}
        if page_token:
            params["pageToken"] = page_token
        data = await self._request(
            "GET", f"{_session_path(session_id)}/activities", params=params
        )
        records = data.get("activities") or []
        token = data.get("nextPageToken") or None
        if not isinstance(records, list) or not isinstance(token, (str, type(None))):
            raise RemoteServiceError(200, str(data)[:300], message="Malformed activity page")

        activities: list[Activity] = []
        for raw in records:
            try:
                activities.append(Activity.from_api(raw))
            except (ValueError, TypeError, AttributeError) as e:
                log.warning(
                    "jules.activity.undecodable",
                    session_id=session_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
        return ActivityPage(activities=activities, next_page_token=token)

    # ── Private helpers ───────────────────────────────────────────────────────

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict[str, Any]] = None,
        json: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        try:
            response = await self._http.request(method, path, params=params, json=json)
        except httpx.HTTPError as e:
            log.warning("jules.request.transport_error", method=method, path=path, error=str(e))
            raise RemoteServiceError(0, str(e)) from e

        if response.is_success:
            if not response.content:
                return {}
            try:
                data = response.json()
            except ValueError:
                return {}
            return data if isinstance(data, dict) else {}

        body = response.text
        log.warning(
            "jules.request.failed",
            method=method,
            path=path,
            status=response.status_code,
            body=body[:300],
        )
        if is_not_found(response.status_code, body):
            raise NotFoundError(response.status_code, body)
        raise RemoteServiceError(response.status_code, body)


def _session_path(session_id: str) -> str:
    """Accept both "123" and "sessions/123"."""
    if session_id.startswith("sessions/"):
        return f"/{session_id}"
    return f"/sessions/{session_id}"
