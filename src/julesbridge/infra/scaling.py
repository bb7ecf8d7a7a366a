"""
infra/scaling.py — Compute Scaling Control

Sets the minimum warm instance count of the Cloud Run service the bot runs
on, so /wake keeps one instance hot and /sleep lets it scale to zero.

    PATCH https://run.googleapis.com/v2/projects/{p}/locations/{r}/services/{s}
          ?updateMask=scaling.minInstanceCount
    {"scaling": {"minInstanceCount": N}}

Credentials come from google-auth application-default credentials. The
request is fire-and-forget: request_min_instances() schedules it and
returns immediately; failures are logged, never raised, never retried.
"""

from __future__ import annotations

import asyncio
from typing import Callable, Optional

import google.auth
import httpx
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request

from julesbridge.exceptions import ScalingError
from julesbridge.observability.logger import get_logger

log = get_logger(__name__)

_RUN_API = "https://run.googleapis.com/v2"
_SCOPES = ["https://www.googleapis.com/auth/cloud-platform"]

TokenProvider = Callable[[], str]


def _default_token() -> str:
    """Blocking: fetch an OAuth access token via application-default credentials."""
    credentials, _ = google.auth.default(scopes=_SCOPES)
    credentials.refresh(Request())
    return credentials.token


class CloudRunScaler:

    def __init__(
        self,
        project_id: str,
        region: str,
        service_name: str,
        enabled: bool = True,
        timeout_seconds: float = 20.0,
        token_provider: Optional[TokenProvider] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._service_path = (
            f"projects/{project_id}/locations/{region}/services/{service_name}"
        )
        self._enabled = enabled
        self._timeout = timeout_seconds
        self._token_provider = token_provider or _default_token
        self._transport = transport
        self._tasks: set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings) -> "CloudRunScaler":
        cfg = settings.scaling
        return cls(
            project_id=cfg.project_id,
            region=cfg.region,
            service_name=cfg.service_name,
            enabled=cfg.enabled,
            timeout_seconds=cfg.request_timeout_seconds,
        )

    @property
    def enabled(self) -> bool:
        return self._enabled

    def request_min_instances(self, count: int) -> Optional[asyncio.Task]:
        """Schedule set_min_instances(count) in the background."""
        if not self._enabled:
            log.info("scaling.disabled", requested=count)
            return None
        task = asyncio.create_task(self._run_quietly(count), name=f"scaling:{count}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def set_min_instances(self, count: int) -> None:
        """Raises ScalingError when the control call fails."""
        try:
            token = await asyncio.to_thread(self._token_provider)
        except GoogleAuthError as e:
            raise ScalingError(f"Could not obtain credentials: {e}") from e

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.patch(
                    f"{_RUN_API}/{self._service_path}",
                    params={"updateMask": "scaling.minInstanceCount"},
                    headers={"Authorization": f"Bearer {token}"},
                    json={"scaling": {"minInstanceCount": count}},
                )
        except httpx.HTTPError as e:
            raise ScalingError(f"Cloud Run request failed: {e}") from e

        if not response.is_success:
            raise ScalingError(
                f"Cloud Run answered {response.status_code}: {response.text[:300]}"
            )
        log.info("scaling.updated", service=self._service_path, min_instances=count)

    async def _run_quietly(self, count: int) -> None:
        try:
            await self.set_min_instances(count)
        except ScalingError as e:
            log.warning("scaling.failed", requested=count, error=str(e))
