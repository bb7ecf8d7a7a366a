"""
tests/unit/test_infra.py — Scaling control and liveness endpoint

Run with:
    pytest tests/unit/test_infra.py -v
"""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest
from google.auth.exceptions import DefaultCredentialsError

from julesbridge.config.settings import Settings
from julesbridge.exceptions import ScalingError
from julesbridge.infra.scaling import CloudRunScaler
from julesbridge.interfaces.health import HEALTH_BODY, start_health_server


def make_scaler(handler, token_provider=lambda: "tok", enabled=True):
    seen: list[httpx.Request] = []

    def record(request):
        seen.append(request)
        return handler(request)

    scaler = CloudRunScaler(
        project_id="proj",
        region="europe-west1",
        service_name="bridge",
        enabled=enabled,
        token_provider=token_provider,
        transport=httpx.MockTransport(record),
    )
    return scaler, seen


class TestCloudRunScaler:
    @pytest.mark.asyncio
    async def test_patch_request_shape(self):
        scaler, seen = make_scaler(lambda r: httpx.Response(200, json={"name": "op"}))
        await scaler.set_min_instances(1)

        request = seen[0]
        assert request.method == "PATCH"
        assert request.url.host == "run.googleapis.com"
        assert request.url.path == "/v2/projects/proj/locations/europe-west1/services/bridge"
        assert request.url.params["updateMask"] == "scaling.minInstanceCount"
        assert request.headers["Authorization"] == "Bearer tok"
        assert json.loads(request.content) == {"scaling": {"minInstanceCount": 1}}

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        scaler, _ = make_scaler(lambda r: httpx.Response(403, text="denied"))
        with pytest.raises(ScalingError) as exc_info:
            await scaler.set_min_instances(0)
        assert "403" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_credential_failure_raises(self):
        def no_credentials():
            raise DefaultCredentialsError("no ADC")

        scaler, seen = make_scaler(lambda r: httpx.Response(200), token_provider=no_credentials)
        with pytest.raises(ScalingError):
            await scaler.set_min_instances(1)
        assert seen == []

    @pytest.mark.asyncio
    async def test_background_request_swallows_failure(self):
        scaler, seen = make_scaler(lambda r: httpx.Response(500, text="boom"))
        task = scaler.request_min_instances(0)
        assert task is not None
        await task  # logged, not raised
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_disabled_does_nothing(self):
        scaler, seen = make_scaler(lambda r: httpx.Response(200), enabled=False)
        assert scaler.request_min_instances(1) is None
        assert seen == []

    def test_from_settings(self):
        settings = Settings(scaling={
            "enabled": True, "project_id": "p", "region": "r", "service_name": "s",
        })
        scaler = CloudRunScaler.from_settings(settings)
        assert scaler.enabled


class TestHealthServer:
    @pytest.mark.asyncio
    async def test_answers_any_request(self):
        server = await start_health_server("127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", port)
            writer.write(b"GET /anything HTTP/1.1\r\nHost: x\r\n\r\n")
            await writer.drain()
            response = await reader.read()
            writer.close()
        finally:
            server.close()
            await server.wait_closed()

        assert response.startswith(b"HTTP/1.1 200 OK")
        assert response.endswith(HEALTH_BODY)
