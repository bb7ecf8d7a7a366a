"""
interfaces/health.py — Liveness Endpoint

Container platforms (Cloud Run, Render) only keep a service alive when it
listens on $PORT. This answers every request with a plain 200.

Zero external dependencies — uses stdlib asyncio streams only.
"""

from __future__ import annotations

import asyncio

from julesbridge.observability.logger import get_logger

log = get_logger(__name__)

HEALTH_BODY = b"JulesBridge is running!"


async def _handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    try:
        # Drain the request head; the path and headers don't matter
        while True:
            line = await asyncio.wait_for(reader.readline(), timeout=5.0)
            if not line or line in (b"\r\n", b"\n"):
                break
        writer.write(
            b"HTTP/1.1 200 OK\r\n"
            b"Content-Type: text/plain; charset=utf-8\r\n"
            + f"Content-Length: {len(HEALTH_BODY)}\r\n".encode()
            + b"Connection: close\r\n\r\n"
            + HEALTH_BODY
        )
        await writer.drain()
    except (asyncio.TimeoutError, ConnectionError) as e:
        log.debug("health.request_dropped", error=str(e))
    finally:
        writer.close()


async def start_health_server(host: str = "0.0.0.0", port: int = 8080) -> asyncio.AbstractServer:
    server = await asyncio.start_server(_handle, host=host, port=port)
    log.info("health.listening", host=host, port=port)
    return server
