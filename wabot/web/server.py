"""Admin HTTP server -- asyncio-based management interface."""
from __future__ import annotations

import asyncio
import json
import math
from typing import Any

from wabot.log import logger
from wabot.rate_limiter import SlidingWindowRateLimiter

_MAX_BODY = 1_048_576  # 1 MB
_MAX_HEADER_LINES = 64

_STATUS_TEXT = {
    200: "OK", 400: "Bad Request", 401: "Unauthorized", 403: "Forbidden",
    404: "Not Found", 405: "Method Not Allowed", 409: "Conflict", 413: "Payload Too Large",
    422: "Unprocessable Entity",
    429: "Too Many Requests", 500: "Internal Server Error", 503: "Service Unavailable",
}

_SECURITY_HEADERS = (
    "X-Content-Type-Options: nosniff\r\n"
    "X-Frame-Options: DENY\r\n"
    "Referrer-Policy: no-referrer\r\n"
    "Cache-Control: no-store\r\n"
)


class AdminServer:
    """Health endpoints plus authenticated write endpoints.

    Uses asyncio.start_server; one request per connection, Connection: close.
    Every client IP is limited by a sliding window.
    """

    def __init__(
        self,
        app: Any,
        host: str = "0.0.0.0",
        port: int = 3000,
        auth_token: str = "",
        rate_limit: SlidingWindowRateLimiter | None = None,
    ) -> None:
        self._app = app
        self._host = host
        self._port = port
        self._auth_token = auth_token
        self._limiter = rate_limit
        self._server: asyncio.Server | None = None

    @property
    def port(self) -> int:
        """Bound port (useful with port=0)."""
        if self._server and self._server.sockets:
            return self._server.sockets[0].getsockname()[1]
        return self._port

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle, self._host, self._port)
        logger.info(f"Admin server at http://{self._host}:{self.port}")

    async def stop(self) -> None:
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            line = await asyncio.wait_for(reader.readline(), timeout=5.0)
            parts = line.decode("utf-8", errors="replace").split()
            method = parts[0].upper() if parts else "GET"
            path = parts[1] if len(parts) >= 2 else "/"

            headers: dict[str, str] = {}
            content_length = 0
            for _ in range(_MAX_HEADER_LINES):
                h = await asyncio.wait_for(reader.readline(), timeout=5.0)
                if h in (b"\r\n", b"\n", b""):
                    break
                decoded = h.decode("utf-8", errors="replace").strip()
                if ":" in decoded:
                    k, v = decoded.split(":", 1)
                    headers[k.strip().lower()] = v.strip()
            try:
                content_length = int(headers.get("content-length", "0"))
            except ValueError:
                content_length = 0

            peer = writer.get_extra_info("peername")
            client_ip = peer[0] if isinstance(peer, tuple) and peer else "unknown"
            if self._limiter is not None:
                allowed, retry_after = self._limiter.check(client_ip)
                if not allowed:
                    await self._respond(writer, {
                        "error": "Too many requests, rate limit exceeded",
                        "retryAfter": math.ceil(retry_after),
                    }, status=429, extra_headers=f"Retry-After: {math.ceil(retry_after)}\r\n")
                    return

            if content_length > _MAX_BODY:
                await self._respond(writer, {"error": "payload too large"}, status=413)
                return
            body = b""
            if content_length > 0:
                body = await asyncio.wait_for(reader.readexactly(content_length), timeout=10.0)

            # Every write endpoint needs the bearer token
            if method != "GET":
                if not self._auth_token:
                    await self._respond(writer, {"error": "admin token not configured"}, status=403)
                    return
                auth = headers.get("authorization", "")
                token = auth[len("Bearer "):] if auth.startswith("Bearer ") else ""
                if token != self._auth_token:
                    await self._respond(writer, {"error": "unauthorized"}, status=401)
                    return

            from wabot.web.routes import handle_route
            result = await handle_route(self._app, method, path, body)
            status_code = result.pop("status", 200) if isinstance(result.get("status"), int) else 200
            await self._respond(writer, result, status=status_code)
        except (asyncio.TimeoutError, asyncio.IncompleteReadError, ConnectionError) as e:
            logger.debug(f"Admin request aborted: {e!r}")
        except Exception as e:
            logger.error(f"Admin server error: {e!r}")
            try:
                await self._respond(writer, {"error": "internal error"}, status=500)
            except (ConnectionError, OSError):
                pass
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    async def _respond(
        self,
        writer: asyncio.StreamWriter,
        data: dict[str, Any],
        status: int = 200,
        extra_headers: str = "",
    ) -> None:
        payload = json.dumps(data, ensure_ascii=False, default=str)
        status_text = _STATUS_TEXT.get(status, "OK")
        resp = (f"HTTP/1.1 {status} {status_text}\r\n"
                f"Content-Type: application/json\r\n"
                f"{_SECURITY_HEADERS}"
                f"{extra_headers}"
                f"Content-Length: {len(payload.encode())}\r\n"
                f"Connection: close\r\n\r\n{payload}")
        writer.write(resp.encode())
        await writer.drain()
