"""
Stub HTTP server for integration testing the pagination loop.
[CTX:PBI-1:1-7:STUB]

This module provides a configurable stub server that serves queued JSON
pages with x-rate-limit-* headers, rate-limit error payloads and other API
errors, and records every request it receives.

Features:
- Queue-based response configuration
- Rate limit header support (x-rate-limit-*)
- Records method, path, query and form body of each request
- Binds an ephemeral port by default
"""
import asyncio
import json
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from aiohttp import web

logger = logging.getLogger(__name__)


# [CTX:PBI-1:1-7:STUB] Response configuration
@dataclass
class StubResponse:
    """Configuration for a single stub response."""

    status: int = 200
    headers: Dict[str, str] = field(default_factory=dict)
    body: str = '{"status": "ok"}'
    delay: float = 0.0  # Artificial delay in seconds

    def to_dict(self) -> Dict:
        """Convert to dictionary for debugging."""
        return {
            "status": self.status,
            "headers": self.headers,
            "body": self.body,
            "delay": self.delay,
        }


# [CTX:PBI-1:1-7:STUB] Stub server implementation
class StubServer:
    """
    Configurable stub HTTP server for testing.

    The server maintains a queue of response configurations and serves them
    in order. Once the queue is empty, it serves the default response.

    Example:
        server = StubServer()
        await server.start()
        server.enqueue_response(page_response({"ids": [1]}, next_cursor="0"))
        # Make requests to server.get_url("/followers/ids")
        await server.stop()
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 0,
        default_response: Optional[StubResponse] = None
    ):
        """
        Initialize stub server.

        Args:
            host: Host to bind to
            port: Port to bind to, 0 for any free port
            default_response: Default response when queue is empty
        """
        self.host = host
        self.port = port
        self.default_response = default_response or page_response({"ids": []})

        self._response_queue: deque[StubResponse] = deque()
        self._queue_lock = asyncio.Lock()

        self.request_count = 0
        self.request_history: List[Dict[str, Any]] = []

        self._app: Optional[web.Application] = None
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    async def _handle_request(self, request: web.Request) -> web.Response:
        """
        Handle incoming HTTP request.

        Args:
            request: aiohttp request object

        Returns:
            Configured response
        """
        form = dict(await request.post()) if request.method == "POST" else {}

        self.request_count += 1
        self.request_history.append({
            "method": request.method,
            "path": request.path,
            "query": dict(request.query),
            "form": {k: str(v) for k, v in form.items()},
            "headers": dict(request.headers),
        })

        logger.debug(
            f"[CTX:PBI-1:1-7:STUB] Request #{self.request_count}: "
            f"{request.method} {request.path_qs}"
        )

        async with self._queue_lock:
            if self._response_queue:
                response_config = self._response_queue.popleft()
            else:
                response_config = self.default_response

        if response_config.delay > 0:
            await asyncio.sleep(response_config.delay)

        return web.Response(
            status=response_config.status,
            headers=response_config.headers,
            text=response_config.body,
            content_type="application/json"
        )

    def enqueue_response(self, response: StubResponse) -> None:
        """Add response to queue."""
        self._response_queue.append(response)

    def enqueue_responses(self, responses: List[StubResponse]) -> None:
        """Add multiple responses to queue."""
        for response in responses:
            self.enqueue_response(response)

    def clear_queue(self) -> None:
        """Clear response queue."""
        self._response_queue.clear()

    def reset_stats(self) -> None:
        """Reset request tracking statistics."""
        self.request_count = 0
        self.request_history.clear()

    async def start(self) -> None:
        """Start the stub server."""
        if self._runner is not None:
            logger.warning("[CTX:PBI-1:1-7:STUB] Server already started")
            return

        self._app = web.Application()
        self._app.router.add_route("*", "/{tail:.*}", self._handle_request)

        self._runner = web.AppRunner(self._app)
        await self._runner.setup()

        self._site = web.TCPSite(self._runner, self.host, self.port)
        await self._site.start()

        # Resolve the real port when bound to 0
        self.port = self._runner.addresses[0][1]

        logger.info(
            f"[CTX:PBI-1:1-7:STUB] Stub server started on "
            f"http://{self.host}:{self.port}"
        )

    async def stop(self) -> None:
        """Stop the stub server."""
        if self._runner is None:
            logger.warning("[CTX:PBI-1:1-7:STUB] Server not started")
            return

        await self._runner.cleanup()
        self._runner = None
        self._site = None
        self._app = None

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def get_url(self, path: str = "/") -> str:
        """Get full URL for a path on this server."""
        if not path.startswith("/"):
            path = "/" + path
        return f"{self.base_url}{path}"


# [CTX:PBI-1:1-7:STUB] Helper functions for common scenarios
def rate_headers(limit: int = 15, remaining: int = 14, reset: int = 1060) -> Dict[str, str]:
    """x-rate-limit-* headers with the given values."""
    return {
        "x-rate-limit-limit": str(limit),
        "x-rate-limit-remaining": str(remaining),
        "x-rate-limit-reset": str(reset),
    }


def page_response(
    payload: Dict[str, Any],
    next_cursor: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
) -> StubResponse:
    """
    Create a successful page.

    Args:
        payload: JSON object to serve
        next_cursor: Value for next_cursor_str, omitted when None
        headers: Extra response headers

    Returns:
        StubResponse configured as a page
    """
    body = dict(payload)
    if next_cursor is not None:
        body["next_cursor_str"] = next_cursor
    return StubResponse(status=200, headers=headers or {}, body=json.dumps(body))


def rate_limited_response(reset: int, limit: int = 15) -> StubResponse:
    """Create a code 88 rate-limit error with an exhausted window."""
    return StubResponse(
        status=429,
        headers=rate_headers(limit=limit, remaining=0, reset=reset),
        body='{"errors": [{"code": 88, "message": "Rate limit exceeded"}]}'
    )


def api_error_response(code: int = 34, status: int = 404) -> StubResponse:
    """Create a non rate-limit API error."""
    return StubResponse(
        status=status,
        headers={},
        body=json.dumps({"errors": [{"code": code, "message": "Sorry, that page does not exist."}]})
    )
