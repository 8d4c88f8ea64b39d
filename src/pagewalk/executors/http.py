"""
aiohttp based request executor.

Sends one bearer-token authenticated request per call and reports the
outcome as an ExecutionResult. Transport problems never raise out of
execute(); HTTP error statuses are returned like any other response.
"""
# [CTX:PBI-1:1-7:HTTP]

import asyncio
import logging
import time
from typing import Optional

from aiohttp import ClientError, ClientSession, ClientTimeout

from pagewalk.core import (
    Credentials,
    ExecutionResult,
    HeaderMap,
    RawResponse,
    RequestExecutor,
    RequestSpec,
)

logger = logging.getLogger(__name__)


class HttpRequestExecutor(RequestExecutor):
    """
    Request executor backed by a single aiohttp ClientSession.

    The session is created lazily and closed by close() or on leaving the
    ``async with`` block.
    """

    def __init__(self, session: Optional[ClientSession] = None):
        """
        Initialize executor.

        Args:
            session: Optional session to reuse; it is not closed by this executor
        """
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> ClientSession:
        if self._session is None:
            self._session = ClientSession()
        return self._session

    async def execute(
        self,
        request: RequestSpec,
        credentials: Credentials,
    ) -> ExecutionResult:
        session = await self._get_session()
        headers = credentials.auth_headers()
        start_time = time.monotonic()

        logger.debug(
            f"[CTX:PBI-1:1-7:HTTP] {request.method} {request.url} "
            f"params={request.query_params} body={request.body}"
        )

        try:
            async with session.request(
                request.method,
                request.url,
                params=request.query_params or None,
                data=request.body,
                headers=headers,
                timeout=ClientTimeout(total=request.timeout_s),
            ) as response:
                body = await response.text()
                status = response.status
                response_headers = HeaderMap(response.headers)
        except asyncio.TimeoutError:
            return ExecutionResult.failure(
                f"timed out after {request.timeout_s}s: {request.method} {request.url}"
            )
        except (ClientError, UnicodeDecodeError) as e:
            return ExecutionResult.failure(f"{type(e).__name__}: {e}")

        elapsed_ms = (time.monotonic() - start_time) * 1000
        logger.debug(
            f"[CTX:PBI-1:1-7:HTTP] {status} from {request.url} in {elapsed_ms:.1f}ms"
        )
        return ExecutionResult.success(RawResponse(
            status=status,
            headers=response_headers,
            body=body,
            elapsed_ms=elapsed_ms,
        ))

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None
