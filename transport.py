#!/usr/bin/env python3
"""
HTTP transport capability.

The pipeline only needs ``get(url) -> TransportResponse``; anything with that
coroutine can be injected (tests use an in-memory fake). ``HttpTransport`` is
the aiohttp-backed default.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol

from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from errors import NetworkError
from telemetry import trace_span

logger = get_logger("transport")

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
}


@dataclass
class TransportResponse:
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def content_type(self) -> str:
        for key, value in self.headers.items():
            if key.lower() == "content-type":
                return (value or "").lower()
        return ""


class Transport(Protocol):
    async def get(self, url: str) -> TransportResponse:
        ...


def format_client_error(error: Exception) -> str:
    """Describe aiohttp client errors with any available status/errno."""
    parts: List[str] = [error.__class__.__name__]
    status = getattr(error, 'status', None)
    if status is not None:
        parts.append(f"status={status}")
    os_error = getattr(error, 'os_error', None)
    if os_error is not None:
        errno = getattr(os_error, 'errno', None)
        strerror = getattr(os_error, 'strerror', None)
        if errno is not None:
            parts.append(f"errno={errno}")
        if strerror:
            parts.append(str(strerror))
    message = str(error)
    if message:
        parts.append(message)
    return " ".join(parts)


class HttpTransport:
    """aiohttp transport with caching disabled and redirects followed.

    The session is created lazily so the transport can be constructed outside
    a running event loop.
    """

    def __init__(self, session: Optional[ClientSession] = None,
                 timeout: Optional[float] = None,
                 user_agent: Optional[str] = None,
                 max_redirects: Optional[int] = None) -> None:
        self._session = session
        self._owns_session = session is None
        self.timeout = timeout or config.HTTP_TIMEOUT
        self.user_agent = user_agent or config.USER_AGENT
        self.max_redirects = config.MAX_REDIRECTS if max_redirects is None else max_redirects

    def _get_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession(timeout=ClientTimeout(total=self.timeout))
            self._owns_session = True
        return self._session

    @trace_span(
        "transport.get",
        tracer_name="transport",
        attr_from_args=lambda self, url: {"http.url": url},
        attr_from_result=lambda response: {"http.status_code": response.status},
    )
    async def get(self, url: str) -> TransportResponse:
        headers = {"User-Agent": self.user_agent, **NO_CACHE_HEADERS}
        session = self._get_session()
        try:
            async with session.get(
                url,
                headers=headers,
                allow_redirects=True,
                max_redirects=self.max_redirects,
            ) as response:
                body = await response.text(errors="replace")
                return TransportResponse(
                    status=response.status,
                    headers={k.lower(): v for k, v in response.headers.items()},
                    body=body,
                )
        except TimeoutError as e:
            raise NetworkError("Network error", f"timed out after {self.timeout}s") from e
        except ClientError as e:
            detail = format_client_error(e)
            logger.debug(f"Transport error for {url}: {detail}")
            raise NetworkError("Network error", detail) from e

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None
