# gpjobs/adapters/aiohttp_transport.py
import asyncio
import json
import logging
from typing import Any, Dict, Mapping, Optional

import aiohttp
from pydantic import BaseModel, Field

from gpjobs.core.exceptions import CommunicationError, ResultUnavailableError, ServiceError

logger = logging.getLogger(__name__)

# Status codes worth another attempt when polling.
TRANSIENT_HTTP_STATUSES = frozenset({408, 429, 500, 502, 503, 504})


class HttpReply(BaseModel):
    status: int
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Any = None

    @property
    def ok(self) -> bool:
        return self.status < 400

    def json_body(self, url: str) -> Dict[str, Any]:
        """Return the body as a JSON object or raise CommunicationError."""
        if isinstance(self.body, dict):
            return self.body
        snippet = str(self.body)[:100] if self.body is not None else ""
        raise CommunicationError(
            "The response from the remote service was not a JSON object",
            diagnostic=f"url={url} status={self.status} body='{snippet}'",
        )


class AioHttpTransport:
    """aiohttp session wrapper shared by the remote job client adapters.

    Network failures never escape as aiohttp exceptions: timeouts and
    connection errors become CommunicationError. HTTP error statuses are
    returned in the HttpReply so each operation can map them onto its own
    error type (see `raise_for_poll_status` / `raise_for_result_status`).
    """

    def __init__(
        self,
        timeout_total: float = 30.0,
        timeout_connect: float = 5.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._session = session
        self._owns_session = session is None
        self._default_client_timeout = aiohttp.ClientTimeout(
            total=timeout_total,
            sock_connect=timeout_connect,
        )

    async def __aenter__(self):
        """Async context manager entry"""
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._default_client_timeout)
            self._owns_session = True
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit"""
        await self.close()
        return False

    async def close(self) -> None:
        """Close the session if this transport created it"""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def request(
        self,
        method: str,
        url: str,
        params: Optional[Mapping[str, str]] = None,
        data: Optional[Mapping[str, str]] = None,
        json_body: Optional[Any] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> HttpReply:
        if self._session is None:
            raise RuntimeError("HTTP transport not initialized. Use 'async with' context manager.")

        try:
            async with self._session.request(
                method, url, params=params, data=data, json=json_body, headers=headers
            ) as response:
                text = await response.text()
                return HttpReply(
                    status=response.status,
                    headers=dict(response.headers),
                    body=_parse_body(text),
                )

        except asyncio.TimeoutError:
            logger.warning("Timeout when requesting remote service. %s %s", method, url)
            raise CommunicationError(
                "The request to the remote service timed out.",
                diagnostic=f"{method} {url}",
            )

        except aiohttp.ClientError as client_error:
            logger.warning(
                "Connection error when requesting remote service. %s %s, Error: %s",
                method,
                url,
                str(client_error),
            )
            raise CommunicationError(
                "There was a connection error with the remote service.",
                diagnostic=f"{method} {url}: {client_error}",
            )


def _parse_body(text: str) -> Any:
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return text


def describe_error(reply: HttpReply) -> str:
    """Best-effort human readable message from an error response body."""
    body = reply.body
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            details = error.get("details") or []
            suffix = f" ({'; '.join(str(d) for d in details)})" if details else ""
            return f"{error['message']}{suffix}"
        for key in ("detail", "title", "description", "message"):
            if body.get(key):
                return str(body[key])
    if isinstance(body, str) and body.strip():
        return body.strip()[:200]
    return f"HTTP {reply.status}"


def raise_for_poll_status(reply: HttpReply, url: str) -> None:
    """Map an error reply of a status request: transient -> CommunicationError, else ServiceError."""
    if reply.ok:
        return
    message = describe_error(reply)
    if reply.status in TRANSIENT_HTTP_STATUSES or reply.status >= 500:
        logger.warning("Transient HTTP error from remote service. URL: %s, Status: %s", url, reply.status)
        raise CommunicationError(
            f"The remote service returned an HTTP error: {reply.status}",
            diagnostic=message,
        )
    logger.error("HTTP error from remote service. URL: %s, Status: %s, Error: %s", url, reply.status, message)
    raise ServiceError(message, upstream_status=reply.status, diagnostic=f"url={url}")


def raise_for_result_status(reply: HttpReply, url: str) -> None:
    """Like `raise_for_poll_status`, but missing results map to ResultUnavailableError."""
    if reply.status in (404, 409, 410):
        raise ResultUnavailableError(describe_error(reply), diagnostic=f"url={url} status={reply.status}")
    raise_for_poll_status(reply, url)
