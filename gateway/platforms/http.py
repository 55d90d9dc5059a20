"""
Thin aiohttp helpers shared by the built-in channel transports.

Each call opens its own ClientSession, so a transport object holds no
connection state and can be shared by every account of a channel.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import aiohttp

logger = logging.getLogger(__name__)


class TransportError(Exception):
    """A provider call failed (HTTP error, API error or network error)."""

    def __init__(self, message: str, status: Optional[int] = None, retry_after: Optional[float] = None):
        super().__init__(message)
        self.status = status
        self.retry_after = retry_after


@dataclass
class HttpResponse:
    status: int
    data: Any
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


async def request_json(
    method: str,
    url: str,
    *,
    json: Any = None,
    headers: Optional[Dict[str, str]] = None,
    params: Optional[Dict[str, Any]] = None,
    timeout_s: float = 30,
) -> HttpResponse:
    """Perform one HTTP request and decode the body as JSON when possible."""
    try:
        async with aiohttp.ClientSession() as session:
            async with session.request(
                method,
                url,
                json=json,
                headers=headers,
                params=params,
                timeout=aiohttp.ClientTimeout(total=timeout_s),
            ) as resp:
                try:
                    data = await resp.json(content_type=None)
                except ValueError:
                    data = await resp.text()
                return HttpResponse(status=resp.status, data=data, headers=dict(resp.headers))
    except asyncio.TimeoutError as e:
        raise TransportError(f"{method} {_safe_url(url)} timed out after {timeout_s}s") from e
    except aiohttp.ClientError as e:
        raise TransportError(f"{method} {_safe_url(url)} failed: {e}") from e


def _safe_url(url: str) -> str:
    """Drop path segments that carry a bot token (api.telegram.org/bot<token>/...)."""
    parts = url.split("/")
    return "/".join("bot***" if p.startswith("bot") and ":" in p else p for p in parts)
