"""HTTPS fetch helpers for the MTA-STS policy file, BIMI logos and IP geolocation."""

import logging
from typing import Optional

import httpx

from .config import Settings, get_settings

logger = logging.getLogger(__name__)


async def http_get(url: str, timeout: float, settings: Optional[Settings] = None) -> httpx.Response:
    """
    GET ``url`` with a hard timeout and redirects followed.

    Transport failures propagate as ``httpx.HTTPError`` subclasses; non-2xx
    responses are returned as-is so callers can report the status.
    """
    settings = settings or get_settings()
    logger.debug("GET %s", url)
    async with httpx.AsyncClient(
        timeout=timeout,
        follow_redirects=True,
        headers={"User-Agent": settings.user_agent},
    ) as client:
        return await client.get(url)


def describe_http_error(url: str, exc: Exception) -> str:
    """Short human-readable reason for a failed fetch."""
    if isinstance(exc, httpx.TimeoutException):
        return f"Timeout accessing {url}"
    if isinstance(exc, httpx.ConnectError):
        reason = str(exc).lower()
        if "certificate" in reason or "ssl" in reason:
            return f"SSL/TLS error for {url}: {exc}"
        return f"Connection error for {url}: {exc}"
    if isinstance(exc, httpx.TooManyRedirects):
        return f"Too many redirects for {url}"
    return f"Error fetching {url}: {exc}"
