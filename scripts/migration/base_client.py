"""Shared HTTP plumbing for the identity service clients."""

from __future__ import annotations

import logging
import time
from email.utils import parsedate_to_datetime
from typing import Any, Optional

import requests

from scripts.migration.errors import (
    AuthenticationError,
    IdentityServiceError,
    NotFoundError,
    RateLimitError,
)

logger = logging.getLogger("migration.client")


def parse_retry_after(headers: Any) -> Optional[float]:
    """Read a retry hint from Retry-After (seconds or HTTP date) or X-RateLimit-Reset (epoch)."""
    raw = headers.get("Retry-After") if headers else None
    if raw:
        try:
            return max(float(raw), 0.0)
        except ValueError:
            try:
                return max(parsedate_to_datetime(raw).timestamp() - time.time(), 0.0)
            except (TypeError, ValueError):
                pass
    reset = headers.get("X-RateLimit-Reset") if headers else None
    if reset:
        try:
            return max(float(reset) - time.time(), 0.0)
        except ValueError:
            pass
    return None


class BaseClient:
    """Each client declares SERVICE_NAME and talks to one REST API.

    Calls are synchronous; async callers run them through asyncio.to_thread.
    """

    SERVICE_NAME: str = ""

    def __init__(self, base_url: str, timeout: float = 30.0,
                 session: Optional[requests.Session] = None) -> None:
        self._base = base_url.rstrip("/")
        self._timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update({"Accept": "application/json"})

    def close(self) -> None:
        self._session.close()

    def _auth_headers(self) -> dict[str, str]:
        return {}

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        """Send one request and map the response onto the error taxonomy.

        Returns the decoded JSON body, or None for empty responses.
        """
        url = f"{self._base}{path}"
        auth_headers = self._auth_headers() if kwargs.pop("authenticated", True) else {}
        headers = {**auth_headers, **kwargs.pop("headers", {})}
        try:
            resp = self._session.request(
                method, url, headers=headers, timeout=self._timeout, **kwargs
            )
        except requests.RequestException as exc:
            raise IdentityServiceError(self.SERVICE_NAME, None, str(exc)) from exc

        if resp.status_code == 429:
            retry_after = parse_retry_after(resp.headers)
            logger.debug("%s %s %s throttled (retry after %s)", self.SERVICE_NAME, method, path, retry_after)
            raise RateLimitError(self.SERVICE_NAME, retry_after)
        if resp.status_code in (401, 403):
            raise AuthenticationError(
                f"{self.SERVICE_NAME} rejected credentials (HTTP {resp.status_code}): {_detail(resp)}"
            )
        if resp.status_code == 404:
            raise NotFoundError(self.SERVICE_NAME, 404, _detail(resp))
        if resp.status_code >= 400:
            raise IdentityServiceError(self.SERVICE_NAME, resp.status_code, _detail(resp))

        if not resp.content:
            return None
        return resp.json()


def _detail(resp: requests.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:500]
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error_description") or body.get("error") or body)[:500]
    return str(body)[:500]
