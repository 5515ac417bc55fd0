"""Auth0 Management API client: user search and app_metadata updates."""

from __future__ import annotations

import logging
import re
import threading
import time
from typing import Any, Optional
from urllib.parse import quote

import requests

from scripts.migration.base_client import BaseClient
from scripts.migration.config import Auth0Config
from scripts.migration.errors import ConfigurationError
from scripts.migration.models import AuthoritativeAccount

logger = logging.getLogger("migration.auth0")

SEARCH_FIELDS = "user_id,email,last_login,last_ip,logins_count,created_at,updated_at"

# Lucene special characters
_LUCENE_SPECIAL = re.compile(r'([+\-&|!(){}\[\]^"~*?:\\/])')


def escape_lucene(value: str) -> str:
    return _LUCENE_SPECIAL.sub(r"\\\1", value)


class Auth0Client(BaseClient):
    SERVICE_NAME = "auth0"

    def __init__(self, config: Auth0Config, timeout: float = 30.0,
                 session: Optional[requests.Session] = None) -> None:
        super().__init__(config.domain_url, timeout=timeout, session=session)
        if not config.api_token and not (config.client_id and config.client_secret):
            raise ConfigurationError("Auth0 needs an API token or M2M client credentials")
        self._config = config
        self._token: Optional[str] = config.api_token
        self._token_expires_at = float("inf") if config.api_token else 0.0
        self._token_lock = threading.Lock()

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._access_token()}"}

    def _access_token(self) -> str:
        # Calls arrive from worker threads; only one of them fetches a token
        with self._token_lock:
            if self._token is None or time.time() >= self._token_expires_at:
                self._fetch_token()
            return self._token

    def _fetch_token(self) -> None:
        """Client credentials grant against the tenant's /oauth/token endpoint."""
        logger.info("Requesting Auth0 management API token")
        data = self._request(
            "POST",
            "/oauth/token",
            json={
                "grant_type": "client_credentials",
                "client_id": self._config.client_id,
                "client_secret": self._config.client_secret,
                "audience": f"{self._base}/api/v2/",
            },
            authenticated=False,
        )
        self._token = data["access_token"]
        # Refresh a minute early
        self._token_expires_at = time.time() + float(data.get("expires_in", 86400)) - 60

    def search_users_by_email(self, email: str) -> list[AuthoritativeAccount]:
        data = self._request(
            "GET",
            "/api/v2/users",
            params={
                "q": f'email:"{escape_lucene(email)}"',
                "search_engine": "v3",
                "fields": SEARCH_FIELDS,
                "include_fields": "true",
            },
        )
        return [AuthoritativeAccount.model_validate(u) for u in data or []]

    def update_app_metadata(self, user_id: str, app_metadata: dict[str, Any]) -> None:
        self._request(
            "PATCH",
            f"/api/v2/users/{quote(user_id, safe='')}",
            json={"app_metadata": app_metadata},
        )
