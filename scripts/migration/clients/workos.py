"""WorkOS User Management API client."""

from __future__ import annotations

import logging
from typing import Any, Optional

import requests

from scripts.migration.base_client import BaseClient
from scripts.migration.config import WorkOSConfig
from scripts.migration.models import WorkOSUser

logger = logging.getLogger("migration.workos")

USERS_PATH = "/user_management/users"


class WorkOSClient(BaseClient):
    SERVICE_NAME = "workos"

    def __init__(self, config: WorkOSConfig, timeout: float = 30.0,
                 session: Optional[requests.Session] = None) -> None:
        super().__init__(config.api_base_url, timeout=timeout, session=session)
        self._api_key = config.api_key

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._api_key}"}

    def get_user(self, user_id: str) -> WorkOSUser:
        return WorkOSUser.model_validate(self._request("GET", f"{USERS_PATH}/{user_id}"))

    def create_user(
        self,
        email: str,
        email_verified: bool = False,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> WorkOSUser:
        body = _user_fields(
            email=email,
            email_verified=email_verified,
            first_name=first_name,
            last_name=last_name,
            metadata=metadata,
        )
        return WorkOSUser.model_validate(self._request("POST", USERS_PATH, json=body))

    def update_user(self, user_id: str, **fields: Any) -> WorkOSUser:
        """Update a user. Accepts email_verified, first_name, last_name,
        metadata, password_hash and password_hash_type; None values are dropped."""
        body = _user_fields(**fields)
        return WorkOSUser.model_validate(self._request("PUT", f"{USERS_PATH}/{user_id}", json=body))

    def list_users(self, email: str) -> list[WorkOSUser]:
        data = self._request("GET", USERS_PATH, params={"email": email})
        return [WorkOSUser.model_validate(u) for u in (data or {}).get("data", [])]


def _user_fields(**fields: Any) -> dict[str, Any]:
    return {k: v for k, v in fields.items() if v is not None}
