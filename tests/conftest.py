"""Shared fixtures: in-memory identity services and a recording sleep."""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any, Optional

import pytest

from scripts.migration.config import RunnerConfig
from scripts.migration.errors import IdentityServiceError, NotFoundError, RateLimitError
from scripts.migration.models import AuthoritativeAccount, WorkOSUser


class FakeWorkOS:
    """In-memory stand-in for WorkOSClient.

    ``fail_next`` maps a method name to a list of exceptions raised, in
    order, by the next calls of that method.
    """

    def __init__(self, users: Optional[list[WorkOSUser]] = None) -> None:
        self.users: dict[str, WorkOSUser] = {u.id: u for u in users or []}
        self.calls: list[tuple[str, Any]] = []
        self.fail_next: dict[str, list[Exception]] = {}
        self._lock = threading.Lock()
        self._seq = 0

    def _maybe_fail(self, method: str) -> None:
        with self._lock:
            queue = self.fail_next.get(method)
            if queue:
                raise queue.pop(0)

    def get_user(self, user_id: str) -> WorkOSUser:
        self.calls.append(("get_user", user_id))
        self._maybe_fail("get_user")
        if user_id not in self.users:
            raise NotFoundError("workos", 404, f"user {user_id} not found")
        return self.users[user_id]

    def create_user(self, email, email_verified=False, first_name=None, last_name=None, metadata=None):
        self.calls.append(("create_user", email))
        self._maybe_fail("create_user")
        with self._lock:
            self._seq += 1
            user = WorkOSUser(
                id=f"user_{self._seq:03d}",
                email=email,
                email_verified=email_verified,
                first_name=first_name,
                last_name=last_name,
                metadata=metadata or {},
            )
            self.users[user.id] = user
        return user

    def update_user(self, user_id: str, **fields: Any) -> WorkOSUser:
        self.calls.append(("update_user", (user_id, fields)))
        self._maybe_fail("update_user")
        current = self.users[user_id]
        changes = {k: v for k, v in fields.items() if k in WorkOSUser.model_fields and v is not None}
        updated = current.model_copy(update=changes)
        self.users[user_id] = updated
        return updated

    def list_users(self, email: str) -> list[WorkOSUser]:
        self.calls.append(("list_users", email))
        self._maybe_fail("list_users")
        return [u for u in self.users.values() if u.email.lower() == email]

    def called(self, method: str) -> list[Any]:
        return [arg for name, arg in self.calls if name == method]


class FakeAuth0:
    def __init__(self, accounts: Optional[dict[str, list[AuthoritativeAccount]]] = None) -> None:
        self.accounts = accounts or {}
        self.metadata: dict[str, dict[str, Any]] = {}
        self.searches: list[str] = []
        self.fail_next: dict[str, list[Exception]] = {}

    def _maybe_fail(self, method: str) -> None:
        queue = self.fail_next.get(method)
        if queue:
            raise queue.pop(0)

    def search_users_by_email(self, email: str) -> list[AuthoritativeAccount]:
        self.searches.append(email)
        self._maybe_fail("search_users_by_email")
        return list(self.accounts.get(email, []))

    def update_app_metadata(self, user_id: str, app_metadata: dict[str, Any]) -> None:
        self._maybe_fail("update_app_metadata")
        if user_id.startswith("missing|"):
            raise IdentityServiceError("auth0", 404, "user does not exist")
        self.metadata.setdefault(user_id, {}).update(app_metadata)


class RecordingSleep:
    """Async sleep replacement that records delays and yields once."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        import asyncio

        self.delays.append(delay)
        await asyncio.sleep(0)


def rate_limited(retry_after: Optional[float] = None) -> RateLimitError:
    return RateLimitError("workos", retry_after)


def write_jsonl(path: Path, rows: list[Any]) -> Path:
    lines = [r if isinstance(r, str) else json.dumps(r) for r in rows]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def exported_user(index: int, **overrides: Any) -> dict[str, Any]:
    row = {
        "user_id": f"auth0|{index:04d}",
        "email": f"User{index}@Example.com",
        "email_verified": True,
        "name": f"User {index}",
        "given_name": "User",
        "family_name": str(index),
        "nickname": f"user{index}",
        "picture": "https://example.com/p.png",
        "provider": "auth0",
        "created_at": "2023-01-01T00:00:00.000Z",
        "updated_at": "2023-06-01T00:00:00.000Z",
    }
    row.update(overrides)
    return row


@pytest.fixture
def fake_workos() -> FakeWorkOS:
    return FakeWorkOS()


@pytest.fixture
def fake_auth0() -> FakeAuth0:
    return FakeAuth0()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def runner_config() -> RunnerConfig:
    return RunnerConfig(concurrency=3, default_retry_after=60.0, fsync=False)
