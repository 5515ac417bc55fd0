"""Per-record workers: Auth0 user -> WorkOS upsert, id back-fill, password import."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable

from scripts.migration.clients.auth0 import Auth0Client
from scripts.migration.clients.workos import WorkOSClient
from scripts.migration.errors import (
    AmbiguousMatchError,
    FatalError,
    IdentityServiceError,
    NotFoundError,
    RateLimitError,
)
from scripts.migration.ledger import ResultLedger
from scripts.migration.models import (
    Auth0ExportedUser,
    Auth0PasswordRecord,
    Created,
    MigrationResult,
    Outcome,
    Unresolved,
    Updated,
    WorkOSUser,
)

logger = logging.getLogger("migration.migrator")


async def _call(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    # Blocking HTTP call off the event loop; awaiting it is the suspension point
    return await asyncio.to_thread(fn, *args, **kwargs)


async def find_unique_by_email(workos: WorkOSClient, email: str) -> WorkOSUser:
    """Look up a WorkOS user by lowercased email; exactly one match is required."""
    matches = await _call(workos.list_users, email.lower())
    if not matches:
        raise NotFoundError("workos", None, f"no user with email {email}")
    if len(matches) > 1:
        raise AmbiguousMatchError("workos", None, f"{len(matches)} users with email {email}")
    return matches[0]


class UserMigrator:
    """Creates or updates the WorkOS user for one exported Auth0 user.

    A record that already carries ``workos_user_id`` is always updated,
    never created. When creation (or the direct update) fails with a
    non-retryable error, the user is looked up by email and updated if
    exactly one account matches. RateLimitError and FatalError always
    propagate.
    """

    def __init__(self, workos: WorkOSClient, ledger: ResultLedger) -> None:
        self.workos = workos
        self.ledger = ledger

    async def find_or_create(self, user: Auth0ExportedUser) -> Outcome:
        try:
            if user.workos_user_id:
                existing = await _call(self.workos.get_user, user.workos_user_id)
                return Updated(await self._update(user, existing))

            created = await _call(
                self.workos.create_user,
                email=user.email,
                email_verified=user.is_email_verified,
                first_name=user.given_name,
                last_name=user.family_name,
                metadata=user.workos_metadata(),
            )
            return Created(created)
        except (RateLimitError, FatalError):
            raise
        except IdentityServiceError as exc:
            first_error = exc

        try:
            existing = await find_unique_by_email(self.workos, user.email)
        except (NotFoundError, AmbiguousMatchError) as exc:
            return Unresolved(f"{first_error}; {exc.detail}")
        return Updated(await self._update(user, existing))

    async def _update(self, user: Auth0ExportedUser, existing: WorkOSUser) -> WorkOSUser:
        return await _call(
            self.workos.update_user,
            existing.id,
            email_verified=existing.email_verified or user.is_email_verified,
            first_name=user.given_name,
            last_name=user.family_name,
            metadata=user.workos_metadata(),
        )

    async def process(self, ordinal: int, user: Auth0ExportedUser) -> bool:
        outcome = await self.find_or_create(user)

        if isinstance(outcome, Unresolved):
            logger.error(
                "(%d) Could not find or create user %s: %s", ordinal, user.user_id, outcome.reason,
                extra={"ordinal": ordinal, "source_id": user.user_id},
            )
            return False

        created = isinstance(outcome, Created)
        # Ledger line is on disk before the dispatcher sees this task finish
        self.ledger.record(outcome.user.id, user.user_id, created)

        verb = "Imported" if created else "Updated"
        logger.info(
            "(%d) %s Auth0 user %s as WorkOS user %s", ordinal, verb, user.user_id, outcome.user.id,
            extra={"ordinal": ordinal, "source_id": user.user_id, "target_id": outcome.user.id},
        )
        return True


class Auth0Backfiller:
    """Writes the WorkOS user id into each migrated Auth0 user's app_metadata."""

    def __init__(self, auth0: Auth0Client) -> None:
        self.auth0 = auth0

    async def process(self, ordinal: int, result: MigrationResult) -> bool:
        try:
            await _call(
                self.auth0.update_app_metadata,
                result.auth0_user_id,
                {"workos_user_id": result.workos_user_id},
            )
        except (RateLimitError, FatalError):
            raise
        except IdentityServiceError as exc:
            logger.error(
                "(%d) Failed to update user %s: %s", ordinal, result.auth0_user_id, exc,
                extra={"ordinal": ordinal, "source_id": result.auth0_user_id},
            )
            return False

        logger.info(
            "(%d) Updated user %s with WorkOS ID %s", ordinal, result.auth0_user_id, result.workos_user_id,
            extra={"ordinal": ordinal, "source_id": result.auth0_user_id, "target_id": result.workos_user_id},
        )
        return True


class PasswordImporter:
    """Sets bcrypt password hashes on WorkOS users matched by email.

    After a successful import the Auth0 user is stamped with
    ``password_imported_to_workos``; a failed stamp is only logged.
    """

    def __init__(self, workos: WorkOSClient, auth0: Auth0Client) -> None:
        self.workos = workos
        self.auth0 = auth0

    async def process(self, ordinal: int, record: Auth0PasswordRecord) -> bool:
        try:
            existing = await find_unique_by_email(self.workos, record.email)
            updated = await _call(
                self.workos.update_user,
                existing.id,
                password_hash=record.password_hash,
                password_hash_type="bcrypt",
            )
        except (RateLimitError, FatalError):
            raise
        except IdentityServiceError as exc:
            logger.error(
                "(%d) Could not import password for %s (%s): %s", ordinal, record.id, record.email, exc,
                extra={"ordinal": ordinal, "source_id": record.auth0_user_id},
            )
            return False

        try:
            await _call(
                self.auth0.update_app_metadata,
                record.auth0_user_id,
                {"password_imported_to_workos": datetime.now(timezone.utc).isoformat()},
            )
        except (RateLimitError, FatalError):
            raise
        except IdentityServiceError as exc:
            logger.warning(
                "(%d) Can't update metadata for user %s: %s", ordinal, record.auth0_user_id, exc,
                extra={"ordinal": ordinal, "source_id": record.auth0_user_id},
            )

        logger.info(
            "(%d) Imported Auth0 password for %s into WorkOS user %s", ordinal, record.id, updated.id,
            extra={"ordinal": ordinal, "source_id": record.auth0_user_id, "target_id": updated.id},
        )
        return True
