"""Duplicate account resolution against the live Auth0 tenant.

Local accounts that share an email are grouped. For every group, Auth0 is
asked which of those accounts still exist upstream (by ``auth0Sub``):

  - no survivor      -> skip          (all accounts deleted upstream)
  - one survivor     -> keep          (that account)
  - several          -> manual_review (best candidate suggested)

A group whose lookup fails (other than throttling) is recorded as skip with
the failure as its reason, so every group still lands in exactly one output.

The suggestion ranks survivors by Auth0 login count, then by most recent
login; an account with a last login always ranks above one without.
"""

from __future__ import annotations

import asyncio
import csv
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator, Optional

from pydantic import ValidationError

from scripts.migration.clients.auth0 import Auth0Client
from scripts.migration.errors import IdentityServiceError, InputError
from scripts.migration.ledger import JsonlWriter
from scripts.migration.models import (
    ACTIONS,
    Action,
    AuthoritativeAccount,
    DuplicateCandidate,
    ResolutionDecision,
)
from scripts.migration.reader import StreamItem

logger = logging.getLogger("migration.duplicates")


@dataclass(frozen=True)
class EmailGroup:
    email: str
    candidates: tuple[DuplicateCandidate, ...]


def group_by_email(candidates: Iterable[DuplicateCandidate]) -> list[EmailGroup]:
    """Group candidates by exact email, keeping first-seen order of emails and rows."""
    grouped: dict[str, list[DuplicateCandidate]] = {}
    for candidate in candidates:
        grouped.setdefault(candidate.email, []).append(candidate)
    return [EmailGroup(email, tuple(rows)) for email, rows in grouped.items()]


def load_candidates_csv(path: str | os.PathLike) -> list[DuplicateCandidate]:
    """Read the duplicate-users CSV export. Any bad row aborts the whole load."""
    candidates: list[DuplicateCandidate] = []
    try:
        with Path(path).open("r", encoding="utf-8", newline="") as handle:
            reader = csv.DictReader(handle)
            for line_no, row in enumerate(reader, start=2):
                if not any(isinstance(v, str) and v.strip() for v in row.values()):
                    continue
                try:
                    candidates.append(DuplicateCandidate.model_validate(row))
                except ValidationError as exc:
                    raise InputError(f"{path}:{line_no}: invalid duplicate user row: {exc}") from exc
    except OSError as exc:
        raise InputError(f"Cannot read duplicate users from {path}: {exc}") from exc
    return candidates


def candidates_from_rows(rows: Iterable[dict], source: str = "database") -> list[DuplicateCandidate]:
    candidates: list[DuplicateCandidate] = []
    for index, row in enumerate(rows):
        try:
            candidates.append(DuplicateCandidate.model_validate(row))
        except ValidationError as exc:
            raise InputError(f"{source} row {index}: invalid duplicate user row: {exc}") from exc
    return candidates


def _activity_key(pair: tuple[DuplicateCandidate, AuthoritativeAccount]) -> tuple[int, int, float]:
    account = pair[1]
    last_login = account.last_login_at
    return (
        -(account.logins_count or 0),
        0 if last_login is not None else 1,
        -(last_login.timestamp() if last_login is not None else 0.0),
    )


def decide(email: str, candidates: Iterable[DuplicateCandidate],
           accounts: Iterable[AuthoritativeAccount]) -> ResolutionDecision:
    """Pure decision step for one email group."""
    duplicates = list(candidates)
    auth0_users = list(accounts)
    by_provider_id = {a.user_id: a for a in auth0_users}

    survivors = [
        (c, by_provider_id[c.auth0_sub])
        for c in duplicates
        if c.auth0_sub and c.auth0_sub in by_provider_id
    ]

    if not survivors:
        return ResolutionDecision(
            email=email,
            duplicates=duplicates,
            auth0_users=auth0_users,
            action="skip",
            reason="All accounts deleted upstream in Auth0",
        )

    if len(survivors) == 1:
        candidate, account = survivors[0]
        return ResolutionDecision(
            email=email,
            duplicates=duplicates,
            auth0_users=auth0_users,
            user_to_keep=candidate,
            auth0_user=account,
            action="keep",
            reason="Single surviving account in Auth0",
        )

    # sorted() is stable: full ties keep input order
    best_candidate, best_account = sorted(survivors, key=_activity_key)[0]
    return ResolutionDecision(
        email=email,
        duplicates=duplicates,
        auth0_users=auth0_users,
        user_to_keep=best_candidate,
        auth0_user=best_account,
        action="manual_review",
        reason=f"{len(survivors)} accounts survive in Auth0 - manual review required",
        requires_manual_review=True,
    )


def lookup_failed(email: str, candidates: Iterable[DuplicateCandidate],
                  cause: Exception) -> ResolutionDecision:
    """Skip decision for a group whose Auth0 lookup failed.

    Nothing is known about the upstream accounts, so no candidate is chosen.
    """
    return ResolutionDecision(
        email=email,
        duplicates=list(candidates),
        auth0_users=[],
        action="skip",
        reason=f"Auth0 lookup failed: {cause}",
    )


class DecisionSinks:
    """Three disjoint JSONL outputs selected by decision action."""

    def __init__(self, keep: str | os.PathLike, manual_review: str | os.PathLike,
                 skip: str | os.PathLike, dry_run: bool = False, fsync: bool = True) -> None:
        self.dry_run = dry_run
        self.writers: dict[Action, JsonlWriter] = {
            "keep": JsonlWriter(keep, fsync=fsync),
            "manual_review": JsonlWriter(manual_review, fsync=fsync),
            "skip": JsonlWriter(skip, fsync=fsync),
        }
        self.counts: dict[Action, int] = {action: 0 for action in ACTIONS}

    def write(self, decision: ResolutionDecision) -> None:
        self.counts[decision.action] += 1
        if not self.dry_run:
            self.writers[decision.action].write_line(decision.to_json_line())

    def close(self) -> None:
        for writer in self.writers.values():
            writer.close()

    def summary(self, total_emails: int) -> dict:
        return {"totalEmails": total_emails, "actions": dict(self.counts)}

    @property
    def summary_path(self) -> Path:
        keep = self.writers["keep"].path
        return keep.with_name(f"{keep.stem}_summary.json")

    def write_summary(self, total_emails: int) -> Optional[Path]:
        if self.dry_run:
            return None
        path = self.summary_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.summary(total_emails), indent=2) + "\n", encoding="utf-8")
        return path


@dataclass
class DuplicateResolver:
    """Per-group handler for the batch runner."""

    auth0: Auth0Client
    sinks: DecisionSinks
    decisions: list[ResolutionDecision] = field(default_factory=list)

    async def process(self, ordinal: int, group: EmailGroup) -> bool:
        logger.info(
            "(%d) Processing %d duplicates for %s", ordinal, len(group.candidates), group.email,
            extra={"ordinal": ordinal},
        )
        try:
            accounts = await asyncio.to_thread(self.auth0.search_users_by_email, group.email)
        except IdentityServiceError as exc:
            logger.error("(%d) Auth0 lookup failed for %s: %s", ordinal, group.email, exc,
                         extra={"ordinal": ordinal, "action": "skip"})
            decision = lookup_failed(group.email, group.candidates, exc)
            self.sinks.write(decision)
            self.decisions.append(decision)
            return False
        logger.info("(%d) Found %d Auth0 users for %s", ordinal, len(accounts), group.email,
                    extra={"ordinal": ordinal})

        decision = decide(group.email, group.candidates, accounts)
        self.sinks.write(decision)
        self.decisions.append(decision)

        logger.info(
            "(%d) %s: %s - %s", ordinal, group.email, decision.action, decision.reason,
            extra={"ordinal": ordinal, "action": decision.action},
        )
        if decision.user_to_keep is not None:
            logger.info(
                "(%d) Selected user: %s (%s)", ordinal,
                decision.user_to_keep.s_id, decision.user_to_keep.username,
                extra={"ordinal": ordinal, "target_id": decision.user_to_keep.s_id},
            )
        return True


def iter_groups(groups: list[EmailGroup]) -> Iterator[StreamItem[EmailGroup]]:
    for ordinal, group in enumerate(groups):
        yield StreamItem(ordinal, group)
