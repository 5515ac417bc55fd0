"""Tests for duplicate account resolution."""

import json
from dataclasses import replace

import pytest

from scripts.migration.duplicates import (
    DecisionSinks,
    DuplicateResolver,
    candidates_from_rows,
    decide,
    group_by_email,
    iter_groups,
    load_candidates_csv,
)
from scripts.migration.errors import IdentityServiceError, InputError, RateLimitError
from scripts.migration.models import AuthoritativeAccount, DuplicateCandidate
from scripts.migration.runner import BatchRunner
from tests.conftest import FakeAuth0

CSV_HEADER = (
    "username,email,name,createdAt,updatedAt,provider,providerId,isDustSuperUser,"
    "firstName,lastName,imageUrl,auth0Sub,sId,id,workOSUserId"
)


def candidate(n: int, email: str = "a@x.com", sub: str | None = None) -> DuplicateCandidate:
    return DuplicateCandidate.model_validate({
        "id": str(n),
        "sId": f"s{n}",
        "username": f"user{n}",
        "email": email,
        "auth0Sub": sub if sub is not None else f"auth0|{n}",
    })


def account(n: int, logins: int | None = None, last_login: str | None = None) -> AuthoritativeAccount:
    return AuthoritativeAccount(user_id=f"auth0|{n}", email="a@x.com", logins_count=logins, last_login=last_login)


class TestDecide:
    def test_no_survivors_is_skip(self):
        decision = decide("a@x.com", [candidate(1), candidate(2)], [account(9)])

        assert decision.action == "skip"
        assert "deleted upstream" in decision.reason
        assert decision.user_to_keep is None
        assert decision.auth0_user is None
        assert len(decision.duplicates) == 2

    def test_candidate_without_sub_never_survives(self):
        decision = decide("a@x.com", [candidate(1, sub="")], [account(1)])

        assert decision.action == "skip"

    def test_single_survivor_is_kept(self):
        decision = decide("a@x.com", [candidate(1), candidate(2), candidate(3)], [account(2, logins=4)])

        assert decision.action == "keep"
        assert decision.user_to_keep.s_id == "s2"
        assert decision.auth0_user.user_id == "auth0|2"
        assert decision.requires_manual_review is False
        assert len(decision.duplicates) == 3

    def test_several_survivors_suggest_highest_login_count(self):
        decision = decide(
            "a@x.com",
            [candidate(1), candidate(2), candidate(3)],
            [account(1, logins=5), account(2, logins=10)],
        )

        assert decision.action == "manual_review"
        assert decision.requires_manual_review is True
        assert decision.reason.startswith("2 accounts survive")
        assert decision.user_to_keep.s_id == "s2"
        assert decision.auth0_user.logins_count == 10

    def test_login_tie_broken_by_most_recent_login(self):
        decision = decide(
            "a@x.com",
            [candidate(1), candidate(2)],
            [
                account(1, logins=3, last_login="2024-01-01T00:00:00.000Z"),
                account(2, logins=3, last_login="2024-05-01T00:00:00.000Z"),
            ],
        )

        assert decision.user_to_keep.s_id == "s2"

    def test_account_with_last_login_outranks_one_without(self):
        decision = decide(
            "a@x.com",
            [candidate(1), candidate(2)],
            [account(1, logins=3), account(2, logins=3, last_login="2001-01-01T00:00:00Z")],
        )

        assert decision.user_to_keep.s_id == "s2"

    def test_missing_login_count_counts_as_zero(self):
        decision = decide(
            "a@x.com",
            [candidate(1), candidate(2)],
            [account(1, logins=None, last_login="2024-05-01T00:00:00Z"), account(2, logins=1)],
        )

        assert decision.user_to_keep.s_id == "s2"

    def test_full_tie_keeps_input_order(self):
        decision = decide("a@x.com", [candidate(2), candidate(1)], [account(1, logins=1), account(2, logins=1)])

        assert decision.user_to_keep.s_id == "s2"

    def test_serialises_with_downstream_key_names(self):
        decision = decide("a@x.com", [candidate(1)], [account(1)])

        data = json.loads(decision.to_json_line())

        assert set(data) >= {"email", "duplicates", "auth0Users", "userToKeep", "auth0User",
                             "action", "reason", "requiresManualReview"}
        assert data["userToKeep"]["sId"] == "s1"
        assert data["userToKeep"]["auth0Sub"] == "auth0|1"


class TestLoadCandidates:
    def test_reads_and_groups_csv(self, tmp_path):
        path = tmp_path / "duplicated_emails.csv"
        path.write_text(
            CSV_HEADER + "\n"
            "alice,a@x.com,Alice,2023-01-01,2023-01-02,google,123,TRUE,Alice,,,auth0|1,s1,1,\n"
            "alice2,a@x.com,Alice,2023-02-01,2023-02-02,,,false,Alice,,,auth0|2,s2,2,user_2\n"
            ",,,,,,,,,,,,,,\n"
            "bob,b@x.com,Bob,2023-01-01,2023-01-02,,,false,Bob,,,,s3,3,\n",
            encoding="utf-8",
        )

        groups = group_by_email(load_candidates_csv(path))

        assert [g.email for g in groups] == ["a@x.com", "b@x.com"]
        alice = groups[0].candidates[0]
        assert alice.is_super_user is True
        assert alice.last_name is None
        assert groups[0].candidates[1].workos_user_id == "user_2"
        assert groups[1].candidates[0].auth0_sub is None

    def test_bad_row_aborts_the_load(self, tmp_path):
        path = tmp_path / "duplicated_emails.csv"
        path.write_text("username,email\nalice,a@x.com\n", encoding="utf-8")

        with pytest.raises(InputError):
            load_candidates_csv(path)

    def test_missing_file_is_an_input_error(self, tmp_path):
        with pytest.raises(InputError):
            load_candidates_csv(tmp_path / "missing.csv")

    def test_database_rows(self):
        from datetime import datetime

        rows = [{
            "id": 7, "sId": "s7", "username": "u", "email": "a@x.com", "name": "U",
            "firstName": "U", "lastName": None, "imageUrl": None,
            "createdAt": datetime(2023, 1, 1), "updatedAt": datetime(2023, 1, 2),
            "provider": None, "providerId": None, "isDustSuperUser": False,
            "auth0Sub": "auth0|7", "workOSUserId": None,
        }]

        candidates = candidates_from_rows(rows)

        assert candidates[0].id == "7"
        assert candidates[0].created_at.startswith("2023-01-01")


class TestResolutionRun:
    def _groups(self):
        return group_by_email([
            candidate(1, "keep@x.com"), candidate(2, "keep@x.com"),
            candidate(3, "review@x.com"), candidate(4, "review@x.com"),
            candidate(5, "gone@x.com"),
        ])

    def _auth0(self):
        return FakeAuth0({
            "keep@x.com": [account(1)],
            "review@x.com": [account(3, logins=1), account(4, logins=8)],
        })

    @pytest.mark.asyncio
    async def test_each_group_lands_in_exactly_one_sink(self, tmp_path, runner_config, recording_sleep):
        sinks = DecisionSinks(tmp_path / "keep.jsonl", tmp_path / "review.jsonl", tmp_path / "skip.jsonl",
                              fsync=False)
        resolver = DuplicateResolver(self._auth0(), sinks)
        groups = self._groups()

        report = await BatchRunner(resolver.process, runner_config, sleep=recording_sleep).run(iter_groups(groups))
        summary_path = sinks.write_summary(len(groups))
        sinks.close()

        def emails(name):
            return [json.loads(line)["email"] for line in (tmp_path / name).read_text().splitlines()]

        assert report.completed == 3
        assert emails("keep.jsonl") == ["keep@x.com"]
        assert emails("review.jsonl") == ["review@x.com"]
        assert emails("skip.jsonl") == ["gone@x.com"]
        assert summary_path.name == "keep_summary.json"
        assert json.loads(summary_path.read_text()) == {
            "totalEmails": 3,
            "actions": {"keep": 1, "manual_review": 1, "skip": 1},
        }

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, tmp_path, runner_config, recording_sleep):
        sinks = DecisionSinks(tmp_path / "keep.jsonl", tmp_path / "review.jsonl", tmp_path / "skip.jsonl",
                              dry_run=True)
        resolver = DuplicateResolver(self._auth0(), sinks)

        await BatchRunner(resolver.process, runner_config, sleep=recording_sleep).run(iter_groups(self._groups()))

        assert sinks.write_summary(3) is None
        assert sinks.counts == {"keep": 1, "manual_review": 1, "skip": 1}
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_throttled_lookup_is_retried(self, tmp_path, runner_config, recording_sleep):
        auth0 = self._auth0()
        auth0.fail_next["search_users_by_email"] = [RateLimitError("auth0", 2)]
        sinks = DecisionSinks(tmp_path / "keep.jsonl", tmp_path / "review.jsonl", tmp_path / "skip.jsonl",
                              dry_run=True)
        resolver = DuplicateResolver(auth0, sinks)

        report = await BatchRunner(resolver.process, runner_config, sleep=recording_sleep).run(
            iter_groups(self._groups())
        )

        assert recording_sleep.delays == [3.0]
        assert report.completed == 3
        assert sum(sinks.counts.values()) == 3

    @pytest.mark.asyncio
    async def test_failed_lookup_is_recorded_as_skip(self, tmp_path, runner_config, recording_sleep):
        auth0 = self._auth0()
        auth0.fail_next["search_users_by_email"] = [IdentityServiceError("auth0", 500, "down")]
        sinks = DecisionSinks(tmp_path / "keep.jsonl", tmp_path / "review.jsonl", tmp_path / "skip.jsonl",
                              fsync=False)
        resolver = DuplicateResolver(auth0, sinks)
        groups = self._groups()
        config = replace(runner_config, concurrency=1)

        report = await BatchRunner(resolver.process, config, sleep=recording_sleep).run(iter_groups(groups))
        sinks.close()

        assert report.failed == 1
        assert sinks.counts == {"keep": 0, "manual_review": 1, "skip": 2}
        skipped = [json.loads(line) for line in (tmp_path / "skip.jsonl").read_text().splitlines()]
        assert [s["email"] for s in skipped] == ["keep@x.com", "gone@x.com"]
        assert skipped[0]["reason"].startswith("Auth0 lookup failed:")
        assert skipped[0]["userToKeep"] is None
        assert len(skipped[0]["duplicates"]) == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failures", [0, 1, 3])
    async def test_summary_actions_add_up_to_total_emails(self, tmp_path, runner_config, recording_sleep,
                                                          failures):
        auth0 = self._auth0()
        auth0.fail_next["search_users_by_email"] = [
            IdentityServiceError("auth0", 503, "unavailable") for _ in range(failures)
        ]
        sinks = DecisionSinks(tmp_path / "keep.jsonl", tmp_path / "review.jsonl", tmp_path / "skip.jsonl",
                              dry_run=True)
        resolver = DuplicateResolver(auth0, sinks)
        groups = self._groups()

        await BatchRunner(resolver.process, runner_config, sleep=recording_sleep).run(iter_groups(groups))

        summary = sinks.summary(len(groups))
        assert summary["totalEmails"] == 3
        assert sum(summary["actions"].values()) == summary["totalEmails"]
        assert sorted(d.email for d in resolver.decisions) == sorted(g.email for g in groups)
