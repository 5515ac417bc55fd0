"""CLI entry point: migrate, backfill-auth0, migrate-passwords, resolve-duplicates, status."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from dataclasses import replace
from pathlib import Path

from scripts.migration.config import MigrationConfig, RunnerConfig, load_config
from scripts.migration.errors import ConfigurationError, FatalError, InputError
from scripts.migration.logging_config import configure_logging
from scripts.migration.runner import BatchRunner, RunReport

logger = logging.getLogger("migration.cli")


def _out(config: MigrationConfig, name: str) -> str:
    return str(Path(config.output_dir) / name)


def _finish(command: str, report: RunReport) -> None:
    logger.info("%s finished: %s", command, report.as_dict(), extra={"command": command})
    print(report.summary())


def _require_file(path: str | os.PathLike, what: str) -> Path:
    path = Path(path)
    if not path.is_file():
        raise InputError(f"{what} not found: {path}")
    return path


def cmd_migrate(args: argparse.Namespace) -> None:
    """Create or update a WorkOS user for every exported Auth0 user."""
    from scripts.migration.clients.workos import WorkOSClient
    from scripts.migration.ledger import ResultLedger
    from scripts.migration.migrator import UserMigrator
    from scripts.migration.models import Auth0ExportedUser
    from scripts.migration.reader import RecordStream

    config = load_config()
    runner_config = _runner_config(config, args)
    workos_config = config.require_workos()
    export_path = _require_file(args.user_export, "User export")
    workos = WorkOSClient(workos_config, timeout=runner_config.request_timeout)
    results_path = args.results_file or _out(config, "migration-results.jsonl")

    logger.info("Importing users from %s", export_path, extra={"command": "migrate"})
    stream = RecordStream(export_path, Auth0ExportedUser, skip=args.skip)
    try:
        with ResultLedger(results_path, fsync=runner_config.fsync) as ledger:
            migrator = UserMigrator(workos, ledger)
            report = asyncio.run(BatchRunner(migrator.process, runner_config).run(stream))
    finally:
        workos.close()
    _finish("migrate", report)


def cmd_backfill_auth0(args: argparse.Namespace) -> None:
    """Replay the Result Ledger into Auth0 app_metadata.workos_user_id."""
    from scripts.migration.clients.auth0 import Auth0Client
    from scripts.migration.migrator import Auth0Backfiller
    from scripts.migration.models import MigrationResult
    from scripts.migration.reader import RecordStream

    config = load_config()
    runner_config = _runner_config(config, args)
    auth0_config = config.require_auth0()
    results_path = _require_file(args.results_file or _out(config, "migration-results.jsonl"), "Result Ledger")
    auth0 = Auth0Client(auth0_config, timeout=runner_config.request_timeout)

    logger.info("Adding WorkOS user ids to Auth0 users from %s", results_path,
                extra={"command": "backfill-auth0"})
    stream = RecordStream(results_path, MigrationResult, skip=args.skip)
    try:
        backfiller = Auth0Backfiller(auth0)
        report = asyncio.run(BatchRunner(backfiller.process, runner_config).run(stream))
    finally:
        auth0.close()
    _finish("backfill-auth0", report)


def cmd_migrate_passwords(args: argparse.Namespace) -> None:
    """Import bcrypt password hashes from an Auth0 password export."""
    from scripts.migration.clients.auth0 import Auth0Client
    from scripts.migration.clients.workos import WorkOSClient
    from scripts.migration.migrator import PasswordImporter
    from scripts.migration.models import Auth0PasswordRecord
    from scripts.migration.reader import RecordStream

    config = load_config()
    runner_config = _runner_config(config, args)
    workos_config = config.require_workos()
    auth0_config = config.require_auth0()
    export_path = _require_file(args.password_export, "Password export")
    workos = WorkOSClient(workos_config, timeout=runner_config.request_timeout)
    auth0 = Auth0Client(auth0_config, timeout=runner_config.request_timeout)

    logger.info("Importing password hashes from %s", export_path,
                extra={"command": "migrate-passwords"})
    stream = RecordStream(export_path, Auth0PasswordRecord, skip=args.skip)
    try:
        importer = PasswordImporter(workos, auth0)
        report = asyncio.run(BatchRunner(importer.process, runner_config).run(stream))
    finally:
        workos.close()
        auth0.close()
    _finish("migrate-passwords", report)


def cmd_resolve_duplicates(args: argparse.Namespace) -> None:
    """Decide which of several accounts sharing an email to keep."""
    from scripts.migration.clients.auth0 import Auth0Client
    from scripts.migration.duplicates import (
        DecisionSinks,
        DuplicateResolver,
        candidates_from_rows,
        group_by_email,
        iter_groups,
        load_candidates_csv,
    )

    config = load_config()
    runner_config = _runner_config(config, args)
    auth0 = Auth0Client(config.require_auth0(), timeout=runner_config.request_timeout)

    if args.from_database:
        from scripts.migration.db import Database

        db = Database(config.require_database())
        try:
            candidates = candidates_from_rows(db.fetch_duplicate_users())
        finally:
            db.close()
    else:
        logger.info("Reading duplicate users from %s", args.csv_file,
                    extra={"command": "resolve-duplicates"})
        candidates = load_candidates_csv(args.csv_file)

    groups = group_by_email(candidates)
    logger.info("Found %d unique emails with duplicates", len(groups),
                extra={"command": "resolve-duplicates"})

    sinks = DecisionSinks(
        keep=args.output_file or _out(config, "users_to_keep.jsonl"),
        manual_review=args.manual_review_file or _out(config, "manual_review.jsonl"),
        skip=args.skipped_file or _out(config, "skipped_users.jsonl"),
        dry_run=args.dry_run,
        fsync=runner_config.fsync,
    )
    try:
        resolver = DuplicateResolver(auth0, sinks)
        runner = BatchRunner(resolver.process, runner_config, pace_every=args.rate_limit_threshold)
        report = asyncio.run(runner.run(iter_groups(groups)))
        summary_path = sinks.write_summary(len(groups))
    finally:
        sinks.close()
        auth0.close()

    summary = sinks.summary(len(groups))
    print("=== PROCESSING SUMMARY ===")
    print(f"Total duplicate email groups processed: {summary['totalEmails']}")
    print(f"Users to keep (single match): {summary['actions']['keep']}")
    print(f"Manual review required (multiple matches): {summary['actions']['manual_review']}")
    print(f"Skipped (deleted from Auth0 or lookup failed): {summary['actions']['skip']}")
    if report.failed:
        print(f"Auth0 lookup failures (recorded as skip): {report.failed}")
    if summary_path is not None:
        print(f"Summary written to {summary_path}")


def cmd_status(args: argparse.Namespace) -> None:
    """Show Result Ledger counts for choosing a --skip offset."""
    from scripts.migration.ledger import summarise_ledger

    path = args.results_file or os.path.join(os.environ.get("MIGRATION_OUTPUT_DIR", "out"),
                                             "migration-results.jsonl")
    counts = summarise_ledger(path)
    fmt = "{:<10}  {:>10}"
    print(fmt.format("OUTCOME", "COUNT"))
    print("-" * 22)
    for key in ("created", "updated", "invalid", "lines"):
        print(fmt.format(key, counts[key]))
    print(
        f"\n{counts['lines']} users confirmed in {path}. Completions are unordered, "
        "so verify against the export before passing a --skip value."
    )


def _runner_config(config: MigrationConfig, args: argparse.Namespace) -> RunnerConfig:
    runner = config.runner
    if getattr(args, "concurrency", None) is not None:
        if args.concurrency < 1:
            raise ConfigurationError("--concurrency must be at least 1")
        runner = replace(runner, concurrency=args.concurrency)
    if getattr(args, "default_retry_after", None) is not None:
        runner = replace(runner, default_retry_after=args.default_retry_after)
    return runner


def _add_runner_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--concurrency", "-c",
        type=int,
        default=None,
        help="Maximum concurrent API requests (default: MIGRATION_CONCURRENCY or 10)",
    )
    parser.add_argument(
        "--default-retry-after",
        type=float,
        default=None,
        help="Seconds to pause when a 429 carries no retry hint",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="user-migration",
        description="Auth0 to WorkOS user migration",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # migrate command
    migrate_parser = subparsers.add_parser("migrate", help="Migrate exported Auth0 users to WorkOS")
    migrate_parser.add_argument(
        "--user-export",
        default="out/users.jsonl",
        help="Path to the user export created by the Auth0 export job (.jsonl or .jsonl.gz)",
    )
    migrate_parser.add_argument("--skip", type=int, default=0, help="Number of users to skip")
    migrate_parser.add_argument("--results-file", default=None, help="Result Ledger path")
    _add_runner_options(migrate_parser)
    migrate_parser.set_defaults(func=cmd_migrate)

    # backfill-auth0 command
    backfill_parser = subparsers.add_parser(
        "backfill-auth0", help="Write WorkOS user ids into Auth0 app_metadata"
    )
    backfill_parser.add_argument("--results-file", default=None, help="Result Ledger path")
    backfill_parser.add_argument("--skip", type=int, default=0, help="Number of lines to skip")
    _add_runner_options(backfill_parser)
    backfill_parser.set_defaults(func=cmd_backfill_auth0)

    # migrate-passwords command
    passwords_parser = subparsers.add_parser(
        "migrate-passwords", help="Import password hashes into WorkOS"
    )
    passwords_parser.add_argument(
        "--password-export",
        required=True,
        help="Path to the password export received from Auth0 support",
    )
    passwords_parser.add_argument("--skip", type=int, default=0, help="Number of records to skip")
    _add_runner_options(passwords_parser)
    passwords_parser.set_defaults(func=cmd_migrate_passwords)

    # resolve-duplicates command
    resolve_parser = subparsers.add_parser(
        "resolve-duplicates", help="Resolve local accounts that share an email"
    )
    source = resolve_parser.add_mutually_exclusive_group()
    source.add_argument(
        "--csv-file",
        default="duplicated_emails.csv",
        help="CSV file containing duplicate users",
    )
    source.add_argument(
        "--from-database",
        action="store_true",
        help="Read users sharing an email from Postgres (DATABASE_URL)",
    )
    resolve_parser.add_argument("--output-file", default=None, help="Users to keep (JSONL)")
    resolve_parser.add_argument("--manual-review-file", default=None, help="Manual review cases (JSONL)")
    resolve_parser.add_argument("--skipped-file", default=None, help="Skipped groups (JSONL)")
    resolve_parser.add_argument(
        "--rate-limit-threshold",
        type=int,
        default=3,
        help="Pause one second after this many email groups (0 disables)",
    )
    resolve_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Don't write output files, just log results",
    )
    _add_runner_options(resolve_parser)
    resolve_parser.set_defaults(func=cmd_resolve_duplicates)

    # status command
    status_parser = subparsers.add_parser("status", help="Summarise a Result Ledger")
    status_parser.add_argument("--results-file", default=None, help="Result Ledger path")
    status_parser.set_defaults(func=cmd_status)

    return parser


def main(argv: list[str] | None = None) -> None:
    """Main CLI entry point."""
    configure_logging(os.environ.get("LOG_LEVEL", "INFO"))

    args = build_parser().parse_args(argv)
    try:
        args.func(args)
    except FatalError as exc:
        logger.error("Run aborted: %s", exc, extra={"command": args.command})
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
