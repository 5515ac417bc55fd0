"""Configuration via environment variables with cloud-native secret support.

Supports:
  - Environment variables (local dev)
  - AWS Secrets Manager (aws-secret://name#key)
  - GCP Secret Manager (gcp-secret://name)

Each service section is optional at load time. Commands ask for the
sections they need through the ``require_*`` helpers.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

from scripts.migration.errors import ConfigurationError
from scripts.migration.secrets import resolve_database_url, resolve_secret


@dataclass(frozen=True)
class DatabaseConfig:
    url: str
    min_connections: int = 1
    max_connections: int = 4


@dataclass(frozen=True)
class WorkOSConfig:
    api_key: str
    api_base_url: str = "https://api.workos.com"


@dataclass(frozen=True)
class Auth0Config:
    domain_url: str
    api_token: Optional[str] = None
    # Used for the client credentials grant when no static token is set
    client_id: Optional[str] = None
    client_secret: Optional[str] = None


@dataclass(frozen=True)
class RunnerConfig:
    concurrency: int = 10
    default_retry_after: float = 60.0
    max_rate_limit_retries: Optional[int] = None  # None = retry forever
    request_timeout: float = 30.0
    fsync: bool = True


@dataclass(frozen=True)
class MigrationConfig:
    runner: RunnerConfig = field(default_factory=RunnerConfig)
    workos: Optional[WorkOSConfig] = None
    auth0: Optional[Auth0Config] = None
    database: Optional[DatabaseConfig] = None
    output_dir: str = "out"

    def require_workos(self) -> WorkOSConfig:
        if not self.workos:
            raise ConfigurationError("WORKOS_API_KEY environment variable is required")
        return self.workos

    def require_auth0(self) -> Auth0Config:
        if not self.auth0:
            raise ConfigurationError(
                "AUTH0_TENANT_DOMAIN_URL and either AUTH0_API_TOKEN or "
                "AUTH0_M2M_CLIENT_ID/AUTH0_M2M_CLIENT_SECRET are required"
            )
        return self.auth0

    def require_database(self) -> DatabaseConfig:
        if not self.database:
            raise ConfigurationError("DATABASE_URL or PG_HOST environment variable is required")
        return self.database


def _int_env(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


def _float_env(name: str, default: float) -> float:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")


def load_config() -> MigrationConfig:
    """Load configuration from environment variables. Unconfigured services are left as None.

    In cloud environments, secrets are resolved via AWS Secrets Manager or
    GCP Secret Manager. Locally, plain env vars or .env files are used.
    """
    load_dotenv()

    concurrency = _int_env("MIGRATION_CONCURRENCY", 10)
    if concurrency < 1:
        raise ConfigurationError("MIGRATION_CONCURRENCY must be at least 1")

    runner = RunnerConfig(
        concurrency=concurrency,
        default_retry_after=_float_env("DEFAULT_RETRY_AFTER", 60.0),
        max_rate_limit_retries=_int_env("MAX_RATE_LIMIT_RETRIES", None),
        request_timeout=_float_env("HTTP_TIMEOUT_SECONDS", 30.0),
        fsync=os.environ.get("LEDGER_FSYNC", "true").lower() != "false",
    )

    # WorkOS -- key may come from a secret manager
    workos = None
    api_key_raw = os.environ.get("WORKOS_API_KEY") or os.environ.get("WORKOS_SECRET_KEY", "")
    if api_key_raw:
        workos = WorkOSConfig(
            api_key=resolve_secret(api_key_raw),
            api_base_url=os.environ.get("WORKOS_API_BASE_URL", "https://api.workos.com"),
        )

    # Auth0 -- static management token or M2M client credentials
    auth0 = None
    domain = os.environ.get("AUTH0_TENANT_DOMAIN_URL", "")
    token = os.environ.get("AUTH0_API_TOKEN", "")
    client_id = os.environ.get("AUTH0_M2M_CLIENT_ID", "")
    client_secret = os.environ.get("AUTH0_M2M_CLIENT_SECRET", "")
    if domain and (token or (client_id and client_secret)):
        if not domain.startswith(("http://", "https://")):
            domain = f"https://{domain}"
        auth0 = Auth0Config(
            domain_url=domain.rstrip("/"),
            api_token=resolve_secret(token) if token else None,
            client_id=client_id or None,
            client_secret=resolve_secret(client_secret) if client_secret else None,
        )

    # Postgres (optional) -- only used as a duplicate-candidate source
    database = None
    if os.environ.get("DATABASE_URL") or os.environ.get("PG_HOST"):
        database = DatabaseConfig(
            url=resolve_database_url(),
            min_connections=_int_env("DB_MIN_CONNECTIONS", 1),
            max_connections=_int_env("DB_MAX_CONNECTIONS", 4),
        )

    return MigrationConfig(
        runner=runner,
        workos=workos,
        auth0=auth0,
        database=database,
        output_dir=os.environ.get("MIGRATION_OUTPUT_DIR", "out"),
    )
