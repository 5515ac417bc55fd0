"""Cloud-native secret resolution.

API keys and database passwords may be given as references into AWS
Secrets Manager or GCP Secret Manager instead of plaintext values.
"""

from __future__ import annotations

import json
import logging
import os

from scripts.migration.errors import ConfigurationError

logger = logging.getLogger("migration.secrets")

# Prefixes that indicate a cloud secret reference
_AWS_PREFIX = "aws-secret://"
_GCP_PREFIX = "gcp-secret://"


def resolve_secret(value: str) -> str:
    """Resolve a secret reference to its plaintext value.

    Supported formats:
      - "aws-secret://secret-name"         -> AWS Secrets Manager
      - "aws-secret://secret-name#key"     -> AWS Secrets Manager (JSON key)
      - "gcp-secret://project/secret/ver"  -> GCP Secret Manager
      - anything else                      -> returned as-is (env var / literal)
    """
    if value.startswith(_AWS_PREFIX):
        return _resolve_aws_secret(value[len(_AWS_PREFIX):])
    if value.startswith(_GCP_PREFIX):
        return _resolve_gcp_secret(value[len(_GCP_PREFIX):])
    return value


def _resolve_aws_secret(ref: str) -> str:
    """Fetch a secret from AWS Secrets Manager.

    ref format: "secret-name" or "secret-name#json_key"
    """
    import boto3

    secret_name, _, json_key = ref.partition("#")
    region = os.environ.get("AWS_REGION", "us-east-1")
    client = boto3.client("secretsmanager", region_name=region)

    logger.info("Resolving secret %s from AWS Secrets Manager", secret_name)
    resp = client.get_secret_value(SecretId=secret_name)
    secret_string = resp["SecretString"]

    if json_key:
        data = json.loads(secret_string)
        if json_key not in data:
            raise ConfigurationError(f"Secret {secret_name} has no key {json_key!r}")
        return str(data[json_key])
    return secret_string


def _resolve_gcp_secret(ref: str) -> str:
    """Fetch a secret from GCP Secret Manager.

    ref format: "projects/PROJECT/secrets/NAME/versions/VERSION"
             or "NAME" (project from GCP_PROJECT_ID, latest version)
    """
    if ref.startswith("projects/"):
        name = ref
    else:
        project = os.environ.get("GCP_PROJECT_ID", "")
        if not project:
            raise ConfigurationError(f"Secret reference {ref!r} needs GCP_PROJECT_ID or a full resource name")
        name = f"projects/{project}/secrets/{ref}/versions/latest"

    from google.cloud import secretmanager

    client = secretmanager.SecretManagerServiceClient()
    logger.info("Resolving secret %s from GCP Secret Manager", name)
    response = client.access_secret_version(request={"name": name})
    return response.payload.data.decode("UTF-8")


def resolve_database_url() -> str:
    """Resolve DATABASE_URL from env, with cloud secret support."""
    url = os.environ.get("DATABASE_URL", "")
    if url:
        return resolve_secret(url)

    # Fall back to PG_* variables
    host = os.environ.get("PG_HOST", "localhost")
    port = os.environ.get("PG_PORT", "5432")
    user = os.environ.get("PG_USER", "postgres")
    password = resolve_secret(os.environ.get("PG_PASSWORD", ""))
    database = os.environ.get("PG_DATABASE", "postgres")

    return f"postgresql://{user}:{password}@{host}:{port}/{database}"
