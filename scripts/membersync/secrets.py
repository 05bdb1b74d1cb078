"""Secret reference resolution for database URLs and Mailchimp API keys.

Values may be stored directly in the environment or as references into a
cloud secret manager:

  - "aws-secret://secret-name"         -> AWS Secrets Manager
  - "aws-secret://secret-name#key"     -> AWS Secrets Manager (JSON key)
  - "gcp-secret://NAME"                -> GCP Secret Manager, latest version
  - "gcp-secret://projects/P/secrets/NAME/versions/V"
"""

from __future__ import annotations

import json
import logging
import os
from urllib.parse import quote

from scripts.membersync.errors import ConfigurationError

logger = logging.getLogger("membersync.secrets")

_AWS_PREFIX = "aws-secret://"
_GCP_PREFIX = "gcp-secret://"


def is_secret_reference(value: str) -> bool:
    return value.startswith((_AWS_PREFIX, _GCP_PREFIX))


def resolve_secret(value: str) -> str:
    """Resolve a secret reference to its plaintext value; literals pass through."""
    if value.startswith(_AWS_PREFIX):
        return _resolve_aws_secret(value[len(_AWS_PREFIX):])
    if value.startswith(_GCP_PREFIX):
        return _resolve_gcp_secret(value[len(_GCP_PREFIX):])
    return value


def _resolve_aws_secret(ref: str) -> str:
    import boto3

    secret_name, _, json_key = ref.partition("#")
    region = os.environ.get("AWS_REGION", "us-east-1")
    client = boto3.client("secretsmanager", region_name=region)

    logger.debug("Resolving AWS secret %s", secret_name)
    secret_string = client.get_secret_value(SecretId=secret_name)["SecretString"]
    if json_key:
        return str(json.loads(secret_string)[json_key])
    return secret_string


def _resolve_gcp_secret(ref: str) -> str:
    from google.cloud import secretmanager

    if ref.startswith("projects/"):
        name = ref
    else:
        project = os.environ.get("GCP_PROJECT_ID", "")
        if not project:
            raise ConfigurationError(
                f"GCP_PROJECT_ID is required to resolve secret {ref!r}"
            )
        name = f"projects/{project}/secrets/{ref}/versions/latest"

    logger.debug("Resolving GCP secret %s", name)
    client = secretmanager.SecretManagerServiceClient()
    response = client.access_secret_version(request={"name": name})
    return response.payload.data.decode("UTF-8")


def resolve_database_url() -> str:
    """Target PostgreSQL URL from DATABASE_URL, falling back to PG_* variables."""
    url = os.environ.get("DATABASE_URL", "")
    if url:
        return resolve_secret(url)

    host = os.environ.get("PG_HOST", "localhost")
    port = os.environ.get("PG_PORT", "5432")
    user = os.environ.get("PG_USER", "membersync")
    password = resolve_secret(os.environ.get("PG_PASSWORD", "localdev-change-me"))
    database = os.environ.get("PG_DATABASE", "membersync")
    return f"postgresql://{user}:{quote(password, safe='')}@{host}:{port}/{database}"


def resolve_source_url() -> str:
    """Source MySQL URL from SOURCE_DATABASE_URL, falling back to SOURCE_DB_*."""
    url = os.environ.get("SOURCE_DATABASE_URL", "")
    if url:
        return resolve_secret(url)

    host = os.environ.get("SOURCE_DB_HOST", "localhost")
    port = os.environ.get("SOURCE_DB_PORT", "3306")
    user = os.environ.get("SOURCE_DB_USER", "readonly")
    password = resolve_secret(os.environ.get("SOURCE_DB_PASSWORD", ""))
    database = os.environ.get("SOURCE_DB_NAME", "drupal")
    return f"mysql://{user}:{quote(password, safe='')}@{host}:{port}/{database}"
