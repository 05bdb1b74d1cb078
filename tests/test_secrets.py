from __future__ import annotations

import pytest

from scripts.membersync import secrets
from scripts.membersync.errors import ConfigurationError


def test_literal_values_pass_through():
    assert secrets.resolve_secret("abc-us5") == "abc-us5"
    assert not secrets.is_secret_reference("abc-us5")
    assert secrets.is_secret_reference("aws-secret://mailchimp#key")


def test_references_dispatch_to_provider(monkeypatch):
    monkeypatch.setattr(secrets, "_resolve_aws_secret", lambda ref: f"aws:{ref}")
    monkeypatch.setattr(secrets, "_resolve_gcp_secret", lambda ref: f"gcp:{ref}")

    assert secrets.resolve_secret("aws-secret://mc#api_key") == "aws:mc#api_key"
    assert secrets.resolve_secret("gcp-secret://mc-key") == "gcp:mc-key"


def test_gcp_short_name_requires_project(monkeypatch):
    pytest.importorskip("google.cloud.secretmanager")
    monkeypatch.delenv("GCP_PROJECT_ID", raising=False)

    with pytest.raises(ConfigurationError):
        secrets.resolve_secret("gcp-secret://mc-key")


def test_database_url_resolves_reference(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "aws-secret://target-db")
    monkeypatch.setattr(secrets, "_resolve_aws_secret", lambda ref: "postgresql://resolved/db")

    assert secrets.resolve_database_url() == "postgresql://resolved/db"
