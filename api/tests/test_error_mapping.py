"""Tests for the domain-error to HTTP-status mapping."""

from __future__ import annotations

import pytest
from did_engine.errors import (
    AssignmentAfterDebitFailed,
    ByonError,
    DidEngineError,
    DidNotAvailable,
    DidNotFound,
    DidNotOwned,
    DidTakenAfterDebit,
    InsufficientBalance,
    InvalidAmount,
    WebhookAuthenticationError,
)

from api.config import APISettings
from api.main import status_for


@pytest.mark.parametrize(
    ("exc", "status"),
    [
        (InvalidAmount("bad"), 400),
        (InsufficientBalance("7.48", "1.00"), 402),
        (DidNotOwned("mine"), 403),
        (DidNotFound("gone"), 404),
        (DidNotAvailable("taken"), 409),
        (AssignmentAfterDebitFailed("ledger ok, inventory down"), 502),
        (DidTakenAfterDebit("lost race"), 409),
        (WebhookAuthenticationError("bad sig"), 401),
        (ByonError(ByonError.DAILY_LIMIT_EXCEEDED, "slow down"), 429),
        (DidEngineError("unclassified"), 500),
    ],
)
def test_status_for(exc: DidEngineError, status: int) -> None:
    assert status_for(exc) == status


def test_settings_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("API_DATABASE_URL", "sqlite+aiosqlite:///did.db")
    monkeypatch.setenv("API_WEBHOOK_SECRET", "whsec_env")
    monkeypatch.setenv("API_BYON_DEFAULT_LIMIT", "3")

    settings = APISettings(_env_file=None)

    assert settings.database_url == "sqlite+aiosqlite:///did.db"
    assert settings.webhook_secret.get_secret_value() == "whsec_env"
    assert settings.byon_default_limit == 3
    assert "whsec_env" not in repr(settings)


def test_wildcard_origin_with_credentials_is_rejected() -> None:
    with pytest.raises(ValueError, match="wildcard"):
        APISettings(_env_file=None, cors_origins=["*"], cors_allow_credentials=True)
