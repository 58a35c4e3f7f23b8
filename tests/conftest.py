import json
import threading
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import httplib2
import pytest
from googleapiclient.errors import HttpError

from gmail_mcp.client import GmailClient
from gmail_mcp.config import Settings
from gmail_mcp.credentials import Credential, CredentialStore

NOW = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def http_error(status, message="error", reason=None, headers=None):
    """Build the HttpError googleapiclient raises for a Gmail error response."""
    resp = httplib2.Response({"status": status, **(headers or {})})
    error = {"code": status, "message": message}
    if reason:
        error["errors"] = [{"reason": reason, "message": message}]
    return HttpError(resp, json.dumps({"error": error}).encode("utf-8"))


class FakeRequest:
    """Stands in for a googleapiclient HttpRequest, one outcome per execute()."""

    def __init__(self, *outcomes):
        self.headers = {}
        self.outcomes = list(outcomes)
        self.calls = 0
        self.auth_headers = []

    def execute(self, http=None, num_retries=0):
        self.calls += 1
        self.auth_headers.append(self.headers.get("authorization"))
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class FakeExchanger:
    """Token endpoint double; thread-safe because the manager calls it via to_thread."""

    def __init__(self, result=None, error=None, delay=0.0):
        self.result = result or ("fresh-token", NOW + timedelta(hours=1))
        self.error = error
        self.delay = delay
        self.calls = 0
        self._lock = threading.Lock()

    def exchange_refresh_token(self, refresh_token):
        with self._lock:
            self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def settings(tmp_path):
    return Settings(
        config_dir=tmp_path,
        oauth_path=tmp_path / "gcp-oauth.keys.json",
        credentials_path=tmp_path / "credentials.json",
        batch_concurrency=4,
        batch_size=50,
        retry_max_attempts=3,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
    )


@pytest.fixture
def store(settings):
    return CredentialStore(settings.credentials_path)


def make_credential(
    expires_at=NOW + timedelta(hours=1),
    access_token="stored-token",
    refresh_token="refresh-1",
):
    return Credential(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=expires_at,
        scopes=frozenset({"https://www.googleapis.com/auth/gmail.modify"}),
    )


@pytest.fixture
def tokens():
    tokens = MagicMock()
    tokens.get_valid_token = AsyncMock(return_value="token-1")
    return tokens


@pytest.fixture
def service():
    return MagicMock()


@pytest.fixture
def client(service, tokens, settings):
    return GmailClient(service, tokens, settings, http_factory=lambda: None)
