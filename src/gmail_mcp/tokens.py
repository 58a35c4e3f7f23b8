"""Access token lifecycle: expiry checks, single-flight refresh, persistence."""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Protocol

from google.auth import exceptions as google_auth_exceptions
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials

from .credentials import EPOCH, Credential, CredentialStore, OAuthClientKeys, utcnow
from .errors import AuthError, ReauthRequired, RefreshFailed

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_LIFETIME = timedelta(hours=1)


def _retrieve_exception(task: asyncio.Task) -> None:
    # all waiters may have been cancelled
    if not task.cancelled():
        task.exception()


class TokenExchanger(Protocol):
    def exchange_refresh_token(self, refresh_token: str) -> tuple[str, datetime]: ...


class GoogleTokenExchanger:
    """Trades a refresh token for a fresh access token at Google's token endpoint."""

    def __init__(self, keys_path: Path):
        self.keys_path = Path(keys_path)

    def exchange_refresh_token(self, refresh_token: str) -> tuple[str, datetime]:
        keys = OAuthClientKeys.load(self.keys_path)
        creds = Credentials(
            token=None,
            refresh_token=refresh_token,
            token_uri=keys.token_uri,
            client_id=keys.client_id,
            client_secret=keys.client_secret,
        )
        try:
            creds.refresh(Request())
        except google_auth_exceptions.TransportError as e:
            raise RefreshFailed(f"Failed to refresh access token: {e}") from e
        except google_auth_exceptions.RefreshError as e:
            if getattr(e, "retryable", False):
                raise RefreshFailed(f"Failed to refresh access token: {e}") from e
            raise ReauthRequired(
                f"Refresh token was rejected ({e}). "
                "Run 'gmail-mcp-server auth' to authenticate again."
            ) from e

        # google-auth reports expiry as a naive UTC datetime
        if creds.expiry is None:
            expires_at = utcnow() + DEFAULT_TOKEN_LIFETIME
        else:
            expires_at = creds.expiry.replace(tzinfo=timezone.utc)
        return creds.token, expires_at.replace(microsecond=0)


class TokenManager:
    """Owns the current credential and hands out valid access tokens.

    Concurrent callers that find the token expiring share one refresh task
    instead of each calling the token endpoint. Only this class replaces the
    stored credential.
    """

    def __init__(
        self,
        store: CredentialStore,
        exchanger: TokenExchanger,
        refresh_margin: timedelta = timedelta(seconds=60),
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._exchanger = exchanger
        self._margin = refresh_margin
        self._clock = clock
        self._credential: Credential | None = None
        self._rejected_refresh_token: str | None = None
        self._lock = asyncio.Lock()
        self._refresh_task: asyncio.Task | None = None

    async def get_valid_token(self) -> str:
        async with self._lock:
            if self._credential is None:
                credential = self._store.load()
                if credential.refresh_token == self._rejected_refresh_token:
                    raise ReauthRequired(
                        "Stored refresh token was rejected by Google. "
                        "Run 'gmail-mcp-server auth' to authenticate again."
                    )
                self._credential = credential

            if not self._credential.expires_within(self._margin, self._clock()):
                return self._credential.access_token

            if self._refresh_task is None:
                self._refresh_task = asyncio.create_task(
                    self._refresh(self._credential)
                )
                self._refresh_task.add_done_callback(_retrieve_exception)
            task = self._refresh_task

        # a cancelled waiter must not cancel the shared refresh
        return await asyncio.shield(task)

    def invalidate(self, access_token: str) -> None:
        """Force a refresh on next use if ``access_token`` is still the current one."""
        current = self._credential
        if current is not None and current.access_token == access_token:
            logger.info("Access token rejected by Gmail, marking it expired")
            self._credential = current.with_access_token(access_token, EPOCH)

    async def _refresh(self, credential: Credential) -> str:
        try:
            logger.info("Access token expired or expiring soon, refreshing")
            try:
                access_token, expires_at = await asyncio.to_thread(
                    self._exchanger.exchange_refresh_token, credential.refresh_token
                )
            except ReauthRequired:
                logger.error("Refresh token rejected; re-authentication required")
                self._rejected_refresh_token = credential.refresh_token
                self._credential = None
                raise
            except AuthError as e:
                logger.warning(f"Token refresh failed: {e}")
                raise
            except Exception as e:
                logger.warning(f"Token refresh failed: {e}", exc_info=True)
                raise RefreshFailed(f"Failed to refresh access token: {e}") from e

            refreshed = credential.with_access_token(access_token, expires_at)
            self._credential = refreshed
            try:
                self._store.save(refreshed)
            except OSError:
                logger.error("Failed to persist refreshed credentials", exc_info=True)
            logger.info("Successfully refreshed access token")
            return refreshed.access_token
        finally:
            self._refresh_task = None
