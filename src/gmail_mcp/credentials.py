"""Durable OAuth credential storage."""

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path

from .errors import NotAuthenticated

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Credential:
    """An OAuth2 token set for the Gmail account."""

    access_token: str
    refresh_token: str
    expires_at: datetime
    scopes: frozenset[str] = field(default_factory=frozenset)
    token_type: str = "Bearer"

    def expires_within(self, margin: timedelta, now: datetime | None = None) -> bool:
        """True when the access token expires within ``margin`` of ``now``."""
        now = now or utcnow()
        return self.expires_at - now <= margin

    def with_access_token(
        self, access_token: str, expires_at: datetime
    ) -> "Credential":
        return replace(self, access_token=access_token, expires_at=expires_at)

    def to_json(self) -> str:
        return json.dumps(
            {
                "access_token": self.access_token,
                "refresh_token": self.refresh_token,
                "token_type": self.token_type,
                "expiry_date": int(self.expires_at.timestamp()),
                "scope": " ".join(sorted(self.scopes)),
            },
            indent=2,
        )

    @classmethod
    def from_info(cls, info: dict) -> "Credential":
        expiry = info.get("expiry_date")
        if expiry is not None:
            expires_at = datetime.fromtimestamp(int(expiry), tz=timezone.utc)
        else:
            expires_at = EPOCH
        return cls(
            access_token=info["access_token"],
            refresh_token=info["refresh_token"],
            expires_at=expires_at,
            scopes=frozenset((info.get("scope") or "").split()),
            token_type=info.get("token_type") or "Bearer",
        )


class CredentialStore:
    """Loads and atomically saves the credential file."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> Credential:
        if not self.path.exists():
            raise NotAuthenticated(
                f"Credentials file not found: {self.path}. "
                "Run 'gmail-mcp-server auth' to authenticate."
            )
        try:
            info = json.loads(self.path.read_text(encoding="utf-8"))
            return Credential.from_info(info)
        except (ValueError, KeyError, TypeError) as e:
            raise NotAuthenticated(
                f"Credentials file {self.path} is unreadable ({e}). "
                "Run 'gmail-mcp-server auth' to authenticate again."
            ) from e

    def save(self, credential: Credential) -> None:
        """Write to a temp file in the same directory, then rename over the target."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(credential.to_json())
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
        logger.debug(f"Saved credentials to {self.path}")


@dataclass(frozen=True)
class OAuthClientKeys:
    """Client id/secret pair from Google's downloaded client-secret file."""

    client_id: str
    client_secret: str
    token_uri: str = "https://oauth2.googleapis.com/token"

    @classmethod
    def load(cls, path: Path) -> "OAuthClientKeys":
        path = Path(path)
        if not path.exists():
            raise NotAuthenticated(
                f"OAuth keys file not found: {path}. "
                f"Place gcp-oauth.keys.json in the current directory or {path.parent}."
            )
        data = json.loads(path.read_text(encoding="utf-8"))
        section = data.get("installed") or data.get("web")
        if not section:
            raise NotAuthenticated(
                "Invalid OAuth keys format: expected 'installed' or 'web' credentials"
            )
        return cls(
            client_id=section["client_id"],
            client_secret=section["client_secret"],
            token_uri=section.get("token_uri", cls.token_uri),
        )
