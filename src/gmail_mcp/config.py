"""Runtime configuration for the Gmail MCP server.

Every setting comes from an environment variable with a sensible default, so
the server can be launched by an MCP client without a config file.
"""

import os
import shutil
from dataclasses import dataclass
from pathlib import Path

SERVER_NAME = "gmail"
SERVER_VERSION = "0.1.0"

SCOPES = [
    "https://www.googleapis.com/auth/gmail.modify",
    "https://www.googleapis.com/auth/gmail.settings.basic",
]

USER_ID = "me"

OAUTH_KEYS_FILENAME = "gcp-oauth.keys.json"
CREDENTIALS_FILENAME = "credentials.json"


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


@dataclass(frozen=True)
class Settings:
    """Resolved configuration values."""

    config_dir: Path
    oauth_path: Path
    credentials_path: Path
    oauth_port: int = 3000
    refresh_margin: float = 60.0
    batch_concurrency: int = 8
    batch_size: int = 50
    retry_max_attempts: int = 5
    retry_base_delay: float = 0.5
    retry_max_delay: float = 30.0
    http_timeout: float = 60.0
    max_message_bytes: int = 4 * 1024 * 1024
    log_level: str = "INFO"
    log_file: str | None = None

    @classmethod
    def from_env(cls) -> "Settings":
        config_dir = Path(
            os.environ.get("GMAIL_MCP_CONFIG_DIR", Path.home() / ".gmail-mcp")
        ).expanduser()
        oauth_path = Path(
            os.environ.get("GMAIL_OAUTH_PATH", config_dir / OAUTH_KEYS_FILENAME)
        ).expanduser()
        credentials_path = Path(
            os.environ.get("GMAIL_CREDENTIALS_PATH", config_dir / CREDENTIALS_FILENAME)
        ).expanduser()

        settings = cls(
            config_dir=config_dir,
            oauth_path=oauth_path,
            credentials_path=credentials_path,
            oauth_port=_env_int("GMAIL_OAUTH_PORT", 3000),
            refresh_margin=_env_float("GMAIL_TOKEN_REFRESH_MARGIN", 60.0),
            batch_concurrency=_env_int("GMAIL_BATCH_CONCURRENCY", 8),
            batch_size=_env_int("GMAIL_BATCH_SIZE", 50),
            retry_max_attempts=_env_int("GMAIL_RETRY_MAX_ATTEMPTS", 5),
            retry_base_delay=_env_float("GMAIL_RETRY_BASE_DELAY", 0.5),
            retry_max_delay=_env_float("GMAIL_RETRY_MAX_DELAY", 30.0),
            http_timeout=_env_float("GMAIL_HTTP_TIMEOUT", 60.0),
            max_message_bytes=_env_int("GMAIL_MCP_MAX_MESSAGE_BYTES", 4 * 1024 * 1024),
            log_level=os.environ.get("GMAIL_MCP_LOG_LEVEL", "INFO").upper(),
            log_file=os.environ.get("GMAIL_MCP_LOG_FILE") or None,
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        if self.batch_concurrency < 1:
            raise ValueError("GMAIL_BATCH_CONCURRENCY must be at least 1")
        if self.batch_size < 1:
            raise ValueError("GMAIL_BATCH_SIZE must be at least 1")
        if self.retry_max_attempts < 1:
            raise ValueError("GMAIL_RETRY_MAX_ATTEMPTS must be at least 1")
        if self.retry_base_delay < 0 or self.retry_max_delay < 0:
            raise ValueError("Retry delays must not be negative")

    def ensure_config_dir(self) -> None:
        self.config_dir.mkdir(parents=True, exist_ok=True)

    def find_and_copy_oauth_keys(self, cwd: Path | None = None) -> bool:
        """Copy gcp-oauth.keys.json from the working directory if none is configured."""
        local_keys = (cwd or Path.cwd()) / OAUTH_KEYS_FILENAME
        if local_keys.exists() and not self.oauth_path.exists():
            self.oauth_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(local_keys, self.oauth_path)
            return True
        return False
