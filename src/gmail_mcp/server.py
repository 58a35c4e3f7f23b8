"""Gmail MCP server entry point.

Runs the MCP stdio server by default. ``gmail-mcp-server auth`` runs the
one-time browser consent flow and stores the resulting credential.

Files (override with environment variables, see ``config.Settings``):
    ~/.gmail-mcp/gcp-oauth.keys.json   OAuth client keys from Google Cloud Console
    ~/.gmail-mcp/credentials.json      access/refresh token written by ``auth``
"""

import asyncio
import logging
import sys
from datetime import timedelta, timezone

from google_auth_oauthlib.flow import InstalledAppFlow

from .client import GmailClient, build_service
from .config import SCOPES, SERVER_NAME, SERVER_VERSION, Settings
from .credentials import Credential, CredentialStore, utcnow
from .dispatcher import Dispatcher
from .tokens import DEFAULT_TOKEN_LIFETIME, GoogleTokenExchanger, TokenManager
from .tools import ToolRegistry

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"


def setup_logging(level: str = "INFO", log_file: str | None = None) -> None:
    """Log to stderr (stdout carries protocol frames) and optionally to a file."""
    handlers = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)
    logging.getLogger("googleapiclient.discovery_cache").setLevel(logging.ERROR)


def build_registry(settings: Settings) -> ToolRegistry:
    store = CredentialStore(settings.credentials_path)
    if not store.exists():
        logger.warning(
            f"No credentials at {settings.credentials_path}; tool calls will fail "
            "until 'gmail-mcp-server auth' has been run"
        )
    tokens = TokenManager(
        store,
        GoogleTokenExchanger(settings.oauth_path),
        refresh_margin=timedelta(seconds=settings.refresh_margin),
    )
    client = GmailClient(build_service(), tokens, settings)
    return ToolRegistry(client)


async def open_stdio_streams(
    limit: int,
) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=limit)
    await loop.connect_read_pipe(
        lambda: asyncio.StreamReaderProtocol(reader), sys.stdin
    )
    transport, protocol = await loop.connect_write_pipe(
        asyncio.streams.FlowControlMixin, sys.stdout
    )
    writer = asyncio.StreamWriter(transport, protocol, reader, loop)
    return reader, writer


async def serve(settings: Settings) -> None:
    registry = build_registry(settings)
    reader, writer = await open_stdio_streams(settings.max_message_bytes)
    dispatcher = Dispatcher(registry, reader, writer, SERVER_NAME, SERVER_VERSION)
    logger.info(
        f"{SERVER_NAME} MCP server {SERVER_VERSION} serving {len(registry)} tools "
        "over stdio"
    )
    await dispatcher.run()


def authenticate(settings: Settings) -> Credential:
    """Run the browser consent flow and persist the resulting credential."""
    if not settings.oauth_path.exists():
        raise FileNotFoundError(
            f"OAuth keys file not found: {settings.oauth_path}. Download it from "
            "Google Cloud Console and place it in the current directory or the "
            "config directory."
        )
    flow = InstalledAppFlow.from_client_secrets_file(str(settings.oauth_path), SCOPES)
    creds = flow.run_local_server(
        port=settings.oauth_port, access_type="offline", prompt="consent"
    )
    if not creds.refresh_token:
        raise RuntimeError(
            "Google did not return a refresh token; revoke access and run auth again"
        )

    # google-auth reports expiry as a naive UTC datetime
    if creds.expiry:
        expires_at = creds.expiry.replace(tzinfo=timezone.utc)
    else:
        expires_at = utcnow() + DEFAULT_TOKEN_LIFETIME
    credential = Credential(
        access_token=creds.token,
        refresh_token=creds.refresh_token,
        expires_at=expires_at.replace(microsecond=0),
        scopes=frozenset(creds.scopes or SCOPES),
    )
    CredentialStore(settings.credentials_path).save(credential)
    logger.info(f"Credentials saved to {settings.credentials_path}")
    return credential


def main():
    try:
        settings = Settings.from_env()
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)

    setup_logging(settings.log_level, settings.log_file)
    settings.ensure_config_dir()
    if settings.find_and_copy_oauth_keys():
        logger.info(f"Copied OAuth keys to {settings.oauth_path}")

    if "auth" in sys.argv[1:]:
        try:
            authenticate(settings)
        except (OSError, RuntimeError, ValueError) as e:
            logger.error(f"Authentication failed: {e}")
            sys.exit(1)
        print("Authentication completed successfully", file=sys.stderr)
        return

    try:
        asyncio.run(serve(settings))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")


if __name__ == "__main__":
    main()
