"""Error hierarchy shared by every layer of the server.

Each class carries a stable ``kind`` string that is reported to the MCP client
next to the human-readable message.
"""


class GmailMcpError(Exception):
    """Base class for all errors raised by the server."""

    kind = "Error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class AuthError(GmailMcpError):
    kind = "AuthError"


class NotAuthenticated(AuthError):
    """No stored credential; the consent flow has to be run first."""

    kind = "NotAuthenticated"


class RefreshFailed(AuthError):
    """The refresh exchange failed for a transient reason; retry later."""

    kind = "RefreshFailed"


class ReauthRequired(AuthError):
    """The refresh token was rejected; the user must authenticate again."""

    kind = "ReauthRequired"


# ---------------------------------------------------------------------------
# Gmail API
# ---------------------------------------------------------------------------


class ProviderError(GmailMcpError):
    kind = "ProviderError"

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.status is not None:
            data["status"] = self.status
        return data


class RateLimited(ProviderError):
    kind = "RateLimited"

    def __init__(
        self,
        message: str,
        status: int | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message, status)
        self.retry_after = retry_after


class Transient(ProviderError):
    kind = "Transient"


class InvalidRequest(ProviderError):
    """Bad argument, missing target, or permission denied. Never retried."""

    kind = "InvalidRequest"


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class ProtocolError(GmailMcpError):
    kind = "ProtocolError"


class Malformed(ProtocolError):
    kind = "Malformed"


class ToolNotFound(ProtocolError):
    kind = "NotFound"

    def __init__(self, name: str):
        super().__init__(f"Unknown tool: {name}")
        self.name = name


class InternalError(GmailMcpError):
    kind = "InternalError"
