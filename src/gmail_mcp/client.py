"""Gmail API client.

Every request carries the current access token from the ``TokenManager``;
HTTP failures are mapped onto the error taxonomy in ``errors`` and transient
ones are retried with exponential backoff. Batch operations fan out per item
and report each outcome instead of failing as a whole.
"""

import asyncio
import json
import logging
import random
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any

import httplib2
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .config import USER_ID, Settings
from .errors import (
    GmailMcpError,
    InternalError,
    InvalidRequest,
    ProviderError,
    RateLimited,
    Transient,
)
from .messages import (
    EmailParams,
    build_message,
    parse_full_message,
    parse_message_summary,
)
from .tokens import TokenManager

logger = logging.getLogger(__name__)

RATE_LIMIT_REASONS = frozenset({"rateLimitExceeded", "userRateLimitExceeded"})


def build_service() -> Any:
    """Build the Gmail v1 resource from the bundled discovery document.

    No credentials are attached here; each request gets its bearer token from
    the ``TokenManager`` just before it is sent.
    """
    return build(
        "gmail",
        "v1",
        http=httplib2.Http(),
        cache_discovery=False,
        static_discovery=True,
    )


# ---------------------------------------------------------------------------
# Batch results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BatchItemResult:
    target_id: str
    error: GmailMcpError | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class BatchReport:
    """Per-item outcome of a batch operation, in the caller's order."""

    succeeded: tuple[str, ...]
    failed: tuple[tuple[str, GmailMcpError], ...]

    @classmethod
    def from_results(cls, results: Sequence[BatchItemResult]) -> "BatchReport":
        return cls(
            succeeded=tuple(r.target_id for r in results if r.succeeded),
            failed=tuple((r.target_id, r.error) for r in results if not r.succeeded),
        )

    def to_dict(self) -> dict:
        return {
            "successCount": len(self.succeeded),
            "failureCount": len(self.failed),
            "succeeded": list(self.succeeded),
            "failed": [
                {"id": target_id, **error.to_dict()} for target_id, error in self.failed
            ],
        }


# ---------------------------------------------------------------------------
# HTTP error mapping
# ---------------------------------------------------------------------------


def _error_payload(exc: HttpError) -> dict:
    try:
        data = json.loads(exc.content.decode("utf-8"))
    except (ValueError, AttributeError):
        return {}
    if isinstance(data, dict) and isinstance(data.get("error"), dict):
        return data["error"]
    return {}


def _error_reasons(exc: HttpError) -> set[str]:
    payload = _error_payload(exc)
    reasons = set()
    for key in ("errors", "details"):
        for item in payload.get(key) or []:
            if isinstance(item, dict) and item.get("reason"):
                reasons.add(item["reason"])
    return reasons


def _error_message(exc: HttpError) -> str:
    return _error_payload(exc).get("message") or exc.reason or str(exc)


def _retry_after(exc: HttpError) -> float | None:
    value = exc.resp.get("retry-after")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def classify_http_error(exc: HttpError, target: str | None = None) -> ProviderError:
    """Map a Gmail HTTP error onto a ``ProviderError`` subclass.

    401/403 responses without a rate-limit reason are handled by the caller
    before this is reached.
    """
    status = exc.resp.status
    message = _error_message(exc)
    if status == 429 or _error_reasons(exc) & RATE_LIMIT_REASONS:
        return RateLimited(
            f"Rate limited by Gmail: {message}", status, _retry_after(exc)
        )
    if status >= 500:
        return Transient(f"Gmail server error ({status}): {message}", status)
    if status == 404 and target:
        return InvalidRequest(f"{target} not found", status)
    return InvalidRequest(f"Gmail API request failed ({status}): {message}", status)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class GmailClient:
    """Executes Gmail operations on behalf of the tool handlers."""

    def __init__(
        self,
        service: Any,
        tokens: TokenManager,
        settings: Settings,
        http_factory: Callable[[], Any] | None = None,
    ):
        self._service = service
        self._tokens = tokens
        self._settings = settings
        self._http_factory = http_factory or (
            lambda: httplib2.Http(timeout=settings.http_timeout)
        )

    async def _execute(
        self, build_request: Callable[[Any], Any], target: str | None = None
    ) -> Any:
        auth_retried = False
        attempt = 1
        while True:
            token = await self._tokens.get_valid_token()
            request = build_request(self._service.users())
            request.headers["authorization"] = f"Bearer {token}"
            try:
                # one httplib2.Http per call; it is not thread-safe
                return await asyncio.to_thread(
                    request.execute, http=self._http_factory()
                )
            except HttpError as e:
                status = e.resp.status
                if status in (401, 403) and not _error_reasons(e) & RATE_LIMIT_REASONS:
                    if not auth_retried:
                        auth_retried = True
                        if status == 401:
                            self._tokens.invalidate(token)
                        logger.info(f"Gmail returned {status}, retrying once")
                        continue
                    raise InvalidRequest(
                        f"Permission denied by Gmail ({status}): {_error_message(e)}",
                        status,
                    ) from e
                error = classify_http_error(e, target)
                if not isinstance(error, (RateLimited, Transient)):
                    raise error from e
            except (TimeoutError, OSError, httplib2.HttpLib2Error) as e:
                error = Transient(f"Network error talking to Gmail: {e}")
                error.__cause__ = e

            if attempt >= self._settings.retry_max_attempts:
                logger.warning(f"Giving up after {attempt} attempts: {error}")
                raise error
            delay = self._backoff_delay(attempt, error)
            logger.warning(
                f"{error.kind} (attempt {attempt}), retrying in {delay:.2f}s"
            )
            await asyncio.sleep(delay)
            attempt += 1

    def _backoff_delay(self, attempt: int, error: ProviderError) -> float:
        settings = self._settings
        delay = min(
            settings.retry_max_delay, settings.retry_base_delay * 2 ** (attempt - 1)
        )
        delay = delay / 2 + random.uniform(0, delay / 2)
        retry_after = getattr(error, "retry_after", None)
        if retry_after is not None:
            delay = max(delay, min(retry_after, settings.retry_max_delay))
        return delay

    async def _gather_bounded(
        self, items: Sequence[str], fn: Callable[[str], Awaitable[Any]]
    ) -> list[Any]:
        semaphore = asyncio.Semaphore(self._settings.batch_concurrency)

        async def run(item: str) -> Any:
            async with semaphore:
                return await fn(item)

        return await asyncio.gather(
            *(run(item) for item in items), return_exceptions=True
        )

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def send_message(self, params: EmailParams) -> dict:
        body = await asyncio.to_thread(build_message, params)
        return await self._execute(
            lambda users: users.messages().send(userId=USER_ID, body=body)
        )

    async def create_draft(self, params: EmailParams) -> dict:
        body = await asyncio.to_thread(build_message, params)
        return await self._execute(
            lambda users: users.drafts().create(userId=USER_ID, body={"message": body})
        )

    async def get_message(
        self,
        message_id: str,
        format: str = "full",
        metadata_headers: list[str] | None = None,
    ) -> dict:
        kwargs = {"userId": USER_ID, "id": message_id, "format": format}
        if metadata_headers:
            kwargs["metadataHeaders"] = metadata_headers
        return await self._execute(
            lambda users: users.messages().get(**kwargs),
            target=f"Message {message_id}",
        )

    async def read_message(self, message_id: str) -> dict:
        return parse_full_message(await self.get_message(message_id))

    async def search_messages(self, query: str, max_results: int = 10) -> list[dict]:
        response = await self._execute(
            lambda users: users.messages().list(
                userId=USER_ID, q=query, maxResults=min(max(1, max_results), 500)
            )
        )
        ids = [stub["id"] for stub in response.get("messages", [])]

        async def fetch(message_id: str) -> dict:
            msg = await self.get_message(
                message_id,
                format="metadata",
                metadata_headers=["Subject", "From", "Date"],
            )
            return parse_message_summary(msg)

        results = []
        for message_id, outcome in zip(ids, await self._gather_bounded(ids, fetch)):
            if isinstance(outcome, ProviderError):
                logger.warning(f"Skipping search result {message_id}: {outcome}")
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                results.append(outcome)
        return results

    async def modify_message(
        self,
        message_id: str,
        add_label_ids: list[str] | None = None,
        remove_label_ids: list[str] | None = None,
    ) -> dict:
        body = _modify_body(add_label_ids, remove_label_ids)
        return await self._execute(
            lambda users: users.messages().modify(
                userId=USER_ID, id=message_id, body=body
            ),
            target=f"Message {message_id}",
        )

    async def trash_message(self, message_id: str) -> dict:
        # gmail.modify cannot delete permanently; trash is purged after 30 days
        return await self._execute(
            lambda users: users.messages().trash(userId=USER_ID, id=message_id),
            target=f"Message {message_id}",
        )

    async def get_attachment(self, message_id: str, attachment_id: str) -> dict:
        return await self._execute(
            lambda users: users.messages()
            .attachments()
            .get(userId=USER_ID, messageId=message_id, id=attachment_id),
            target=f"Attachment {attachment_id}",
        )

    # ------------------------------------------------------------------
    # Batch operations
    # ------------------------------------------------------------------

    async def _run_batch(
        self,
        message_ids: Sequence[str],
        operation: Callable[[str], Awaitable[Any]],
        batch_size: int | None,
    ) -> BatchReport:
        # Any AuthError here replaces the whole report
        await self._tokens.get_valid_token()

        size = batch_size or self._settings.batch_size
        total = len(message_ids)
        results = []
        for start in range(0, total, size):
            chunk = list(message_ids[start : start + size])
            logger.debug(f"Batch items {start + 1}-{start + len(chunk)} of {total}")
            outcomes = await self._gather_bounded(chunk, operation)
            for target_id, outcome in zip(chunk, outcomes):
                if isinstance(outcome, GmailMcpError):
                    results.append(BatchItemResult(target_id, outcome))
                elif isinstance(outcome, Exception):
                    logger.error(
                        f"Unexpected error for batch item {target_id}",
                        exc_info=outcome,
                    )
                    error = InternalError(str(outcome))
                    results.append(BatchItemResult(target_id, error))
                elif isinstance(outcome, BaseException):
                    raise outcome
                else:
                    results.append(BatchItemResult(target_id))
        return BatchReport.from_results(results)

    async def batch_modify_messages(
        self,
        message_ids: Sequence[str],
        add_label_ids: list[str] | None = None,
        remove_label_ids: list[str] | None = None,
        batch_size: int | None = None,
    ) -> BatchReport:
        _modify_body(add_label_ids, remove_label_ids)
        return await self._run_batch(
            message_ids,
            lambda message_id: self.modify_message(
                message_id, add_label_ids, remove_label_ids
            ),
            batch_size,
        )

    async def batch_delete_messages(
        self, message_ids: Sequence[str], batch_size: int | None = None
    ) -> BatchReport:
        return await self._run_batch(message_ids, self.trash_message, batch_size)

    # ------------------------------------------------------------------
    # Labels
    # ------------------------------------------------------------------

    async def list_labels(self) -> list[dict]:
        response = await self._execute(
            lambda users: users.labels().list(userId=USER_ID)
        )
        return response.get("labels", [])

    async def get_label(self, label_id: str) -> dict:
        return await self._execute(
            lambda users: users.labels().get(userId=USER_ID, id=label_id),
            target=f"Label {label_id}",
        )

    async def create_label(
        self,
        name: str,
        message_list_visibility: str | None = None,
        label_list_visibility: str | None = None,
    ) -> dict:
        body = {
            "name": name,
            "messageListVisibility": message_list_visibility or "show",
            "labelListVisibility": label_list_visibility or "labelShow",
        }
        try:
            return await self._execute(
                lambda users: users.labels().create(userId=USER_ID, body=body)
            )
        except InvalidRequest as e:
            if e.status == 409 or "exists" in e.message:
                raise InvalidRequest(f"Label already exists: {name}", e.status) from e
            raise

    async def update_label(self, label_id: str, updates: dict) -> dict:
        body = {k: v for k, v in updates.items() if v is not None}
        if not body:
            raise InvalidRequest("Provide at least one field to update")
        return await self._execute(
            lambda users: users.labels().patch(userId=USER_ID, id=label_id, body=body),
            target=f"Label {label_id}",
        )

    async def delete_label(self, label_id: str) -> None:
        label = await self.get_label(label_id)
        if label.get("type") == "system":
            raise InvalidRequest(f"Cannot delete system label: {label_id}")
        await self._execute(
            lambda users: users.labels().delete(userId=USER_ID, id=label_id),
            target=f"Label {label_id}",
        )

    async def find_label_by_name(self, name: str) -> dict | None:
        wanted = name.lower()
        for label in await self.list_labels():
            if label.get("name", "").lower() == wanted:
                return label
        return None

    async def get_or_create_label(
        self,
        name: str,
        message_list_visibility: str | None = None,
        label_list_visibility: str | None = None,
    ) -> tuple[dict, bool]:
        """Return ``(label, created)``."""
        existing = await self.find_label_by_name(name)
        if existing is not None:
            return existing, False
        label = await self.create_label(
            name, message_list_visibility, label_list_visibility
        )
        return label, True

    # ------------------------------------------------------------------
    # Filters
    # ------------------------------------------------------------------

    async def list_filters(self) -> list[dict]:
        response = await self._execute(
            lambda users: users.settings().filters().list(userId=USER_ID)
        )
        # Gmail answers {} when the account has no filters
        return (response or {}).get("filter", [])

    async def get_filter(self, filter_id: str) -> dict:
        return await self._execute(
            lambda users: users.settings().filters().get(userId=USER_ID, id=filter_id),
            target=f"Filter {filter_id}",
        )

    async def create_filter(self, criteria: dict, action: dict) -> dict:
        if not criteria:
            raise InvalidRequest("Invalid filter criteria: at least one is required")
        if not action:
            raise InvalidRequest("Invalid filter action: at least one is required")
        body = {"criteria": criteria, "action": action}
        try:
            return await self._execute(
                lambda users: users.settings()
                .filters()
                .create(userId=USER_ID, body=body)
            )
        except InvalidRequest as e:
            if e.status == 400:
                raise InvalidRequest(
                    f"Invalid filter criteria: {e.message}", e.status
                ) from e
            raise

    async def delete_filter(self, filter_id: str) -> None:
        await self._execute(
            lambda users: users.settings()
            .filters()
            .delete(userId=USER_ID, id=filter_id),
            target=f"Filter {filter_id}",
        )


def _modify_body(
    add_label_ids: list[str] | None, remove_label_ids: list[str] | None
) -> dict:
    body = {}
    if add_label_ids:
        body["addLabelIds"] = add_label_ids
    if remove_label_ids:
        body["removeLabelIds"] = remove_label_ids
    if not body:
        raise InvalidRequest("Provide at least one of addLabelIds or removeLabelIds")
    return body
