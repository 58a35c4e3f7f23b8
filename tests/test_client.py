import asyncio
import base64
import dataclasses
from unittest.mock import AsyncMock

import httplib2
import pytest

from gmail_mcp.client import BatchReport, classify_http_error
from gmail_mcp.errors import (
    InternalError,
    InvalidRequest,
    NotAuthenticated,
    RateLimited,
    ReauthRequired,
    Transient,
)
from gmail_mcp.messages import EmailParams

from .conftest import FakeRequest, http_error


def messages(service):
    return service.users.return_value.messages.return_value


def labels(service):
    return service.users.return_value.labels.return_value


def filters(service):
    return service.users.return_value.settings.return_value.filters.return_value


# ---------------------------------------------------------------------------
# Request execution policy
# ---------------------------------------------------------------------------


async def test_request_carries_bearer_token(client, service):
    request = FakeRequest({"id": "m1", "threadId": "t1"})
    messages(service).get.return_value = request

    result = await client.get_message("m1")

    assert result["id"] == "m1"
    assert request.auth_headers == ["Bearer token-1"]
    messages(service).get.assert_called_with(userId="me", id="m1", format="full")


async def test_auth_error_makes_no_provider_call(client, service, tokens):
    tokens.get_valid_token = AsyncMock(side_effect=NotAuthenticated("no credentials"))
    with pytest.raises(NotAuthenticated):
        await client.list_labels()
    service.users.assert_not_called()


async def test_401_invalidates_and_retries_once(client, service, tokens):
    tokens.get_valid_token = AsyncMock(side_effect=["old-token", "new-token"])
    request = FakeRequest(http_error(401, "Invalid Credentials"), {"labels": []})
    labels(service).list.return_value = request

    assert await client.list_labels() == []
    tokens.invalidate.assert_called_once_with("old-token")
    assert request.auth_headers == ["Bearer old-token", "Bearer new-token"]


async def test_second_401_is_permission_denied(client, service):
    request = FakeRequest(http_error(401, "Invalid Credentials"))
    labels(service).list.return_value = request

    with pytest.raises(InvalidRequest, match="Permission denied"):
        await client.list_labels()
    assert request.calls == 2


async def test_403_retried_once_without_invalidate(client, service, tokens):
    request = FakeRequest(http_error(403, "Insufficient Permission"), {"labels": []})
    labels(service).list.return_value = request

    assert await client.list_labels() == []
    tokens.invalidate.assert_not_called()
    assert request.calls == 2


async def test_rate_limit_backs_off_until_success(client, service):
    request = FakeRequest(http_error(429), http_error(429), {"labels": [{"id": "L1"}]})
    labels(service).list.return_value = request

    assert await client.list_labels() == [{"id": "L1"}]
    assert request.calls == 3


async def test_rate_limit_gives_up_at_attempt_ceiling(client, service, settings):
    request = FakeRequest(http_error(429, headers={"retry-after": "0"}))
    labels(service).list.return_value = request

    with pytest.raises(RateLimited) as excinfo:
        await client.list_labels()
    assert request.calls == settings.retry_max_attempts
    assert excinfo.value.retry_after == 0.0


async def test_403_with_rate_limit_reason_is_rate_limited(client, service, settings):
    request = FakeRequest(http_error(403, "Quota", reason="userRateLimitExceeded"))
    labels(service).list.return_value = request

    with pytest.raises(RateLimited):
        await client.list_labels()
    assert request.calls == settings.retry_max_attempts


async def test_server_errors_are_transient_and_retried(client, service, settings):
    request = FakeRequest(http_error(503, "Backend Error"))
    labels(service).list.return_value = request

    with pytest.raises(Transient):
        await client.list_labels()
    assert request.calls == settings.retry_max_attempts


async def test_network_errors_are_transient(client, service):
    request = FakeRequest(
        TimeoutError("timed out"), httplib2.ServerNotFoundError("dns"), {"labels": []}
    )
    labels(service).list.return_value = request

    assert await client.list_labels() == []
    assert request.calls == 3


async def test_bad_request_is_not_retried(client, service):
    request = FakeRequest(http_error(400, "Invalid label"))
    labels(service).list.return_value = request

    with pytest.raises(InvalidRequest, match="Invalid label"):
        await client.list_labels()
    assert request.calls == 1


async def test_not_found_names_the_target(client, service):
    not_found = http_error(404, "Requested entity was not found.")
    messages(service).get.return_value = FakeRequest(not_found)
    with pytest.raises(InvalidRequest, match="Message missing not found"):
        await client.get_message("missing")


def test_backoff_is_capped(client):
    client._settings = dataclasses.replace(
        client._settings, retry_base_delay=1.0, retry_max_delay=4.0
    )
    delays = [client._backoff_delay(attempt, Transient("x")) for attempt in range(1, 8)]
    assert all(0 <= d <= 4.0 for d in delays)
    assert client._backoff_delay(2, RateLimited("x", retry_after=3.0)) >= 3.0


def test_classify_http_error():
    assert isinstance(classify_http_error(http_error(429)), RateLimited)
    assert isinstance(classify_http_error(http_error(500)), Transient)
    error = classify_http_error(http_error(409, "Label name exists or conflicts"))
    assert isinstance(error, InvalidRequest)
    assert error.status == 409


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


async def test_send_message_builds_raw_body(client, service):
    sent = {"id": "sent-1", "threadId": "t1"}
    messages(service).send.return_value = FakeRequest(sent)
    params = EmailParams(to=["bob@example.com"], subject="Hi", body="Hello")

    result = await client.send_message(params)

    assert result["id"] == "sent-1"
    body = messages(service).send.call_args.kwargs["body"]
    raw = base64.urlsafe_b64decode(body["raw"]).decode()
    assert "To: bob@example.com" in raw
    assert "Subject: Hi" in raw


async def test_send_message_rejects_bad_address_before_any_call(client, tokens):
    params = EmailParams(to=["not-an-address"], subject="Hi", body="x")
    with pytest.raises(InvalidRequest, match="Invalid email address"):
        await client.send_message(params)
    tokens.get_valid_token.assert_not_called()


async def test_create_draft_wraps_message(client, service):
    drafts = service.users.return_value.drafts.return_value
    drafts.create.return_value = FakeRequest({"id": "d1", "message": {"id": "m1"}})

    await client.create_draft(
        EmailParams(to=["bob@example.com"], subject="Hi", body="Hello")
    )

    body = drafts.create.call_args.kwargs["body"]
    assert "raw" in body["message"]


async def test_search_skips_failed_metadata_fetches(client, service):
    stubs = [{"id": "a"}, {"id": "b"}, {"id": "c"}]
    messages(service).list.return_value = FakeRequest({"messages": stubs})

    def get(userId, id, format, metadataHeaders=None):
        if id == "b":
            return FakeRequest(http_error(404))
        headers = [{"name": "Subject", "value": f"subject {id}"}]
        return FakeRequest({"id": id, "threadId": "t", "payload": {"headers": headers}})

    messages(service).get.side_effect = get

    results = await client.search_messages("is:unread", max_results=3)

    assert [r["id"] for r in results] == ["a", "c"]
    assert results[0]["subject"] == "subject a"


async def test_search_with_no_results(client, service):
    messages(service).list.return_value = FakeRequest({"resultSizeEstimate": 0})
    assert await client.search_messages("nothing") == []


async def test_modify_requires_a_label_change(client):
    with pytest.raises(InvalidRequest, match="at least one"):
        await client.modify_message("m1")


async def test_trash_message(client, service):
    trashed = {"id": "m1", "labelIds": ["TRASH"]}
    messages(service).trash.return_value = FakeRequest(trashed)
    assert (await client.trash_message("m1"))["labelIds"] == ["TRASH"]
    messages(service).trash.assert_called_with(userId="me", id="m1")


async def test_delete_label_refuses_system_labels(client, service):
    inbox = {"id": "INBOX", "name": "INBOX", "type": "system"}
    labels(service).get.return_value = FakeRequest(inbox)
    with pytest.raises(InvalidRequest, match="system label"):
        await client.delete_label("INBOX")
    labels(service).delete.assert_not_called()


async def test_delete_user_label(client, service):
    labels(service).get.return_value = FakeRequest({"id": "Label_1", "type": "user"})
    labels(service).delete.return_value = FakeRequest("")
    await client.delete_label("Label_1")
    labels(service).delete.assert_called_with(userId="me", id="Label_1")


async def test_create_label_conflict_message(client, service):
    conflict = http_error(409, "Label name exists or conflicts")
    labels(service).create.return_value = FakeRequest(conflict)
    with pytest.raises(InvalidRequest, match="Label already exists: Work"):
        await client.create_label("Work")


async def test_get_or_create_label_finds_existing_case_insensitively(client, service):
    existing = [{"id": "Label_1", "name": "Work"}]
    labels(service).list.return_value = FakeRequest({"labels": existing})
    label, created = await client.get_or_create_label("work")
    assert label["id"] == "Label_1"
    assert created is False
    labels(service).create.assert_not_called()


async def test_get_or_create_label_creates_missing(client, service):
    labels(service).list.return_value = FakeRequest({"labels": []})
    labels(service).create.return_value = FakeRequest({"id": "Label_2", "name": "New"})
    label, created = await client.get_or_create_label("New")
    assert created is True
    assert labels(service).create.call_args.kwargs["body"] == {
        "name": "New",
        "messageListVisibility": "show",
        "labelListVisibility": "labelShow",
    }


async def test_update_label_uses_patch(client, service):
    renamed = {"id": "Label_1", "name": "Renamed"}
    labels(service).patch.return_value = FakeRequest(renamed)

    await client.update_label(
        "Label_1", {"name": "Renamed", "labelListVisibility": None}
    )

    labels(service).patch.assert_called_with(
        userId="me", id="Label_1", body={"name": "Renamed"}
    )


async def test_list_filters_handles_empty_response(client, service):
    filters(service).list.return_value = FakeRequest({})
    assert await client.list_filters() == []


async def test_create_filter_bad_criteria(client, service):
    rejected = http_error(400, "Filter doesn't have any criteria")
    filters(service).create.return_value = FakeRequest(rejected)
    with pytest.raises(InvalidRequest, match="Invalid filter criteria"):
        await client.create_filter({"from": "x@example.com"}, {"addLabelIds": ["L"]})


# ---------------------------------------------------------------------------
# Batch operations
# ---------------------------------------------------------------------------


def fail_on(failing_ids, error_factory=lambda: http_error(400, "Invalid id")):
    def modify(userId, id, body=None):
        if id in failing_ids:
            return FakeRequest(error_factory())
        return FakeRequest({"id": id, "labelIds": (body or {}).get("addLabelIds", [])})

    return modify


async def test_batch_modify_preserves_order_and_isolates_failures(client, service):
    messages(service).modify.side_effect = fail_on({"b"})

    report = await client.batch_modify_messages(
        ["a", "b", "c"], add_label_ids=["STARRED"]
    )

    assert report.succeeded == ("a", "c")
    assert [target for target, _ in report.failed] == ["b"]
    assert isinstance(report.failed[0][1], InvalidRequest)


async def test_batch_order_across_chunks(client, service):
    ids = [f"m{i}" for i in range(12)]
    failing = {"m1", "m6", "m11"}
    messages(service).trash.side_effect = fail_on(failing)

    report = await client.batch_delete_messages(ids, batch_size=5)

    assert report.succeeded == tuple(i for i in ids if i not in failing)
    assert tuple(target for target, _ in report.failed) == ("m1", "m6", "m11")


async def test_batch_respects_concurrency_limit(client, service, settings):
    running = 0
    peak = 0

    async def slow_modify(message_id, add, remove):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.01)
        running -= 1
        return {"id": message_id}

    client.modify_message = slow_modify
    ids = [str(i) for i in range(20)]
    report = await client.batch_modify_messages(ids, add_label_ids=["L"])

    assert len(report.succeeded) == 20
    assert peak <= settings.batch_concurrency


async def test_batch_unexpected_error_is_recorded_as_internal(client):
    async def broken(message_id):
        if message_id == "b":
            raise KeyError("id")
        return {"id": message_id}

    client.trash_message = broken
    report = await client.batch_delete_messages(["a", "b"])

    assert report.succeeded == ("a",)
    assert isinstance(report.failed[0][1], InternalError)


async def test_batch_auth_failure_replaces_report(client, service, tokens):
    tokens.get_valid_token = AsyncMock(side_effect=ReauthRequired("revoked"))
    with pytest.raises(ReauthRequired):
        await client.batch_modify_messages(["a", "b"], add_label_ids=["L"])
    messages(service).modify.assert_not_called()


async def test_batch_modify_requires_label_change(client):
    with pytest.raises(InvalidRequest):
        await client.batch_modify_messages(["a"])


def test_batch_report_to_dict():
    report = BatchReport(
        succeeded=("a", "c"), failed=(("b", InvalidRequest("bad", 400)),)
    )
    assert report.to_dict() == {
        "successCount": 2,
        "failureCount": 1,
        "succeeded": ["a", "c"],
        "failed": [
            {"id": "b", "kind": "InvalidRequest", "message": "bad", "status": 400}
        ],
    }
