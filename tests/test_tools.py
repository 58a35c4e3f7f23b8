import base64
from unittest.mock import AsyncMock

import pytest

from gmail_mcp.client import BatchReport, GmailClient
from gmail_mcp.errors import InvalidRequest, Malformed, ToolNotFound
from gmail_mcp.tools import TOOLS, NoArgs, ToolDescriptor, ToolRegistry

EXPECTED_TOOLS = [
    "send_email",
    "draft_email",
    "read_email",
    "search_emails",
    "modify_email",
    "delete_email",
    "list_email_labels",
    "batch_modify_emails",
    "batch_delete_emails",
    "create_label",
    "update_label",
    "delete_label",
    "get_or_create_label",
    "create_filter",
    "list_filters",
    "get_filter",
    "delete_filter",
    "create_filter_from_template",
    "download_attachment",
]


@pytest.fixture
def gmail():
    return AsyncMock(spec=GmailClient)


@pytest.fixture
def registry(gmail):
    return ToolRegistry(gmail)


async def call(registry, name, arguments=None):
    return await registry.invoke(registry.resolve(name), arguments)


def test_registry_lists_tools_in_table_order(registry):
    assert [d.name for d in registry.descriptors()] == EXPECTED_TOOLS
    assert len(registry) == len(EXPECTED_TOOLS)


def test_resolve_unknown_tool(registry):
    with pytest.raises(ToolNotFound) as excinfo:
        registry.resolve("nope")
    assert excinfo.value.kind == "NotFound"


def test_duplicate_tool_names_rejected(gmail):
    with pytest.raises(ValueError, match="Duplicate"):
        ToolRegistry(gmail, [TOOLS[0], TOOLS[0]])


def test_input_schema_uses_wire_names(registry):
    schema = registry.resolve("batch_modify_emails").input_schema
    assert set(schema["properties"]) == {
        "messageIds",
        "addLabelIds",
        "removeLabelIds",
        "batchSize",
    }
    assert schema["required"] == ["messageIds"]
    assert "id" in registry.resolve("update_label").input_schema["properties"]


def test_every_tool_has_an_object_schema(registry):
    for descriptor in registry.descriptors():
        assert descriptor.input_schema["type"] == "object"
        assert descriptor.description


async def test_unknown_argument_is_malformed(registry, gmail):
    with pytest.raises(Malformed):
        await call(registry, "read_email", {"messageId": "m1", "bogus": True})
    gmail.read_message.assert_not_called()


async def test_missing_argument_is_malformed(registry):
    with pytest.raises(Malformed, match="read_email"):
        await call(registry, "read_email", {})


async def test_snake_case_names_accepted(registry, gmail):
    gmail.read_message.return_value = {"id": "m1"}
    assert await call(registry, "read_email", {"message_id": "m1"}) == {"id": "m1"}


async def test_send_email_maps_arguments(registry, gmail):
    sent = {"id": "s1", "threadId": "t1", "labelIds": ["SENT"]}
    gmail.send_message.return_value = sent

    result = await call(
        registry,
        "send_email",
        {
            "to": ["a@example.com"],
            "subject": "S",
            "body": "B",
            "htmlBody": "<p>B</p>",
            "cc": ["c@example.com"],
        },
    )

    assert result == {"id": "s1", "thread_id": "t1", "label_ids": ["SENT"]}
    params = gmail.send_message.call_args.args[0]
    assert params.html_body == "<p>B</p>"
    assert params.cc == ["c@example.com"]


async def test_send_email_rejects_unknown_mime_type(registry):
    with pytest.raises(Malformed):
        await call(
            registry,
            "send_email",
            {"to": ["a@example.com"], "subject": "S", "body": "B", "mimeType": "x/y"},
        )


async def test_modify_email_label_ids_alias(registry, gmail):
    gmail.modify_message.return_value = {"id": "m1", "labelIds": ["L1"]}
    await call(
        registry,
        "modify_email",
        {"messageId": "m1", "labelIds": ["L1"], "removeLabelIds": ["INBOX"]},
    )
    gmail.modify_message.assert_awaited_once_with("m1", ["L1"], ["INBOX"])


async def test_batch_modify_returns_report(registry, gmail):
    gmail.batch_modify_messages.return_value = BatchReport(
        succeeded=("a", "c"), failed=(("b", InvalidRequest("gone", 404)),)
    )
    result = await call(
        registry,
        "batch_modify_emails",
        {"messageIds": ["a", "b", "c"], "addLabelIds": ["L"]},
    )
    assert result["succeeded"] == ["a", "c"]
    assert result["failed"][0]["id"] == "b"
    assert result["failureCount"] == 1


async def test_list_labels_split_by_type(registry, gmail):
    gmail.list_labels.return_value = [
        {"id": "INBOX", "name": "INBOX", "type": "system"},
        {"id": "Label_1", "name": "Work", "type": "user"},
    ]
    result = await call(registry, "list_email_labels")
    assert result["count"] == {"total": 2, "system": 1, "user": 1}
    assert result["user"][0]["name"] == "Work"


async def test_update_label_accepts_label_id(registry, gmail):
    gmail.update_label.return_value = {"id": "Label_1", "name": "New"}
    await call(registry, "update_label", {"labelId": "Label_1", "name": "New"})
    gmail.update_label.assert_awaited_once_with(
        "Label_1",
        {"name": "New", "messageListVisibility": None, "labelListVisibility": None},
    )


async def test_get_or_create_label_reports_creation(registry, gmail):
    gmail.get_or_create_label.return_value = ({"id": "Label_9", "name": "New"}, True)
    result = await call(registry, "get_or_create_label", {"name": "New"})
    assert result["created"] is True


async def test_create_filter_dumps_gmail_names(registry, gmail):
    gmail.create_filter.return_value = {
        "id": "f1",
        "criteria": {"from": "a@example.com"},
        "action": {},
    }
    await call(
        registry,
        "create_filter",
        {
            "criteria": {"from": "a@example.com", "hasAttachment": True},
            "action": {"addLabelIds": ["L"]},
        },
    )
    gmail.create_filter.assert_awaited_once_with(
        {"from": "a@example.com", "hasAttachment": True}, {"addLabelIds": ["L"]}
    )


async def test_template_flat_parameters_win(registry, gmail):
    gmail.create_filter.return_value = {"id": "f1"}
    result = await call(
        registry,
        "create_filter_from_template",
        {
            "template": "fromSender",
            "senderEmail": "flat@example.com",
            "parameters": {"senderEmail": "nested@example.com", "archive": True},
            "labelId": "Label_1",
        },
    )
    assert result["template"] == "fromSender"
    criteria, action = gmail.create_filter.call_args.args
    assert criteria == {"from": "flat@example.com"}
    assert action == {"addLabelIds": ["Label_1"], "removeLabelIds": ["INBOX"]}


async def test_template_missing_parameter(registry, gmail):
    message = "searchText is required for containingText template"
    with pytest.raises(InvalidRequest, match=message):
        await call(
            registry, "create_filter_from_template", {"template": "containingText"}
        )
    gmail.create_filter.assert_not_called()


async def test_template_unknown_name_is_malformed(registry):
    with pytest.raises(Malformed):
        await call(registry, "create_filter_from_template", {"template": "everything"})


async def test_download_attachment_writes_file(registry, gmail, tmp_path):
    payload = b"attachment bytes"
    data = base64.urlsafe_b64encode(payload).decode().rstrip("=")
    gmail.get_attachment.return_value = {"data": data}

    result = await call(
        registry,
        "download_attachment",
        {"messageId": "m1", "attachmentId": "att1", "savePath": str(tmp_path / "out")},
    )

    saved = tmp_path / "out" / "attachment-att1"
    assert saved.read_bytes() == payload
    assert result["size"] == len(payload)
    assert result["path"] == str(saved.resolve())


async def test_download_attachment_rejects_directory_in_filename(
    registry, gmail, tmp_path
):
    with pytest.raises(InvalidRequest):
        await call(
            registry,
            "download_attachment",
            {
                "messageId": "m1",
                "attachmentId": "a",
                "filename": "../evil",
                "savePath": str(tmp_path),
            },
        )
    gmail.get_attachment.assert_not_called()


async def test_custom_descriptor(gmail):
    async def handler(client, args):
        return {"client": client is gmail}

    registry = ToolRegistry(gmail, [ToolDescriptor("probe", "Probe", NoArgs, handler)])
    assert await call(registry, "probe", None) == {"client": True}
