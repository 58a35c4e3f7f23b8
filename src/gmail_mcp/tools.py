"""Tool table: argument models, handlers and the registry that resolves them.

Argument models accept the camelCase names MCP clients send (``messageId``,
``addLabelIds``) as well as the snake_case field names, and reject unknown
fields. Handlers receive the ``GmailClient`` and the validated arguments and
return a plain dict; errors are raised, never returned.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from .client import GmailClient
from .errors import InvalidRequest, Malformed, ToolNotFound
from .filters import build_from_template, summarize_filter
from .messages import EmailParams, decode_base64url

logger = logging.getLogger(__name__)

MimeType = Literal["text/plain", "text/html", "multipart/alternative"]
MessageListVisibility = Literal["show", "hide"]
LabelListVisibility = Literal["labelShow", "labelShowIfUnread", "labelHide"]
Template = Literal[
    "fromSender",
    "withSubject",
    "withAttachments",
    "largeEmails",
    "containingText",
    "mailingList",
]


class ToolArguments(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="forbid"
    )


# ---------------------------------------------------------------------------
# Argument models
# ---------------------------------------------------------------------------


class SendEmailArgs(ToolArguments):
    to: list[str] = Field(min_length=1, description="List of recipient email addresses")
    subject: str = Field(description="Email subject")
    body: str = Field(
        description="Email body content (used for text/plain or when htmlBody not provided)"
    )
    html_body: str | None = Field(None, description="HTML version of the email body")
    mime_type: MimeType | None = Field(None, description="Email content type")
    cc: list[str] = Field(default_factory=list, description="List of CC recipients")
    bcc: list[str] = Field(default_factory=list, description="List of BCC recipients")
    thread_id: str | None = Field(None, description="Thread ID to reply to")
    in_reply_to: str | None = Field(None, description="Message ID being replied to")
    attachments: list[str] = Field(
        default_factory=list, description="List of file paths to attach"
    )

    def to_params(self) -> EmailParams:
        return EmailParams(
            to=self.to,
            subject=self.subject,
            body=self.body,
            html_body=self.html_body,
            mime_type=self.mime_type,
            cc=self.cc,
            bcc=self.bcc,
            thread_id=self.thread_id,
            in_reply_to=self.in_reply_to,
            attachment_paths=self.attachments,
        )


class MessageIdArgs(ToolArguments):
    message_id: str = Field(description="ID of the email message")


class SearchEmailsArgs(ToolArguments):
    query: str = Field(
        description="Gmail search query (e.g., 'from:example@gmail.com')"
    )
    max_results: int = Field(
        10, ge=1, le=500, description="Maximum number of results"
    )


class ModifyEmailArgs(ToolArguments):
    message_id: str = Field(description="ID of the email message to modify")
    label_ids: list[str] | None = Field(None, description="List of label IDs to apply")
    add_label_ids: list[str] | None = Field(
        None, description="List of label IDs to add"
    )
    remove_label_ids: list[str] | None = Field(
        None, description="List of label IDs to remove"
    )


class NoArgs(ToolArguments):
    pass


class BatchModifyArgs(ToolArguments):
    message_ids: list[str] = Field(description="List of message IDs to modify")
    add_label_ids: list[str] | None = Field(None, description="Label IDs to add")
    remove_label_ids: list[str] | None = Field(None, description="Label IDs to remove")
    batch_size: int | None = Field(None, ge=1, description="Batch size (default: 50)")


class BatchDeleteArgs(ToolArguments):
    message_ids: list[str] = Field(description="List of message IDs to delete")
    batch_size: int | None = Field(None, ge=1, description="Batch size (default: 50)")


class LabelArgs(ToolArguments):
    name: str = Field(min_length=1, description="Name of the label")
    message_list_visibility: MessageListVisibility | None = Field(
        None, description="Message list visibility"
    )
    label_list_visibility: LabelListVisibility | None = Field(
        None, description="Label list visibility"
    )


class UpdateLabelArgs(ToolArguments):
    id: str = Field(
        validation_alias=AliasChoices("id", "labelId"),
        description="ID of the label to update",
    )
    name: str | None = Field(None, description="New name for the label")
    message_list_visibility: MessageListVisibility | None = None
    label_list_visibility: LabelListVisibility | None = None


class DeleteLabelArgs(ToolArguments):
    id: str = Field(
        validation_alias=AliasChoices("id", "labelId"),
        description="ID of the label to delete",
    )


class FilterCriteria(ToolArguments):
    from_: str | None = Field(None, alias="from")
    to: str | None = None
    subject: str | None = None
    query: str | None = None
    negated_query: str | None = None
    has_attachment: bool | None = None
    exclude_chats: bool | None = None
    size: int | None = Field(None, ge=0)
    size_comparison: Literal["unspecified", "smaller", "larger"] | None = None


class FilterAction(ToolArguments):
    add_label_ids: list[str] | None = None
    remove_label_ids: list[str] | None = None
    forward: str | None = None


class CreateFilterArgs(ToolArguments):
    criteria: FilterCriteria = Field(description="Criteria for matching emails")
    action: FilterAction = Field(description="Actions to perform on matching emails")


class FilterIdArgs(ToolArguments):
    filter_id: str = Field(description="ID of the filter")


class TemplateParameters(ToolArguments):
    sender_email: str | None = Field(
        None, description="Email address for fromSender template"
    )
    subject_text: str | None = Field(
        None, description="Subject text for withSubject template"
    )
    search_text: str | None = Field(
        None, description="Search text for containingText template"
    )
    list_identifier: str | None = Field(
        None, description="List ID for mailingList template"
    )
    size_in_bytes: int | None = Field(
        None, ge=0, description="Size threshold for largeEmails template"
    )
    label_ids: list[str] | None = Field(None, description="Labels to apply")
    archive: bool | None = Field(None, description="Whether to archive matching emails")
    mark_as_read: bool | None = Field(
        None, description="Whether to mark matching emails as read"
    )
    mark_important: bool | None = Field(
        None, description="Whether to mark matching emails as important"
    )


class CreateFilterFromTemplateArgs(TemplateParameters):
    template: Template = Field(description="Pre-defined filter template")
    parameters: TemplateParameters | None = Field(
        None,
        description="Nested parameters object (optional - can also use flat parameters)",
    )
    label_id: str | None = Field(
        None, description="Single label to apply (alternative to labelIds)"
    )

    def merged_parameters(self) -> dict:
        """Flat fields take precedence over the nested ``parameters`` object."""
        nested = self.parameters or TemplateParameters()
        merged = {}
        for name in TemplateParameters.model_fields:
            flat = getattr(self, name)
            merged[name] = flat if flat is not None else getattr(nested, name)
        if merged["label_ids"] is None and self.label_id:
            merged["label_ids"] = [self.label_id]
        return merged


class DownloadAttachmentArgs(ToolArguments):
    message_id: str = Field(description="ID of the email containing the attachment")
    attachment_id: str = Field(description="ID of the attachment")
    filename: str | None = Field(
        None, description="Filename to save as (defaults to attachment-<id>)"
    )
    save_path: str | None = Field(
        None, description="Directory to save to (defaults to current directory)"
    )


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


def _label_summary(label: dict) -> dict:
    return {
        "id": label.get("id", ""),
        "name": label.get("name", ""),
        "type": label.get("type", ""),
        "message_list_visibility": label.get("messageListVisibility"),
        "label_list_visibility": label.get("labelListVisibility"),
    }


async def send_email(client: GmailClient, args: SendEmailArgs) -> dict:
    sent = await client.send_message(args.to_params())
    return {
        "id": sent["id"],
        "thread_id": sent.get("threadId", ""),
        "label_ids": sent.get("labelIds", []),
    }


async def draft_email(client: GmailClient, args: SendEmailArgs) -> dict:
    draft = await client.create_draft(args.to_params())
    return {
        "draft_id": draft["id"],
        "message_id": draft.get("message", {}).get("id", ""),
    }


async def read_email(client: GmailClient, args: MessageIdArgs) -> dict:
    return await client.read_message(args.message_id)


async def search_emails(client: GmailClient, args: SearchEmailsArgs) -> dict:
    messages = await client.search_messages(args.query, args.max_results)
    return {"query": args.query, "count": len(messages), "messages": messages}


async def modify_email(client: GmailClient, args: ModifyEmailArgs) -> dict:
    add = args.add_label_ids if args.add_label_ids is not None else args.label_ids
    result = await client.modify_message(args.message_id, add, args.remove_label_ids)
    return {"id": result["id"], "label_ids": result.get("labelIds", [])}


async def delete_email(client: GmailClient, args: MessageIdArgs) -> dict:
    result = await client.trash_message(args.message_id)
    return {
        "id": result.get("id", args.message_id),
        "trashed": True,
        "label_ids": result.get("labelIds", []),
    }


async def list_email_labels(client: GmailClient, args: NoArgs) -> dict:
    labels = [_label_summary(label) for label in await client.list_labels()]
    system = [label for label in labels if label["type"] == "system"]
    user = [label for label in labels if label["type"] != "system"]
    return {
        "count": {"total": len(labels), "system": len(system), "user": len(user)},
        "system": system,
        "user": user,
    }


async def batch_modify_emails(client: GmailClient, args: BatchModifyArgs) -> dict:
    report = await client.batch_modify_messages(
        args.message_ids, args.add_label_ids, args.remove_label_ids, args.batch_size
    )
    return report.to_dict()


async def batch_delete_emails(client: GmailClient, args: BatchDeleteArgs) -> dict:
    report = await client.batch_delete_messages(args.message_ids, args.batch_size)
    return report.to_dict()


async def create_label(client: GmailClient, args: LabelArgs) -> dict:
    label = await client.create_label(
        args.name, args.message_list_visibility, args.label_list_visibility
    )
    return _label_summary(label)


async def update_label(client: GmailClient, args: UpdateLabelArgs) -> dict:
    updates = {
        "name": args.name,
        "messageListVisibility": args.message_list_visibility,
        "labelListVisibility": args.label_list_visibility,
    }
    label = await client.update_label(args.id, updates)
    return _label_summary(label)


async def delete_label(client: GmailClient, args: DeleteLabelArgs) -> dict:
    await client.delete_label(args.id)
    return {"id": args.id, "deleted": True}


async def get_or_create_label(client: GmailClient, args: LabelArgs) -> dict:
    label, created = await client.get_or_create_label(
        args.name, args.message_list_visibility, args.label_list_visibility
    )
    return {**_label_summary(label), "created": created}


async def create_filter(client: GmailClient, args: CreateFilterArgs) -> dict:
    criteria = args.criteria.model_dump(by_alias=True, exclude_none=True)
    action = args.action.model_dump(by_alias=True, exclude_none=True)
    return summarize_filter(await client.create_filter(criteria, action))


async def list_filters(client: GmailClient, args: NoArgs) -> dict:
    filters = [summarize_filter(f) for f in await client.list_filters()]
    return {"count": len(filters), "filters": filters}


async def get_filter(client: GmailClient, args: FilterIdArgs) -> dict:
    return summarize_filter(await client.get_filter(args.filter_id))


async def delete_filter(client: GmailClient, args: FilterIdArgs) -> dict:
    await client.delete_filter(args.filter_id)
    return {"id": args.filter_id, "deleted": True}


async def create_filter_from_template(
    client: GmailClient, args: CreateFilterFromTemplateArgs
) -> dict:
    criteria, action = build_from_template(args.template, **args.merged_parameters())
    created = await client.create_filter(criteria, action)
    return {"template": args.template, **summarize_filter(created)}


def _write_file(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


async def download_attachment(
    client: GmailClient, args: DownloadAttachmentArgs
) -> dict:
    filename = args.filename or f"attachment-{args.attachment_id}"
    if Path(filename).name != filename:
        raise InvalidRequest(f"filename must not contain a directory: {filename}")

    attachment = await client.get_attachment(args.message_id, args.attachment_id)
    data = decode_base64url(attachment.get("data", ""))

    full_path = Path(args.save_path or ".").expanduser() / filename
    try:
        await asyncio.to_thread(_write_file, full_path, data)
    except OSError as e:
        raise InvalidRequest(f"Failed to write file {full_path}: {e}") from e
    logger.info(f"Saved attachment {args.attachment_id} to {full_path}")
    return {"filename": filename, "size": len(data), "path": str(full_path.resolve())}


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

Handler = Callable[[GmailClient, Any], Awaitable[dict]]


@dataclass(frozen=True)
class ToolDescriptor:
    name: str
    description: str
    arguments: type[ToolArguments]
    handler: Handler

    @property
    def input_schema(self) -> dict:
        return self.arguments.model_json_schema(by_alias=True)


TOOLS = (
    ToolDescriptor(
        "send_email",
        "Sends a new email",
        SendEmailArgs,
        send_email,
    ),
    ToolDescriptor(
        "draft_email",
        "Create a new email draft",
        SendEmailArgs,
        draft_email,
    ),
    ToolDescriptor(
        "read_email",
        "Retrieves the content of a specific email",
        MessageIdArgs,
        read_email,
    ),
    ToolDescriptor(
        "search_emails",
        "Searches for emails using Gmail search syntax",
        SearchEmailsArgs,
        search_emails,
    ),
    ToolDescriptor(
        "modify_email",
        "Modifies email labels (move to different folders)",
        ModifyEmailArgs,
        modify_email,
    ),
    ToolDescriptor(
        "delete_email",
        "Moves an email to the trash",
        MessageIdArgs,
        delete_email,
    ),
    ToolDescriptor(
        "list_email_labels",
        "Retrieves all available Gmail labels",
        NoArgs,
        list_email_labels,
    ),
    ToolDescriptor(
        "batch_modify_emails",
        "Modifies labels for multiple emails in batches",
        BatchModifyArgs,
        batch_modify_emails,
    ),
    ToolDescriptor(
        "batch_delete_emails",
        "Moves multiple emails to the trash in batches",
        BatchDeleteArgs,
        batch_delete_emails,
    ),
    ToolDescriptor(
        "create_label",
        "Creates a new Gmail label",
        LabelArgs,
        create_label,
    ),
    ToolDescriptor(
        "update_label",
        "Updates an existing Gmail label",
        UpdateLabelArgs,
        update_label,
    ),
    ToolDescriptor(
        "delete_label",
        "Deletes a Gmail label",
        DeleteLabelArgs,
        delete_label,
    ),
    ToolDescriptor(
        "get_or_create_label",
        "Gets an existing label by name or creates it if it doesn't exist",
        LabelArgs,
        get_or_create_label,
    ),
    ToolDescriptor(
        "create_filter",
        "Creates a new Gmail filter with custom criteria and actions",
        CreateFilterArgs,
        create_filter,
    ),
    ToolDescriptor(
        "list_filters",
        "Retrieves all Gmail filters",
        NoArgs,
        list_filters,
    ),
    ToolDescriptor(
        "get_filter",
        "Gets details of a specific Gmail filter",
        FilterIdArgs,
        get_filter,
    ),
    ToolDescriptor(
        "delete_filter",
        "Deletes a Gmail filter",
        FilterIdArgs,
        delete_filter,
    ),
    ToolDescriptor(
        "create_filter_from_template",
        "Creates a filter using a pre-defined template for common scenarios",
        CreateFilterFromTemplateArgs,
        create_filter_from_template,
    ),
    ToolDescriptor(
        "download_attachment",
        "Downloads an email attachment to a specified location",
        DownloadAttachmentArgs,
        download_attachment,
    ),
)


class ToolRegistry:
    """Read-only name -> descriptor table bound to one ``GmailClient``."""

    def __init__(
        self, client: GmailClient, descriptors: Iterable[ToolDescriptor] = TOOLS
    ):
        tools = {}
        for descriptor in descriptors:
            if descriptor.name in tools:
                raise ValueError(f"Duplicate tool name: {descriptor.name}")
            tools[descriptor.name] = descriptor
        self._client = client
        self._tools = MappingProxyType(tools)

    def __len__(self) -> int:
        return len(self._tools)

    def resolve(self, name: str) -> ToolDescriptor:
        try:
            return self._tools[name]
        except KeyError:
            raise ToolNotFound(name) from None

    def descriptors(self) -> list[ToolDescriptor]:
        return list(self._tools.values())

    async def invoke(self, descriptor: ToolDescriptor, arguments: dict | None) -> dict:
        try:
            args = descriptor.arguments.model_validate(arguments or {})
        except ValidationError as e:
            raise Malformed(f"Invalid arguments for {descriptor.name}: {e}") from e
        return await descriptor.handler(self._client, args)
