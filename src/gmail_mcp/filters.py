"""Pre-defined Gmail filter templates.

Each builder returns a ``(criteria, action)`` pair in the Gmail API's JSON
shape, ready for ``users.settings.filters.create``.
"""

from .errors import InvalidRequest

TEMPLATES = (
    "fromSender",
    "withSubject",
    "withAttachments",
    "largeEmails",
    "containingText",
    "mailingList",
)


def _action(
    add_label_ids: list[str] | None = None,
    remove_label_ids: list[str] | None = None,
) -> dict:
    action = {}
    if add_label_ids:
        action["addLabelIds"] = list(add_label_ids)
    if remove_label_ids:
        action["removeLabelIds"] = list(remove_label_ids)
    return action


def from_sender(
    sender_email: str, label_ids: list[str] | None = None, archive: bool = False
):
    return {"from": sender_email}, _action(label_ids, ["INBOX"] if archive else None)


def with_subject(
    subject_text: str, label_ids: list[str] | None = None, mark_as_read: bool = False
):
    remove = ["UNREAD"] if mark_as_read else None
    return {"subject": subject_text}, _action(label_ids, remove)


def with_attachments(label_ids: list[str] | None = None):
    return {"hasAttachment": True}, _action(label_ids)


def large_emails(size_in_bytes: int, label_ids: list[str] | None = None):
    return {"size": size_in_bytes, "sizeComparison": "larger"}, _action(label_ids)


def containing_text(
    search_text: str,
    label_ids: list[str] | None = None,
    mark_important: bool = False,
):
    add = list(label_ids or [])
    if mark_important:
        add.append("IMPORTANT")
    return {"query": f'"{search_text}"'}, _action(add)


def mailing_list(
    list_identifier: str, label_ids: list[str] | None = None, archive: bool = True
):
    query = f"list:{list_identifier} OR subject:[{list_identifier}]"
    return {"query": query}, _action(label_ids, ["INBOX"] if archive else None)


def _require(value, name: str, template: str):
    if value is None:
        raise InvalidRequest(f"{name} is required for {template} template")
    return value


def build_from_template(
    template: str,
    sender_email: str | None = None,
    subject_text: str | None = None,
    search_text: str | None = None,
    list_identifier: str | None = None,
    size_in_bytes: int | None = None,
    label_ids: list[str] | None = None,
    archive: bool | None = None,
    mark_as_read: bool | None = None,
    mark_important: bool | None = None,
) -> tuple[dict, dict]:
    if template == "fromSender":
        email = _require(sender_email, "senderEmail", template)
        return from_sender(email, label_ids, bool(archive))
    if template == "withSubject":
        subject = _require(subject_text, "subjectText", template)
        return with_subject(subject, label_ids, bool(mark_as_read))
    if template == "withAttachments":
        return with_attachments(label_ids)
    if template == "largeEmails":
        size = _require(size_in_bytes, "sizeInBytes", template)
        return large_emails(size, label_ids)
    if template == "containingText":
        text = _require(search_text, "searchText", template)
        return containing_text(text, label_ids, bool(mark_important))
    if template == "mailingList":
        list_id = _require(list_identifier, "listIdentifier", template)
        return mailing_list(list_id, label_ids, True if archive is None else archive)
    raise InvalidRequest(f"Unknown template: {template}")


def summarize_filter(gmail_filter: dict) -> dict:
    """Flatten a Gmail filter resource for display."""
    criteria = gmail_filter.get("criteria", {})
    action = gmail_filter.get("action", {})
    return {
        "id": gmail_filter.get("id", ""),
        "criteria": {k: v for k, v in criteria.items() if v not in (None, "", [])},
        "action": {k: v for k, v in action.items() if v not in (None, "", [])},
    }
