"""MIME message building and Gmail payload parsing."""

import base64
import logging
import mimetypes
from dataclasses import dataclass, field
from email import encoders
from email.header import Header
from email.mime.audio import MIMEAudio
from email.mime.base import MIMEBase
from email.mime.image import MIMEImage
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path

from .errors import InvalidRequest

logger = logging.getLogger(__name__)

MIME_TYPES = ("text/plain", "text/html", "multipart/alternative")


@dataclass
class EmailParams:
    to: list[str]
    subject: str
    body: str
    html_body: str | None = None
    mime_type: str | None = None
    cc: list[str] = field(default_factory=list)
    bcc: list[str] = field(default_factory=list)
    thread_id: str | None = None
    in_reply_to: str | None = None
    attachment_paths: list[str] = field(default_factory=list)


def validate_email(address: str) -> bool:
    parts = address.split("@")
    if len(parts) != 2:
        return False
    local, domain = parts
    return (
        bool(local)
        and bool(domain)
        and " " not in local
        and " " not in domain
        and "." in domain
        and not domain.startswith(".")
        and not domain.endswith(".")
    )


def encode_header(text: str) -> str:
    """RFC 2047-encode ``text`` when it is not plain ASCII."""
    if text.isascii() and "\r" not in text and "\n" not in text:
        return text
    return Header(text, "utf-8").encode()


def format_size(size: int) -> str:
    kb = 1024
    mb = kb * 1024
    gb = mb * 1024
    if size >= gb:
        return f"{size / gb:.1f} GB"
    if size >= mb:
        return f"{size / mb:.1f} MB"
    if size >= kb:
        return f"{size / kb:.0f} KB"
    return f"{size} bytes"


def decode_base64url(data: str) -> bytes:
    """Decode Gmail's base64url data, with or without padding."""
    try:
        return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))
    except (ValueError, TypeError) as e:
        raise InvalidRequest(f"Failed to decode base64 data: {e}") from e


# ---------------------------------------------------------------------------
# Building
# ---------------------------------------------------------------------------


def _attach_file(message: MIMEMultipart, file_path: str) -> None:
    path = Path(file_path)
    if not path.is_file():
        raise InvalidRequest(f"Attachment not found: {file_path}")
    content_type, _ = mimetypes.guess_type(str(path))
    if content_type is None:
        content_type = "application/octet-stream"
    main_type, sub_type = content_type.split("/", 1)
    file_data = path.read_bytes()
    if main_type == "text":
        att = MIMEText(
            file_data.decode("utf-8", errors="replace"),
            _subtype=sub_type,
            _charset="utf-8",
        )
    elif main_type == "image":
        att = MIMEImage(file_data, _subtype=sub_type)
    elif main_type == "audio":
        att = MIMEAudio(file_data, _subtype=sub_type)
    else:
        att = MIMEBase(main_type, sub_type)
        att.set_payload(file_data)
        encoders.encode_base64(att)
    filename = path.name if path.name.isascii() else ("utf-8", "", path.name)
    att.add_header("Content-Disposition", "attachment", filename=filename)
    message.attach(att)


def _alternative(body: str, html_body: str) -> MIMEMultipart:
    alt = MIMEMultipart("alternative")
    alt.attach(MIMEText(body, "plain", "utf-8"))
    alt.attach(MIMEText(html_body, "html", "utf-8"))
    return alt


def build_message(params: EmailParams) -> dict:
    """Build the ``{"raw": ..., "threadId": ...}`` body for send and draft calls."""
    if not params.to:
        raise InvalidRequest("At least one recipient is required")
    for address in [*params.to, *params.cc, *params.bcc]:
        if not validate_email(address):
            raise InvalidRequest(f"Invalid email address: {address}")
    if params.mime_type is not None and params.mime_type not in MIME_TYPES:
        raise InvalidRequest(f"Unsupported mimeType: {params.mime_type}")

    html_only = params.mime_type == "text/html"
    use_alternative = not html_only and (
        params.mime_type == "multipart/alternative"
        or (params.html_body is not None and params.mime_type != "text/plain")
    )
    html_body = params.html_body if params.html_body is not None else params.body

    if html_only:
        content = MIMEText(html_body, "html", "utf-8")
    elif use_alternative:
        content = _alternative(params.body, html_body)
    else:
        content = MIMEText(params.body, "plain", "utf-8")

    if params.attachment_paths:
        message = MIMEMultipart("mixed")
        message.attach(content)
        for fp in params.attachment_paths:
            _attach_file(message, fp)
    else:
        message = content

    message["To"] = ", ".join(params.to)
    if params.cc:
        message["Cc"] = ", ".join(params.cc)
    if params.bcc:
        message["Bcc"] = ", ".join(params.bcc)
    message["Subject"] = encode_header(params.subject)
    if params.in_reply_to:
        message["In-Reply-To"] = params.in_reply_to
        message["References"] = params.in_reply_to

    encoded = base64.urlsafe_b64encode(message.as_bytes()).decode()
    result = {"raw": encoded}
    if params.thread_id:
        result["threadId"] = params.thread_id
    return result


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def find_header(payload: dict, name: str) -> str:
    for header in payload.get("headers", []):
        if header.get("name", "").lower() == name.lower():
            return header.get("value", "")
    return ""


def extract_body(payload: dict) -> tuple[str, str]:
    """Collect text/plain and text/html content from a MIME part tree."""
    body_text = ""
    body_html = ""
    mime_type = payload.get("mimeType", "")
    data = payload.get("body", {}).get("data")

    if data and mime_type in ("text/plain", "text/html"):
        try:
            decoded = decode_base64url(data).decode("utf-8", errors="replace")
        except InvalidRequest as e:
            logger.debug(f"Failed to decode {mime_type} part: {e}")
            decoded = ""
        if mime_type == "text/plain":
            body_text = decoded
        else:
            body_html = decoded

    for part in payload.get("parts", []):
        t, h = extract_body(part)
        body_text += t
        body_html += h
    return body_text, body_html


def extract_attachments(payload: dict) -> list[dict]:
    attachments = []
    body = payload.get("body", {})
    attachment_id = body.get("attachmentId")
    if attachment_id:
        size = body.get("size", 0)
        attachments.append(
            {
                "id": attachment_id,
                "filename": payload.get("filename") or f"attachment-{attachment_id}",
                "mime_type": payload.get("mimeType") or "application/octet-stream",
                "size": size,
                "size_display": format_size(size),
            }
        )
    for part in payload.get("parts", []):
        attachments.extend(extract_attachments(part))
    return attachments


def parse_full_message(msg: dict) -> dict:
    payload = msg.get("payload", {})
    body_text, body_html = extract_body(payload)
    is_html_only = not body_text and bool(body_html)

    if body_text:
        body = body_text
    elif body_html:
        body = body_html
    else:
        logger.debug(f"Email {msg.get('id')} has no decodable body, using snippet")
        body = msg.get("snippet", "")

    return {
        "id": msg["id"],
        "thread_id": msg.get("threadId", ""),
        "subject": find_header(payload, "Subject"),
        "from": find_header(payload, "From"),
        "to": find_header(payload, "To"),
        "cc": find_header(payload, "Cc"),
        "date": find_header(payload, "Date"),
        "body": body,
        "html_body": body_html or None,
        "is_html_only": is_html_only,
        "labels": msg.get("labelIds", []),
        "attachments": extract_attachments(payload),
    }


def parse_message_summary(msg: dict) -> dict:
    payload = msg.get("payload", {})
    return {
        "id": msg["id"],
        "thread_id": msg.get("threadId", ""),
        "subject": find_header(payload, "Subject"),
        "from": find_header(payload, "From"),
        "date": find_header(payload, "Date"),
        "snippet": msg.get("snippet", ""),
    }
