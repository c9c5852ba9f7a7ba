from datetime import datetime
from email.utils import getaddresses
from pydantic import BaseModel, Field, field_validator

from mailcomposer.errors import InvalidRecipient, InvalidSubject, MissingField
from mailcomposer.formatting import to_html, to_plain_text


def single_address(value: str) -> str:
    """Return the one bare address in ``value``; anything else raises ValueError."""
    if "\r" in value or "\n" in value:
        raise ValueError("recipient must not contain line breaks")
    addresses = [addr for _, addr in getaddresses([value])]
    if len(addresses) != 1 or "@" not in addresses[0]:
        raise ValueError("recipient must be exactly one address containing '@'")
    return addresses[0]


class Attachment(BaseModel):
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"

    @property
    def force_download(self) -> bool:
        # video parts are never rendered inline by the client
        return self.content_type.lower().startswith("video/")


class Message(BaseModel):
    recipient: str
    subject: str
    html_body: str
    attachments: list[Attachment] = Field(default_factory=list)

    @field_validator("recipient")
    @classmethod
    def _one_recipient(cls, value: str) -> str:
        return single_address(value.strip())

    @field_validator("subject")
    @classmethod
    def _subject_single_line(cls, value: str) -> str:
        if "\r" in value or "\n" in value:
            raise ValueError("subject must not contain line breaks")
        return value

    @field_validator("html_body")
    @classmethod
    def _body_not_empty(cls, value: str) -> str:
        if not value:
            raise ValueError("body must not be empty")
        return value

    @property
    def text_body(self) -> str:
        return to_plain_text(self.html_body)

    @classmethod
    def compose(cls, to: str, subject: str, content: str,
                attachments: list[Attachment] | None = None) -> "Message":
        """Build a message from raw operator input, formatting the content as HTML."""
        to = (to or "").strip()
        try:
            recipient = single_address(to)
        except ValueError as exc:
            raise InvalidRecipient(f"Invalid recipient address: {to!r}") from exc
        subject = subject or ""
        if "\r" in subject or "\n" in subject:
            raise InvalidSubject(f"Subject must be a single line: {subject!r}")
        html_body = to_html(content or "")
        if not html_body:
            raise MissingField(["content"])
        return cls(recipient=recipient, subject=subject, html_body=html_body, attachments=attachments or [])


class DeliveryReceipt(BaseModel):
    message_id: str
    response: str
    accepted: list[str] = Field(default_factory=list)
    rejected: list[str] = Field(default_factory=list)


class Recipient(BaseModel):
    email: str
    name: str = ""


class JobInfo(BaseModel):
    id: str
    next_invocation: datetime
