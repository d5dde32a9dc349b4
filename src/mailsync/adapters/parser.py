"""RFC822/MIME parsing into the normalized message shape stored by the engine."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email import message_from_bytes
from email.message import EmailMessage as StdEmailMessage
from email.policy import default as email_policy
from email.utils import getaddresses, parsedate_to_datetime
from typing import Dict, List, Optional, Sequence, Tuple, Union

import html2text
from pydantic import BaseModel, Field, field_validator

from ..models import FolderType, utcnow

logger = logging.getLogger(__name__)

UNKNOWN_SENDER = "unknown@unknown.com"
NO_SUBJECT = "(No Subject)"
_WHITESPACE = re.compile(r"\s+")


class EmailAddress(BaseModel):
    """Parsed email address with display name."""

    address: str = Field(..., description="Email address (user@domain.com)")
    display_name: Optional[str] = Field(default=None)

    @field_validator("address")
    @classmethod
    def _validate_address(cls, value: str) -> str:  # type: ignore[override]
        if "@" not in value or value.count("@") != 1:
            raise ValueError(f"Invalid email address: {value}")
        return value.lower()

    @classmethod
    def from_header(cls, header_value: Optional[str]) -> List["EmailAddress"]:
        """Parse every address in a header value, skipping malformed entries."""
        if not header_value or not str(header_value).strip():
            return []

        result = []
        for display_name, addr in getaddresses([str(header_value)]):
            if not addr or addr.count("@") != 1:
                continue
            result.append(
                cls(
                    address=addr.strip(),
                    display_name=display_name.strip() if display_name else None,
                )
            )
        return result


class AttachmentMetadata(BaseModel):
    """Attachment metadata; content is never kept by the engine."""

    filename: str
    content_type: str
    size_bytes: int = Field(default=0, ge=0)
    content_id: Optional[str] = None
    is_inline: bool = False
    is_lazy: bool = True


class ParsedMessage(BaseModel):
    """Normalized message as produced by a provider adapter."""

    uid: int = Field(..., ge=1)
    folder: FolderType = Field(..., description="Folder the message is filed under")
    source_folder: FolderType = Field(..., description="Folder whose UID space the uid belongs to")
    message_id: Optional[str] = None
    thread_id: Optional[str] = None
    in_reply_to: Optional[str] = None
    references: List[str] = Field(default_factory=list)

    from_address: EmailAddress
    to_addresses: List[EmailAddress] = Field(default_factory=list)
    cc_addresses: List[EmailAddress] = Field(default_factory=list)
    bcc_addresses: List[EmailAddress] = Field(default_factory=list)
    reply_to_addresses: List[EmailAddress] = Field(default_factory=list)

    subject: str = NO_SUBJECT
    preview: str = ""
    body_text: Optional[str] = None
    body_html: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)

    is_read: bool = False
    is_starred: bool = False
    has_attachments: bool = False
    attachments: List[AttachmentMetadata] = Field(default_factory=list)
    labels: List[str] = Field(default_factory=list)

    received_at: datetime = Field(default_factory=utcnow)
    size_bytes: int = Field(default=0, ge=0)


@dataclass(frozen=True)
class RawMessage:
    """One FETCH response, before parsing."""

    uid: int
    body: bytes
    source_folder: FolderType
    mailbox: str
    flags: Tuple[str, ...] = ()
    labels: Tuple[str, ...] = ()
    thread_id: Optional[str] = None
    internal_date: Optional[datetime] = None
    size_bytes: int = field(default=0)


def _as_text(value: Union[bytes, str, int]) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def normalize_flags(values: Optional[Sequence[Union[bytes, str]]]) -> Tuple[str, ...]:
    """Decode IMAP flag or label tuples into plain strings."""
    if not values:
        return ()
    return tuple(_as_text(value) for value in values)


class MessageParser:
    """Parse raw RFC822 payloads into :class:`ParsedMessage`.

    Args:
        preview_length: Characters of collapsed plain text kept as preview
    """

    def __init__(self, *, preview_length: int = 200) -> None:
        self.preview_length = preview_length
        self.html_converter = html2text.HTML2Text()
        self.html_converter.ignore_links = False
        self.html_converter.ignore_images = True
        self.html_converter.body_width = 0

    def parse(
        self,
        raw: RawMessage,
        *,
        folder: FolderType,
        skip_attachment_content: bool = True,
    ) -> ParsedMessage:
        """Parse one fetched message.

        Args:
            raw: FETCH response for the message
            folder: Folder classification decided by the adapter
            skip_attachment_content: Mark attachments lazy instead of keeping them

        Returns:
            Normalized message

        Raises:
            ValueError: If the payload cannot be parsed at all
        """
        try:
            msg = message_from_bytes(raw.body, policy=email_policy)
        except Exception as exc:  # noqa: BLE001
            raise ValueError(f"Message {raw.uid} could not be parsed: {exc}") from exc

        body_text, body_html = self._extract_body(msg)
        attachments = self._extract_attachments(msg, body_html, skip_attachment_content)
        flags = {flag.lower() for flag in raw.flags}

        return ParsedMessage(
            uid=raw.uid,
            folder=folder,
            source_folder=raw.source_folder,
            message_id=self._extract_message_id(msg),
            thread_id=raw.thread_id,
            in_reply_to=self._strip_angles(msg.get("In-Reply-To")),
            references=self._extract_references(msg),
            from_address=self._extract_from(msg),
            to_addresses=EmailAddress.from_header(msg.get("To")),
            cc_addresses=EmailAddress.from_header(msg.get("Cc")),
            bcc_addresses=EmailAddress.from_header(msg.get("Bcc")),
            reply_to_addresses=EmailAddress.from_header(msg.get("Reply-To")),
            subject=self._extract_subject(msg),
            preview=self._make_preview(body_text, body_html),
            body_text=body_text,
            body_html=body_html,
            headers=self._extract_headers(msg),
            is_read="\\seen" in flags,
            is_starred="\\flagged" in flags,
            has_attachments=self._has_attachments(msg, attachments),
            attachments=attachments,
            labels=list(raw.labels),
            received_at=self._extract_date(msg, raw.internal_date),
            size_bytes=raw.size_bytes or len(raw.body),
        )

    # ------------------------------------------------------------------
    # Header extraction
    # ------------------------------------------------------------------

    @staticmethod
    def _strip_angles(value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        stripped = str(value).strip().strip("<>").strip()
        return stripped or None

    def _extract_message_id(self, msg: StdEmailMessage) -> Optional[str]:
        return self._strip_angles(msg.get("Message-ID"))

    def _extract_references(self, msg: StdEmailMessage) -> List[str]:
        references = msg.get("References")
        if not references:
            return []
        return [ref.strip("<>") for ref in str(references).split() if ref.strip("<>")]

    def _extract_subject(self, msg: StdEmailMessage) -> str:
        subject = msg.get("Subject")
        if subject is None:
            return NO_SUBJECT
        text = _WHITESPACE.sub(" ", str(subject)).strip()
        return text or NO_SUBJECT

    def _extract_from(self, msg: StdEmailMessage) -> EmailAddress:
        addresses = EmailAddress.from_header(msg.get("From"))
        if not addresses:
            logger.debug("Message missing From header, using fallback")
            return EmailAddress(address=UNKNOWN_SENDER)
        return addresses[0]

    def _extract_date(self, msg: StdEmailMessage, internal_date: Optional[datetime]) -> datetime:
        date_header = msg.get("Date")
        if date_header:
            try:
                parsed = parsedate_to_datetime(str(date_header))
            except (TypeError, ValueError):
                parsed = None
            if parsed is not None:
                return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
        if internal_date is not None:
            return internal_date if internal_date.tzinfo else internal_date.replace(tzinfo=timezone.utc)
        return utcnow()

    def _extract_headers(self, msg: StdEmailMessage) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        for name in msg.keys():
            try:
                headers[name] = str(msg.get(name))
            except (ValueError, TypeError):
                logger.debug("Skipping malformed header", extra={"header": name})
        return headers

    # ------------------------------------------------------------------
    # Body and attachments
    # ------------------------------------------------------------------

    def _extract_body(self, msg: StdEmailMessage) -> Tuple[Optional[str], Optional[str]]:
        """Return the first text/plain and text/html parts that are not attachments."""
        body_text = None
        body_html = None
        parts = msg.walk() if msg.is_multipart() else [msg]
        for part in parts:
            if part.is_multipart() or part.get_content_disposition() == "attachment":
                continue
            content_type = part.get_content_type()
            if content_type not in ("text/plain", "text/html"):
                continue
            try:
                content = part.get_content()
            except (LookupError, ValueError, UnicodeError) as exc:
                logger.warning("Failed to decode body part", extra={"error": str(exc)})
                continue
            if content_type == "text/plain" and body_text is None:
                body_text = content
            elif content_type == "text/html" and body_html is None:
                body_html = content
        return body_text, body_html

    def _make_preview(self, body_text: Optional[str], body_html: Optional[str]) -> str:
        if self.preview_length <= 0:
            return ""
        text = body_text
        if not text and body_html:
            text = self.html_converter.handle(body_html)
        if not text:
            return ""
        return _WHITESPACE.sub(" ", text).strip()[: self.preview_length]

    def _extract_attachments(
        self,
        msg: StdEmailMessage,
        body_html: Optional[str],
        skip_attachment_content: bool,
    ) -> List[AttachmentMetadata]:
        if not msg.is_multipart():
            return []

        attachments = []
        for part in msg.walk():
            if part.is_multipart():
                continue
            disposition = part.get_content_disposition()
            filename = part.get_filename()
            content_id = self._strip_angles(part.get("Content-ID"))
            if disposition not in ("attachment", "inline") and not filename:
                continue
            if disposition == "inline" and not filename and not content_id:
                continue

            payload = part.get_payload(decode=True)
            referenced = bool(content_id and body_html and f"cid:{content_id}" in body_html)
            attachments.append(
                AttachmentMetadata(
                    filename=filename or content_id or f"part-{len(attachments) + 1}",
                    content_type=part.get_content_type(),
                    size_bytes=len(payload) if payload else 0,
                    content_id=content_id,
                    is_inline=referenced,
                    is_lazy=skip_attachment_content and not referenced,
                )
            )
        return attachments

    @staticmethod
    def _has_attachments(msg: StdEmailMessage, attachments: List[AttachmentMetadata]) -> bool:
        if attachments:
            return True
        return msg.get_content_type() in ("multipart/mixed", "multipart/related")


__all__ = [
    "AttachmentMetadata",
    "EmailAddress",
    "MessageParser",
    "NO_SUBJECT",
    "ParsedMessage",
    "RawMessage",
    "UNKNOWN_SENDER",
    "normalize_flags",
]
