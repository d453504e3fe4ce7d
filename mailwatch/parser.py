"""Full MIME parser: walks the message to extract headers and body text."""

from __future__ import annotations

import email
import email.message
import email.policy
import email.utils
import html
import re
from dataclasses import dataclass
from datetime import datetime

from .errors import ParseError

_TAG = re.compile(r"<[^>]*>")
_STYLE_OR_SCRIPT = re.compile(r"<(style|script)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_WHITESPACE = re.compile(r"\s+")


@dataclass
class ParsedEmail:
    """Structured representation of a parsed email."""

    message_id: str
    subject: str
    sender: str
    recipient: str
    date: datetime | None
    body_text: str | None
    body_html: str | None

    def text_content(self, limit: int) -> str:
        """Plain-text body, or the HTML body with markup stripped, capped at *limit*."""
        if self.body_text:
            content = self.body_text
        elif self.body_html:
            content = strip_html(self.body_html)
        else:
            content = ""
        return content[:limit]


def strip_html(markup: str) -> str:
    text = _STYLE_OR_SCRIPT.sub(" ", markup)
    text = _TAG.sub(" ", text)
    text = html.unescape(text)
    return _WHITESPACE.sub(" ", text).strip()


class MimeParser:
    """Stateless parser: raw RFC 822 bytes -> ParsedEmail."""

    def parse(self, raw_bytes: bytes) -> ParsedEmail:
        if not raw_bytes or not raw_bytes.strip():
            raise ParseError("empty message")

        try:
            msg = email.message_from_bytes(raw_bytes, policy=email.policy.default)
            if not msg.keys():
                raise ParseError("message has no headers")
            body_text, body_html = self._extract_bodies(msg)
            return ParsedEmail(
                message_id=str(msg.get("Message-ID", "")).strip(),
                subject=str(msg.get("Subject", "")),
                sender=str(msg.get("From", "")),
                recipient=str(msg.get("To", "")),
                date=self._parse_date(msg),
                body_text=body_text,
                body_html=body_html,
            )
        except ParseError:
            raise
        except (LookupError, ValueError, TypeError, AttributeError) as exc:
            raise ParseError(f"malformed message: {exc}") from exc

    def _extract_bodies(self, msg: email.message.Message) -> tuple[str | None, str | None]:
        """Walk MIME parts and return (plain_text, html_text)."""
        body_text: str | None = None
        body_html: str | None = None

        for part in msg.walk():
            # Skip multipart containers, they have no content of their own
            if part.get_content_maintype() == "multipart":
                continue
            if "attachment" in str(part.get("Content-Disposition", "")):
                continue

            content_type = part.get_content_type()
            if content_type not in ("text/plain", "text/html"):
                continue

            payload = part.get_content()
            if not isinstance(payload, str):
                continue
            if content_type == "text/plain" and body_text is None:
                body_text = payload
            elif content_type == "text/html" and body_html is None:
                body_html = payload

        return body_text, body_html

    def _parse_date(self, msg: email.message.Message) -> datetime | None:
        try:
            value = msg.get("Date")
        except (TypeError, ValueError):
            return None
        if not value:
            return None
        datetime_value = getattr(value, "datetime", None)
        if isinstance(datetime_value, datetime):
            return datetime_value
        try:
            return email.utils.parsedate_to_datetime(str(value))
        except (TypeError, ValueError):
            return None
