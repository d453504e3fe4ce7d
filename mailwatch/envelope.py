"""Lightweight envelope extraction from raw EML bytes.

Uses ``email.parser.BytesHeaderParser`` which parses *only* the headers
without walking the MIME body.  The listener uses it to pick a message
identifier and to pre-filter automated senders before a full parse.
"""

from __future__ import annotations

import email.parser
import email.policy

from .errors import ParseError

# Raised by the header registry on malformed structured headers
_HEADER_ERRORS = (LookupError, ValueError, TypeError, AttributeError)


def extract_envelope(raw_bytes: bytes) -> dict[str, str]:
    """Extract ``message_id``, ``subject``, ``from`` and ``to`` headers.

    Raises :class:`ParseError` when a header cannot be decoded.
    """
    parser = email.parser.BytesHeaderParser(policy=email.policy.default)
    try:
        headers = parser.parsebytes(raw_bytes)
        return {
            "message_id": str(headers.get("Message-ID", "")).strip(),
            "subject": str(headers.get("Subject", "")),
            "from": str(headers.get("From", "")),
            "to": str(headers.get("To", "")),
        }
    except _HEADER_ERRORS as exc:
        raise ParseError(f"malformed message headers: {exc!r}") from exc


def message_key(raw_bytes: bytes, uid: str) -> str:
    """Stable per-mailbox identifier: Message-ID header, else the IMAP UID."""
    return extract_envelope(raw_bytes)["message_id"] or f"imap-uid-{uid}"
