"""Request and response schemas for the HTTP surface."""

from __future__ import annotations

from typing import Generic, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class PaginatedResponse(BaseModel, Generic[T]):
    items: list[T]
    offset: int
    limit: int


class SettingsIn(BaseModel):
    mailbox_host: str = Field(min_length=1)
    mailbox_port: int = Field(default=993, ge=1, le=65535)
    mailbox_user: str = Field(min_length=1)
    mailbox_password: str = Field(min_length=1)
    sms_recipient: str | None = None
    sms_token: str | None = None


class SettingsOut(BaseModel):
    """Stored settings with secrets withheld."""

    mailbox_host: str
    mailbox_port: int
    mailbox_user: str
    sms_recipient: str | None
    has_sms_token: bool


class ConnectionTestOut(BaseModel):
    imap: bool
    gemini: bool
    sms_configured: bool
