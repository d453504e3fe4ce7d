"""Per-user mailbox and SMS settings endpoints."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status

from mailwatch.api.deps import get_settings_store
from mailwatch.api.schemas import SettingsIn, SettingsOut
from mailwatch.models import UserCredentials
from mailwatch.store import SettingsStore

router = APIRouter(prefix="/api/v1/users/{user_id}/settings", tags=["settings"])


def _settings_out(credentials: UserCredentials) -> SettingsOut:
    return SettingsOut(
        mailbox_host=credentials.mailbox_host,
        mailbox_port=credentials.mailbox_port,
        mailbox_user=credentials.mailbox_user,
        sms_recipient=credentials.sms_recipient,
        has_sms_token=credentials.sms_token is not None,
    )


@router.get("", response_model=SettingsOut)
async def get_settings(
    user_id: str,
    store: Annotated[SettingsStore, Depends(get_settings_store)],
):
    credentials = await store.get(user_id)
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Settings not found")
    return _settings_out(credentials)


@router.put("", response_model=SettingsOut)
async def put_settings(
    user_id: str,
    body: SettingsIn,
    store: Annotated[SettingsStore, Depends(get_settings_store)],
):
    await store.save(
        user_id,
        mailbox_host=body.mailbox_host,
        mailbox_port=body.mailbox_port,
        mailbox_user=body.mailbox_user,
        mailbox_password=body.mailbox_password,
        sms_recipient=body.sms_recipient,
        sms_token=body.sms_token,
    )
    return SettingsOut(
        mailbox_host=body.mailbox_host,
        mailbox_port=body.mailbox_port,
        mailbox_user=body.mailbox_user,
        sms_recipient=body.sms_recipient,
        has_sms_token=bool(body.sms_token),
    )
