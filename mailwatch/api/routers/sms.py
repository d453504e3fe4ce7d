"""SMS alert delivery check."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends

from mailwatch.api.deps import get_gateway
from mailwatch.models import SmsResult
from mailwatch.sms import SmsGateway

router = APIRouter(prefix="/api/v1/users/{user_id}/sms", tags=["sms"])


@router.post("/test", response_model=SmsResult)
async def send_test_sms(
    user_id: str,
    gateway: Annotated[SmsGateway, Depends(get_gateway)],
):
    """Send a fixed test message with the user's SMS settings. Failures come back in the body."""
    return await gateway.send_test(user_id=user_id)
