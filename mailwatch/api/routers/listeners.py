"""Per-user listener control endpoints."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status

from mailwatch.api.deps import get_classifier, get_gateway, get_registry
from mailwatch.api.schemas import ConnectionTestOut
from mailwatch.classifier import GeminiClassifier
from mailwatch.errors import ConfigurationError, MailboxConnectionError, PersistenceError
from mailwatch.models import ListenerStatus, MailboxStats
from mailwatch.registry import ListenerRegistry
from mailwatch.sms import SmsGateway

router = APIRouter(prefix="/api/v1/users/{user_id}/listener", tags=["listener"])


@router.post("/start", response_model=ListenerStatus)
async def start_listener(
    user_id: str,
    registry: Annotated[ListenerRegistry, Depends(get_registry)],
):
    try:
        return await registry.start_for_user(user_id)
    except ConfigurationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except PersistenceError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@router.post("/stop", status_code=status.HTTP_204_NO_CONTENT)
async def stop_listener(
    user_id: str,
    registry: Annotated[ListenerRegistry, Depends(get_registry)],
):
    await registry.stop_for_user(user_id)


@router.get("/status", response_model=ListenerStatus)
async def listener_status(
    user_id: str,
    registry: Annotated[ListenerRegistry, Depends(get_registry)],
):
    return registry.status_for_user(user_id)


@router.post("/test", response_model=ConnectionTestOut)
async def test_listener(
    user_id: str,
    registry: Annotated[ListenerRegistry, Depends(get_registry)],
    gateway: Annotated[SmsGateway, Depends(get_gateway)],
    classifier: Annotated[GeminiClassifier, Depends(get_classifier)],
):
    """Isolated IMAP connect/logout, a Gemini round trip and an SMS configuration check."""
    return ConnectionTestOut(
        imap=await registry.test_for_user(user_id),
        gemini=await classifier.test_connection(),
        sms_configured=await gateway.is_configured(user_id=user_id),
    )


@router.get("/mailbox", response_model=MailboxStats)
async def mailbox_stats(
    user_id: str,
    registry: Annotated[ListenerRegistry, Depends(get_registry)],
):
    try:
        return await registry.mailbox_stats_for_user(user_id)
    except ConfigurationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except MailboxConnectionError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    except PersistenceError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
