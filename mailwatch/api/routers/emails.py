"""Processed-email listing and statistics endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, Query

from mailwatch.api.deps import get_email_store
from mailwatch.api.schemas import PaginatedResponse
from mailwatch.models import DailyStats, Importance, ProcessedEmail, StatsSummary
from mailwatch.store import EmailStore

router = APIRouter(prefix="/api/v1/users/{user_id}", tags=["emails"])


@router.get("/emails", response_model=PaginatedResponse[ProcessedEmail])
async def list_emails(
    user_id: str,
    store: Annotated[EmailStore, Depends(get_email_store)],
    importance: Importance | None = Query(default=None),
    sender: str | None = Query(default=None),
    date_from: datetime | None = Query(default=None),
    date_to: datetime | None = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
):
    items = await store.list_processed_emails(
        user_id,
        importance=importance,
        sender=sender,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset,
    )
    return PaginatedResponse[ProcessedEmail](items=items, offset=offset, limit=limit)


@router.get("/stats/daily", response_model=list[DailyStats])
async def daily_stats(
    user_id: str,
    store: Annotated[EmailStore, Depends(get_email_store)],
    days: int = Query(default=7, ge=1, le=365),
):
    return await store.get_daily_stats(user_id, days=days)


@router.get("/stats/summary", response_model=StatsSummary)
async def stats_summary(
    user_id: str,
    store: Annotated[EmailStore, Depends(get_email_store)],
):
    return await store.get_summary(user_id)
