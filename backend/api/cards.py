"""Card sync API endpoints: upload, download and stats."""

from __future__ import annotations

import asyncio
import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Path, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from backend.api.deps import get_session, get_settings
from backend.config import Settings
from backend.schemas.card import (
    CardDownloadResponse,
    CardUploadRequest,
    CardUploadResponse,
    StatsResponse,
)
from backend.services.card_service import get_stats, pull_cards, push_cards, validate_batch
from backend.services.clock_service import now_ms

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["cards"])


def get_push_lock(request: Request) -> asyncio.Lock:
    """Get the lock serializing pushes, created with the app.

    Receipt times must be assigned in commit order; otherwise a pull could
    advance its cursor past a batch that commits later with an earlier
    receipt time.
    """
    lock: asyncio.Lock = request.app.state.push_lock
    return lock


@router.post("/cards", response_model=CardUploadResponse)
async def upload_cards(
    body: CardUploadRequest,
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    push_lock: Annotated[asyncio.Lock, Depends(get_push_lock)],
) -> CardUploadResponse:
    """Upsert a device's pending cards; the whole batch commits or none of it does."""
    validate_batch(body.cards, settings.max_upload_cards)
    async with push_lock:
        uploaded, receipt = await push_cards(session, body.device_id, body.cards)
    return CardUploadResponse(uploaded=uploaded, timestamp=receipt)


@router.get("/cards/{device_id}", response_model=CardDownloadResponse)
async def download_cards(
    device_id: Annotated[str, Path(min_length=1, max_length=200)],
    session: Annotated[AsyncSession, Depends(get_session)],
    since: Annotated[int, Query(ge=0)] = 0,
) -> CardDownloadResponse:
    """Return cards changed since ``since`` by devices other than ``device_id``."""
    cards = await pull_cards(session, device_id, since)
    return CardDownloadResponse(cards=cards, count=len(cards), timestamp=now_ms())


@router.get("/stats", response_model=StatsResponse)
async def stats(
    session: Annotated[AsyncSession, Depends(get_session)],
) -> StatsResponse:
    """Advisory aggregate: live cards and distinct devices."""
    total_cards, total_devices = await get_stats(session)
    return StatsResponse(
        total_cards=total_cards,
        total_devices=total_devices,
        timestamp=now_ms(),
    )
