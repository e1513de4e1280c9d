"""Card sync service: last-write-wins upsert, cursor pulls and aggregates."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from backend.exceptions import InternalServerError, StorageError
from backend.models.card import Card
from backend.schemas.card import CardOut
from backend.services.clock_service import next_receipt_time

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sqlalchemy.ext.asyncio import AsyncSession

    from backend.schemas.card import CardIn

logger = logging.getLogger(__name__)


def validate_batch(cards: Sequence[CardIn], max_cards: int) -> None:
    """Reject a push batch before any storage access."""
    if len(cards) > max_cards:
        raise ValueError(f"Too many cards in one upload (max {max_cards})")


def encode_data(data: dict[str, object]) -> str:
    """Serialize a card payload for storage."""
    return json.dumps(data, ensure_ascii=False, separators=(",", ":"), sort_keys=True)


def card_to_schema(card: Card) -> CardOut:
    """Convert a stored row to its wire representation."""
    try:
        data = json.loads(card.data)
    except json.JSONDecodeError as exc:
        raise InternalServerError(f"Card {card.id} has corrupt stored data") from exc
    if not isinstance(data, dict):
        raise InternalServerError(f"Card {card.id} stored data is not an object")
    return CardOut(
        id=card.id,
        device_id=card.device_id,
        card_type=card.card_type,
        data=data,
        created_at=card.created_at,
        updated_at=card.updated_at,
        deleted=card.deleted,
    )


async def latest_update(session: AsyncSession) -> int | None:
    """Return the greatest ``updated_at`` in the record store, or None if empty."""
    result = await session.execute(select(func.max(Card.updated_at)))
    value: int | None = result.scalar()
    return value


async def push_cards(
    session: AsyncSession,
    device_id: str,
    cards: Sequence[CardIn],
) -> tuple[int, int]:
    """Upsert a batch of cards from ``device_id`` in one transaction.

    Every card in the batch is stamped with the same server receipt time,
    strictly greater than any ``updated_at`` already stored. ``created_at``
    is taken from the first write of an id and never changes afterwards.

    Callers must serialize pushes so that receipt order equals commit order.

    Returns (uploaded, receipt_time). Raises ``StorageError`` after rolling
    back if the transaction cannot be committed.
    """
    try:
        receipt = next_receipt_time(await latest_update(session))
        if not cards:
            return 0, receipt

        ids = {card.id for card in cards}
        result = await session.execute(select(Card).where(Card.id.in_(ids)))
        existing: dict[str, Card] = {row.id: row for row in result.scalars().all()}

        for card in cards:
            row = existing.get(card.id)
            if row is None:
                row = Card(
                    id=card.id,
                    device_id=device_id,
                    card_type=card.card_type,
                    data=encode_data(card.data),
                    created_at=card.created_at if card.created_at is not None else receipt,
                    updated_at=receipt,
                    deleted=False,
                )
                session.add(row)
                existing[card.id] = row
            else:
                row.device_id = device_id
                row.card_type = card.card_type
                row.data = encode_data(card.data)
                row.updated_at = receipt
                row.deleted = False

        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("Push from device %s rolled back: %s", device_id, exc)
        raise StorageError(f"Failed to store card batch from device {device_id}") from exc

    logger.info("Stored %d card(s) from device %s at %d", len(cards), device_id, receipt)
    return len(cards), receipt


async def pull_cards(session: AsyncSession, device_id: str, since: int) -> list[CardOut]:
    """Return live cards written by other devices after ``since``, oldest first."""
    if since < 0:
        raise ValueError("since must be a non-negative timestamp")

    stmt = (
        select(Card)
        .where(
            Card.updated_at > since,
            Card.device_id != device_id,
            Card.deleted.is_(False),
        )
        .order_by(Card.updated_at.asc(), Card.id.asc())
    )
    result = await session.execute(stmt)
    cards = [card_to_schema(row) for row in result.scalars().all()]
    logger.debug("Device %s pulled %d card(s) since %d", device_id, len(cards), since)
    return cards


async def get_stats(session: AsyncSession) -> tuple[int, int]:
    """Return (live card count, distinct device count)."""
    total_cards = await session.scalar(
        select(func.count()).select_from(Card).where(Card.deleted.is_(False))
    )
    total_devices = await session.scalar(select(func.count(func.distinct(Card.device_id))))
    return int(total_cards or 0), int(total_devices or 0)
