"""Device-local card store with sync bookkeeping.

Cards live in a SQLite file next to a small key/value table holding the
sync cursor (``last_sync_at``), the device id and the time of the last
successful sync. Every mutation runs under one ``asyncio.Lock`` so a user
save can never interleave with a pull merge.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from sqlalchemy import func, select
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from client.errors import StorageError, StorageUnavailable, ValidationError
from client.models import Base, LocalCard, SyncMeta
from client.records import CardRecord, now_ms

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Callable, Iterable

    from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)

CURSOR_KEY = "last_sync_at"
DEVICE_ID_KEY = "device_id"
LAST_SUCCESS_KEY = "last_success_at"


@dataclass
class LocalStats:
    """Aggregates computed without touching the network."""

    total_cards: int
    unsynced_count: int
    by_type: dict[str, int] = field(default_factory=dict)


def _sqlite_path(database_url: str) -> Path | None:
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite" or not url.database or url.database == ":memory:":
        return None
    return Path(url.database)


def _to_record(row: LocalCard) -> CardRecord:
    return CardRecord(
        id=row.id,
        card_type=row.card_type,
        data=dict(row.data),
        device_id=row.device_id,
        created_at=row.created_at,
        updated_at=row.updated_at,
        deleted=row.deleted,
    )


class LocalStore:
    """Durable per-device persistence of cards and the sync cursor."""

    def __init__(
        self,
        database_url: str,
        device_id: str | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.database_url = database_url
        self._requested_device_id = device_id
        self._device_id: str | None = None
        self._clock = clock
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None
        self._lock = asyncio.Lock()

    @property
    def device_id(self) -> str:
        """The id this device stamps on its writes."""
        if self._device_id is None:
            raise StorageUnavailable("Local store is not initialized")
        return self._device_id

    async def initialize(self) -> None:
        """Open or create the store. Calling it again is a no-op."""
        if self._session_factory is not None:
            return

        try:
            db_path = _sqlite_path(self.database_url)
            if db_path is not None:
                db_path.parent.mkdir(parents=True, exist_ok=True)
            engine = create_async_engine(self.database_url)
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except (SQLAlchemyError, OSError) as exc:
            logger.error("Cannot open local store at %s: %s", self.database_url, exc)
            raise StorageUnavailable(f"Cannot open local store: {exc}") from exc

        self._engine = engine
        self._session_factory = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        self._device_id = await self._ensure_device_id()
        logger.info("Local store ready (device %s)", self._device_id)

    async def close(self) -> None:
        """Dispose the engine; the store can be initialized again afterwards."""
        if self._engine is not None:
            await self._engine.dispose()
        self._engine = None
        self._session_factory = None

    @asynccontextmanager
    async def _transaction(self) -> AsyncGenerator[AsyncSession]:
        if self._session_factory is None:
            raise StorageUnavailable("Local store is not initialized")
        try:
            async with self._session_factory() as session, session.begin():
                yield session
        except SQLAlchemyError as exc:
            raise StorageError(f"Local store operation failed: {exc}") from exc

    async def _get_meta(self, session: AsyncSession, key: str) -> str | None:
        row = await session.get(SyncMeta, key)
        return row.value if row is not None else None

    async def _set_meta(self, session: AsyncSession, key: str, value: str) -> None:
        row = await session.get(SyncMeta, key)
        if row is None:
            session.add(SyncMeta(key=key, value=value))
        else:
            row.value = value

    async def _ensure_device_id(self) -> str:
        async with self._lock, self._transaction() as session:
            stored = await self._get_meta(session, DEVICE_ID_KEY)
            device_id = self._requested_device_id or stored or uuid.uuid4().hex
            if device_id != stored:
                await self._set_meta(session, DEVICE_ID_KEY, device_id)
            return device_id

    # ── Cards ────────────────────────────────────────

    async def put_cards(self, records: Iterable[CardRecord]) -> list[CardRecord]:
        """Insert or overwrite cards by id as local writes pending push.

        Each card is stamped with this device's id and a local ``updated_at``
        newer than the stored version; ``created_at`` is kept from the stored
        version, else taken from the record, else set to now.
        Returns the stamped records.
        """
        batch = list(records)
        for record in batch:
            record.validate()

        stamped: list[CardRecord] = []
        async with self._lock, self._transaction() as session:
            now = self._clock()
            for record in batch:
                row = await session.get(LocalCard, record.id)
                if row is None:
                    created_at = record.created_at if record.created_at is not None else now
                    row = LocalCard(
                        id=record.id,
                        device_id=self.device_id,
                        card_type=record.card_type,
                        data=dict(record.data),
                        created_at=created_at,
                        updated_at=now,
                        deleted=False,
                        pending=True,
                    )
                    session.add(row)
                else:
                    row.device_id = self.device_id
                    row.card_type = record.card_type
                    row.data = dict(record.data)
                    row.updated_at = max(now, row.updated_at + 1)
                    row.deleted = False
                    row.pending = True
                await session.flush()
                stamped.append(_to_record(row))

        logger.debug("Saved %d card(s) locally", len(stamped))
        return stamped

    async def get_card(self, card_id: str) -> CardRecord | None:
        async with self._transaction() as session:
            row = await session.get(LocalCard, card_id)
            return _to_record(row) if row is not None else None

    async def get_unsynced_cards(self) -> list[CardRecord]:
        """Return every local write not yet confirmed by the server, oldest first."""
        async with self._transaction() as session:
            result = await session.execute(
                select(LocalCard)
                .where(LocalCard.pending.is_(True))
                .order_by(LocalCard.updated_at.asc(), LocalCard.id.asc())
            )
            return [_to_record(row) for row in result.scalars().all()]

    async def count_unsynced(self) -> int:
        async with self._transaction() as session:
            count = await session.scalar(
                select(func.count()).select_from(LocalCard).where(LocalCard.pending.is_(True))
            )
            return int(count or 0)

    async def mark_synced(self, records: Iterable[CardRecord], receipt_time: int) -> int:
        """Clear the pending mark of pushed cards and adopt the server's ``updated_at``.

        Once confirmed, a card carries the server receipt time so later
        merges compare server timestamps with server timestamps, whatever
        this device's clock says. A card saved again after it was read for
        the push has a newer ``updated_at`` than the pushed version and
        stays pending.
        """
        if receipt_time < 0:
            raise ValidationError("Receipt time must be a non-negative timestamp")
        cleared = 0
        async with self._lock, self._transaction() as session:
            for record in records:
                row = await session.get(LocalCard, record.id)
                if row is None or not row.pending or row.updated_at != record.updated_at:
                    continue
                row.pending = False
                row.updated_at = receipt_time
                cleared += 1
        return cleared

    async def merge_remote_cards(self, records: Iterable[CardRecord]) -> int:
        """Apply pulled cards with last-write-wins.

        A card is inserted when unknown and replaced only when its
        ``updated_at`` is strictly greater than the local one. A replaced
        local edit is lost and no longer pending. Returns how many cards
        were applied.
        """
        batch = list(records)
        for record in batch:
            record.validate()
            if record.updated_at is None or not record.device_id:
                raise ValidationError(
                    f"Card {record.id}: remote cards need updated_at and device_id"
                )

        applied = 0
        async with self._lock, self._transaction() as session:
            for record in batch:
                updated_at: int = record.updated_at  # type: ignore[assignment]
                row = await session.get(LocalCard, record.id)
                if row is None:
                    session.add(
                        LocalCard(
                            id=record.id,
                            device_id=record.device_id,
                            card_type=record.card_type,
                            data=dict(record.data),
                            created_at=(
                                record.created_at if record.created_at is not None else updated_at
                            ),
                            updated_at=updated_at,
                            deleted=record.deleted,
                            pending=False,
                        )
                    )
                elif updated_at > row.updated_at:
                    if row.pending:
                        logger.info("Remote version of card %s replaces a local edit", row.id)
                    row.device_id = record.device_id  # type: ignore[assignment]
                    row.card_type = record.card_type
                    row.data = dict(record.data)
                    row.updated_at = updated_at
                    row.deleted = record.deleted
                    row.pending = False
                else:
                    continue
                await session.flush()
                applied += 1

        logger.debug("Merged %d of %d remote card(s)", applied, len(batch))
        return applied

    async def get_stats(self) -> LocalStats:
        """Count cards locally: total live cards, unsynced cards and per type."""
        async with self._transaction() as session:
            result = await session.execute(
                select(LocalCard.card_type, func.count())
                .where(LocalCard.deleted.is_(False))
                .group_by(LocalCard.card_type)
            )
            by_type = {card_type: int(count) for card_type, count in result.all()}
            unsynced = await session.scalar(
                select(func.count()).select_from(LocalCard).where(LocalCard.pending.is_(True))
            )
        return LocalStats(
            total_cards=sum(by_type.values()),
            unsynced_count=int(unsynced or 0),
            by_type=by_type,
        )

    # ── Cursor ───────────────────────────────────────

    async def get_cursor(self) -> int:
        """Return ``last_sync_at``; 0 means never synced."""
        async with self._transaction() as session:
            value = await self._get_meta(session, CURSOR_KEY)
        return int(value) if value is not None else 0

    async def set_cursor(self, timestamp: int) -> int:
        """Advance ``last_sync_at``. A smaller value is ignored. Returns the cursor."""
        if timestamp < 0:
            raise ValidationError("Cursor must be a non-negative timestamp")
        async with self._lock, self._transaction() as session:
            value = await self._get_meta(session, CURSOR_KEY)
            current = int(value) if value is not None else 0
            if timestamp <= current:
                return current
            await self._set_meta(session, CURSOR_KEY, str(timestamp))
            return timestamp

    async def record_sync_success(self, at: int | None = None) -> None:
        """Remember the local wall-clock time of the last completed sync."""
        value = at if at is not None else self._clock()
        async with self._lock, self._transaction() as session:
            await self._set_meta(session, LAST_SUCCESS_KEY, str(value))

    async def get_last_success(self) -> int | None:
        async with self._transaction() as session:
            value = await self._get_meta(session, LAST_SUCCESS_KEY)
        return int(value) if value is not None else None
