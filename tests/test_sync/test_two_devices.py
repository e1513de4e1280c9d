"""End-to-end sync between two devices through the real server app."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from httpx import ASGITransport

from client.api_client import SyncApiClient
from client.records import CardRecord, new_card, now_ms
from client.sync_engine import SyncEngine

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Awaitable, Callable

    from fastapi import FastAPI

    from client.local_store import LocalStore

    DeviceFactory = Callable[..., Awaitable[SyncEngine]]


@pytest.fixture
async def device_factory(
    app: FastAPI, make_store: Callable[..., LocalStore]
) -> AsyncGenerator[DeviceFactory]:
    engines: list[SyncEngine] = []

    async def _device(name: str, **store_kwargs: object) -> SyncEngine:
        store = make_store(name, device_id=name, **store_kwargs)
        await store.initialize()
        api = SyncApiClient("http://test", transport=ASGITransport(app=app))
        engine = SyncEngine(store, api)
        engines.append(engine)
        return engine

    yield _device

    for engine in engines:
        await engine.aclose()
        await engine.api.aclose()


class TestTwoDevices:
    async def test_edit_on_one_device_reaches_the_other(
        self, device_factory: DeviceFactory
    ) -> None:
        phone = await device_factory("A")
        tablet = await device_factory("B")

        (card,) = await phone.store.put_cards(
            [CardRecord(id="c1", card_type="verb_conjugation", data={"verb": "hablar"})]
        )
        await phone.sync_cards()
        await tablet.sync_cards()

        pulled = await tablet.store.get_card("c1")
        assert pulled is not None
        assert pulled.data == {"verb": "hablar"}
        assert pulled.device_id == "A"
        assert pulled.created_at == card.created_at
        first_cursor = await tablet.store.get_cursor()
        assert first_cursor == pulled.updated_at

        await tablet.store.put_cards(
            [
                CardRecord(
                    id="c1",
                    card_type="verb_conjugation",
                    data={"verb": "hablar", "note": "edited"},
                )
            ]
        )
        result = await tablet.sync_cards()
        assert result is not None
        assert result.uploaded == 1
        assert result.downloaded == 0

        await phone.sync_cards()
        on_phone = await phone.store.get_card("c1")
        assert on_phone is not None
        assert on_phone.data == {"verb": "hablar", "note": "edited"}
        assert on_phone.device_id == "B"
        assert on_phone.created_at == card.created_at
        assert await phone.store.count_unsynced() == 0
        assert await tablet.store.get_cursor() == first_cursor

    async def test_device_clock_ahead_still_receives_newer_edits(
        self, device_factory: DeviceFactory
    ) -> None:
        phone = await device_factory("A", clock=lambda: now_ms() + 3_600_000)
        tablet = await device_factory("B")

        await phone.store.put_cards(
            [CardRecord(id="c1", card_type="verb_conjugation", data={"verb": "hablar"})]
        )
        await phone.sync_cards()
        await tablet.sync_cards()
        await tablet.store.put_cards(
            [
                CardRecord(
                    id="c1",
                    card_type="verb_conjugation",
                    data={"verb": "hablar", "note": "edited"},
                )
            ]
        )
        await tablet.sync_cards()

        result = await phone.sync_cards()

        assert result is not None
        assert result.ok
        on_phone = await phone.store.get_card("c1")
        on_tablet = await tablet.store.get_card("c1")
        assert on_phone is not None
        assert on_tablet is not None
        assert on_phone.data == {"verb": "hablar", "note": "edited"}
        assert on_phone.device_id == "B"
        assert on_phone.updated_at == on_tablet.updated_at
        assert await phone.store.count_unsynced() == 0

    async def test_device_never_pulls_its_own_writes(
        self, device_factory: DeviceFactory
    ) -> None:
        phone = await device_factory("A")

        await phone.store.put_cards([new_card("sentence", {"s": 1}), new_card("sentence", {})])
        first = await phone.sync_cards()
        second = await phone.sync_cards()

        assert first is not None
        assert second is not None
        assert (first.uploaded, first.downloaded) == (2, 0)
        assert (second.uploaded, second.downloaded) == (0, 0)
        assert await phone.store.get_cursor() == 0

    async def test_last_push_wins_and_converges(
        self, device_factory: DeviceFactory
    ) -> None:
        phone = await device_factory("A")
        tablet = await device_factory("B")

        await phone.store.put_cards([CardRecord(id="c1", card_type="sentence", data={"v": "A"})])
        await tablet.store.put_cards([CardRecord(id="c1", card_type="sentence", data={"v": "B"})])

        await phone.sync_cards()
        await tablet.sync_cards()
        await phone.sync_cards()

        on_phone = await phone.store.get_card("c1")
        on_tablet = await tablet.store.get_card("c1")
        assert on_phone is not None
        assert on_tablet is not None
        assert on_phone.data == on_tablet.data == {"v": "B"}
        assert await phone.store.count_unsynced() == 0
        assert await tablet.store.count_unsynced() == 0

    async def test_cursor_only_moves_forward_across_cycles(
        self, device_factory: DeviceFactory
    ) -> None:
        phone = await device_factory("A")
        tablet = await device_factory("B")

        cursors = []
        for i in range(4):
            await phone.store.put_cards([new_card("sentence", {"i": i})])
            await phone.sync_cards()
            await tablet.sync_cards()
            cursors.append(await tablet.store.get_cursor())
            await tablet.sync_cards()
            assert await tablet.store.get_cursor() == cursors[-1]

        assert cursors == sorted(set(cursors))
        assert (await tablet.store.get_stats()).total_cards == 4
