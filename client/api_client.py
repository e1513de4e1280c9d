"""HTTP client for the card sync API."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import httpx

from client.errors import NetworkError, ValidationError
from client.records import CardRecord

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)


class SyncApiClient:
    """Push, pull and stats calls against the sync server.

    Every request is bounded by ``timeout`` so a hung server cannot hold a
    sync cycle open forever. Transport failures and non-success responses
    are raised as ``NetworkError``.
    """

    def __init__(
        self,
        server_url: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.server_url = server_url.rstrip("/")
        self.client = httpx.AsyncClient(
            base_url=self.server_url,
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    async def __aenter__(self) -> SyncApiClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    async def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        try:
            resp = await self.client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise NetworkError(f"{method} {url} failed: {exc!r}") from exc

        if resp.is_error:
            detail: object = resp.text
            try:
                body = resp.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                detail = body.get("detail", detail)
            raise NetworkError(
                f"{method} {url} returned {resp.status_code}: {detail}",
                status_code=resp.status_code,
            )

        try:
            payload = resp.json()
        except ValueError as exc:
            raise NetworkError(f"{method} {url} returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise NetworkError(f"{method} {url} returned an unexpected body")
        if payload.get("success") is False:
            raise NetworkError(f"{method} {url} reported failure: {payload.get('error')}")
        return payload

    async def health(self) -> dict[str, Any]:
        """Check that the server is reachable."""
        return await self._request("GET", "/health")

    async def push(self, device_id: str, records: Sequence[CardRecord]) -> tuple[int, int]:
        """Upload a batch of cards.

        Returns (uploaded, receipt_time): the number the server stored and
        the server timestamp stamped on all of them as ``updated_at``.
        """
        if not device_id:
            raise ValidationError("device_id is required to push cards")
        for record in records:
            record.validate()

        payload = await self._request(
            "POST",
            "/api/cards",
            json={"device_id": device_id, "cards": [r.to_wire() for r in records]},
        )
        uploaded: int = payload.get("uploaded", 0)
        receipt = payload.get("timestamp")
        if not isinstance(receipt, int) or isinstance(receipt, bool):
            raise NetworkError("Server did not return a receipt timestamp for the push")
        logger.debug("Pushed %d card(s) as device %s at %d", uploaded, device_id, receipt)
        return uploaded, receipt

    async def pull(self, device_id: str, since: int) -> list[CardRecord]:
        """Download cards other devices wrote after ``since``, oldest first."""
        if not device_id:
            raise ValidationError("device_id is required to pull cards")
        if since < 0:
            raise ValidationError("since must be a non-negative timestamp")

        payload = await self._request(
            "GET",
            f"/api/cards/{quote(device_id, safe='')}",
            params={"since": since},
        )
        raw_cards = payload.get("cards", [])
        if not isinstance(raw_cards, list):
            raise NetworkError("Server returned a non-array cards field")
        return [CardRecord.from_wire(item) for item in raw_cards]

    async def stats(self) -> dict[str, Any]:
        """Fetch the server's advisory aggregate."""
        return await self._request("GET", "/api/stats")
