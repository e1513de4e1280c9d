"""Card records and their JSON wire format."""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from client.errors import ValidationError


class CardType(StrEnum):
    """Kinds of cards the app authors. Opaque to the sync layer."""

    VERB_CONJUGATION = "verb_conjugation"
    SENTENCE = "sentence"


@dataclass
class CardRecord:
    """One flashcard plus its sync metadata.

    ``data`` is the card payload and is replaced as a whole, never merged.
    Timestamps are epoch milliseconds.
    """

    id: str
    card_type: str
    data: dict[str, Any] = field(default_factory=dict)
    device_id: str | None = None
    created_at: int | None = None
    updated_at: int | None = None
    deleted: bool = False

    def validate(self) -> None:
        """Raise ``ValidationError`` unless the record can be stored or pushed."""
        if not isinstance(self.id, str) or not self.id.strip():
            raise ValidationError("Card id must be a non-empty string")
        if not isinstance(self.card_type, str) or not self.card_type.strip():
            raise ValidationError(f"Card {self.id}: card_type must be a non-empty string")
        if not isinstance(self.data, dict):
            raise ValidationError(f"Card {self.id}: data must be an object")

    def to_wire(self) -> dict[str, Any]:
        """Serialize for the sync API."""
        return asdict(self)

    @classmethod
    def from_wire(cls, payload: Mapping[str, Any]) -> CardRecord:
        """Parse a card returned by the sync API.

        Pulled cards always carry the server's ``updated_at``; without it a
        card cannot take part in last-write-wins merging.
        """
        if not isinstance(payload, Mapping):
            raise ValidationError("Card must be an object")
        updated_at = payload.get("updated_at")
        if not isinstance(updated_at, int) or isinstance(updated_at, bool):
            raise ValidationError(f"Card {payload.get('id')!r}: updated_at must be an integer")
        created_at = payload.get("created_at")
        record = cls(
            id=payload.get("id", ""),
            card_type=payload.get("card_type", ""),
            data=payload.get("data"),  # type: ignore[arg-type]
            device_id=payload.get("device_id"),
            created_at=created_at if isinstance(created_at, int) else None,
            updated_at=updated_at,
            deleted=bool(payload.get("deleted", False)),
        )
        record.validate()
        return record


def now_ms() -> int:
    """Return the current UTC time in epoch milliseconds."""
    return int(datetime.now(UTC).timestamp() * 1000)


def new_card_id() -> str:
    """Generate a collision-resistant card id on the device."""
    return uuid.uuid4().hex


def new_card(card_type: str, data: dict[str, Any]) -> CardRecord:
    """Create a fresh, not yet stored card."""
    return CardRecord(id=new_card_id(), card_type=str(card_type), data=data)
