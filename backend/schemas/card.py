"""Card sync schemas (wire format shared by push and pull)."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CardIn(BaseModel):
    """A card as submitted by a device.

    ``device_id`` and ``updated_at`` are accepted for symmetry with the pull
    format but are ignored: the request's device id and the server receipt
    time always win.
    """

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1, max_length=200)
    card_type: str = Field(min_length=1, max_length=100)
    data: dict[str, Any]
    created_at: int | None = Field(default=None, ge=0)
    updated_at: int | None = None
    device_id: str | None = None
    deleted: bool = False

    @field_validator("id", "card_type", mode="before")
    @classmethod
    def strip_text(cls, v: str) -> str:
        return v.strip() if isinstance(v, str) else v


class CardOut(BaseModel):
    """A card as stored in the record store."""

    id: str
    device_id: str
    card_type: str
    data: dict[str, Any]
    created_at: int
    updated_at: int
    deleted: bool = False


class CardUploadRequest(BaseModel):
    """Request body of ``POST /api/cards``."""

    device_id: str = Field(min_length=1, max_length=200)
    cards: list[CardIn]

    @field_validator("device_id", mode="before")
    @classmethod
    def strip_device_id(cls, v: str) -> str:
        return v.strip() if isinstance(v, str) else v


class CardUploadResponse(BaseModel):
    """Result of a committed push batch."""

    success: bool = True
    uploaded: int
    timestamp: int


class CardDownloadResponse(BaseModel):
    """Records changed since the requested cursor, oldest first."""

    success: bool = True
    cards: list[CardOut]
    count: int
    timestamp: int


class StatsResponse(BaseModel):
    """Advisory aggregate over the record store."""

    total_cards: int
    total_devices: int
    timestamp: int
