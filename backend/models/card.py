"""Card record model."""

from __future__ import annotations

from sqlalchemy import BigInteger, Boolean, Index, Text
from sqlalchemy.orm import Mapped, mapped_column

from backend.models.base import Base


class Card(Base):
    """One flashcard as last written by any device.

    ``data`` holds the card payload as a JSON document; the record store
    never inspects it. ``updated_at`` is always the server receipt time.
    """

    __tablename__ = "cards"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    device_id: Mapped[str] = mapped_column(Text, nullable=False)
    card_type: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("idx_cards_device_id", "device_id"),
        Index("idx_cards_updated_at", "updated_at"),
        Index("idx_cards_deleted", "deleted"),
    )
