"""SQLAlchemy ORM models for the card record store."""

from backend.models.base import Base
from backend.models.card import Card

__all__ = [
    "Base",
    "Card",
]
