"""SQLAlchemy ORM models backing the persistent state."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base


class CatalogDefinitionRecord(Base):
    """One configured external catalog and the collection it feeds."""

    __tablename__ = "catalogs"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    manifest_url: Mapped[str] = mapped_column(Text, default="")
    catalog_id: Mapped[str] = mapped_column(String(255))
    name: Mapped[str] = mapped_column(String(255))
    type: Mapped[str] = mapped_column(String(16))
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    update_interval_hours: Mapped[int] = mapped_column(Integer, default=0)
    last_updated: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="idle")
    max_items: Mapped[int] = mapped_column(Integer, default=100)
    imported_count: Mapped[int] = mapped_column(Integer, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, default=0)
    collection_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    collection_item_count: Mapped[int] = mapped_column(Integer, default=0)
