# crm_sync/models/documents.py
from __future__ import annotations
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, String, Integer, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from crm_sync.db import Base, utcnow


class Document(Base):
    """One domain document (order, shipment, account, ...) keyed by collection + id."""

    __tablename__ = "documents"

    collection: Mapped[str] = mapped_column(String(64), primary_key=True)
    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
