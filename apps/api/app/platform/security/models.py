from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base, utcnow


class TablePolicyRecord(Base):
    __tablename__ = "platform_table_policy"

    table_name: Mapped[str] = mapped_column(String(64), primary_key=True)
    access_policy: Mapped[str] = mapped_column(String(32), nullable=False, default="owner_scoped")
    owner_column: Mapped[str] = mapped_column(String(64), nullable=False, default="owner_id", server_default="owner_id")
    updated_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
