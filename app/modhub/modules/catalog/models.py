from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.modhub.models import Base


def _new_module_id() -> str:
    return str(uuid.uuid4())


class ModuleRecord(Base):
    """Local table backing SqlModuleStore; mirrors the hosted `modules` table."""

    __tablename__ = "modules"
    __table_args__ = (
        Index("idx_modules_created_at", "created_at"),
        Index("idx_modules_is_archived", "is_archived"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_module_id)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
