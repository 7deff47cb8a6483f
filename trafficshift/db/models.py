"""SQLAlchemy ORM models."""

from __future__ import annotations

import datetime
import uuid

from sqlalchemy import DateTime, Float, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class VersionRecord(Base):
    __tablename__ = "versions"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    artifact_ref: Mapped[str] = mapped_column(
        String(512), nullable=False, unique=True
    )
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    tags: Mapped[str | None] = mapped_column(Text, nullable=True)  # JSON string
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime, server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<VersionRecord {self.id[:8]} artifact={self.artifact_ref}>"


class AliasWeight(Base):
    """One row per (alias, version) with a non-zero traffic fraction."""

    __tablename__ = "alias_weights"

    alias_name: Mapped[str] = mapped_column(String(255), primary_key=True)
    version_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    weight: Mapped[float] = mapped_column(Float, nullable=False)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<AliasWeight {self.alias_name} {self.version_id[:8]}={self.weight}>"


class ShiftRecord(Base):
    """Audit row for a shift plan and its runtime status."""

    __tablename__ = "shifts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    alias_name: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    from_version: Mapped[str] = mapped_column(String(36), nullable=False)
    to_version: Mapped[str] = mapped_column(String(36), nullable=False)
    plan: Mapped[str] = mapped_column(Text, nullable=False)  # JSON
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default="pending"
    )
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    current_step: Mapped[int] = mapped_column(Integer, nullable=False, default=-1)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<ShiftRecord {self.id[:8]} {self.alias_name} status={self.status}>"
