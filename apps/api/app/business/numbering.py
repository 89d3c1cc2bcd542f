from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, Integer, String, UniqueConstraint, Uuid, select
from sqlalchemy.orm import Mapped, Session, mapped_column

from app.core.database import Base
from app.core.locks import dedup_locks


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DocumentSequence(Base):
    __tablename__ = "document_sequence"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[str] = mapped_column(String(128), nullable=False)
    prefix: Mapped[str] = mapped_column(String(16), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    last_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("organization_id", "prefix", "year", name="uq_document_sequence_scope"),
    )


def next_document_number(session: Session, prefix: str, *, organization_id: str, year: int) -> str:
    """Allocate `{prefix}-{year}-{seq:03d}` from the per-organization counter.

    Values are never reused; a rolled-back transaction releases its value, a committed
    one that is later compensated leaves a gap.
    """
    with dedup_locks.hold(f"sequence:{organization_id}:{prefix}:{year}"):
        sequence = session.scalar(
            select(DocumentSequence)
            .where(
                DocumentSequence.organization_id == organization_id,
                DocumentSequence.prefix == prefix,
                DocumentSequence.year == year,
            )
            .with_for_update()
        )
        if sequence is None:
            sequence = DocumentSequence(organization_id=organization_id, prefix=prefix, year=year, last_value=0)
            session.add(sequence)
        sequence.last_value = int(sequence.last_value or 0) + 1
        session.flush()
        return f"{prefix}-{year}-{sequence.last_value:03d}"
