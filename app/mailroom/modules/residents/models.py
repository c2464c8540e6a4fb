from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.mailroom.models import Base

RESIDENT_ACTIVE = "ACTIVE"
RESIDENT_STATUSES = {RESIDENT_ACTIVE, "REMOVED_BULK", "REMOVED_INDIVIDUAL", "ADMIN_ACTION"}


class Resident(Base):
    __tablename__ = "residents"
    __table_args__ = (
        UniqueConstraint("mailroom_id", "student_id", name="uq_residents_mailroom_student"),
        Index("idx_residents_mailroom", "mailroom_id"),
        Index("idx_residents_student_id", "student_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    mailroom_id: Mapped[int] = mapped_column(ForeignKey("mailrooms.id", ondelete="CASCADE"), nullable=False)

    student_id: Mapped[str] = mapped_column(String(64), nullable=False)  # external identifier
    first_name: Mapped[str] = mapped_column(String(128), nullable=False)
    last_name: Mapped[str] = mapped_column(String(128), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=RESIDENT_ACTIVE)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    added_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    @property
    def is_active(self) -> bool:
        return self.status == RESIDENT_ACTIVE

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()
