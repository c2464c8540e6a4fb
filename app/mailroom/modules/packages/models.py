from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.mailroom.constants import PACKAGE_NUMBER_MAX, PACKAGE_NUMBER_MIN
from app.mailroom.models import Base
from app.mailroom.modules.packages.lifecycle import LIVE_STATUSES, PackageStatus
from app.mailroom.modules.residents.models import Resident

_LIVE_SQL = "status IN ({})".format(", ".join(f"'{s.value}'" for s in sorted(LIVE_STATUSES)))
_NUMBER_RANGE_SQL = f"BETWEEN {PACKAGE_NUMBER_MIN} AND {PACKAGE_NUMBER_MAX}"


class PackageNumber(Base):
    """
    One row per (mailroom, display number). The pool, not the package row,
    is the source of truth for whether a number is free.
    """

    __tablename__ = "package_numbers"
    __table_args__ = (
        CheckConstraint(f"number {_NUMBER_RANGE_SQL}", name="ck_package_numbers_range"),
        Index("idx_package_numbers_available", "mailroom_id", "is_available", "number"),
    )

    mailroom_id: Mapped[int] = mapped_column(ForeignKey("mailrooms.id", ondelete="CASCADE"), primary_key=True)
    number: Mapped[int] = mapped_column(Integer, primary_key=True)
    is_available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)


class Package(Base):
    __tablename__ = "packages"
    __table_args__ = (
        CheckConstraint(f"package_id {_NUMBER_RANGE_SQL}", name="ck_packages_number_range"),
        # Backstop for the allocator: one live package per number per mailroom.
        Index(
            "uq_packages_live_number",
            "mailroom_id",
            "package_id",
            unique=True,
            sqlite_where=text(_LIVE_SQL),
            postgresql_where=text(_LIVE_SQL),
        ),
        Index("idx_packages_mailroom", "mailroom_id"),
        Index("idx_packages_resident", "resident_id"),
        Index("idx_packages_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    mailroom_id: Mapped[int] = mapped_column(ForeignKey("mailrooms.id", ondelete="CASCADE"), nullable=False)
    resident_id: Mapped[int] = mapped_column(ForeignKey("residents.id", ondelete="RESTRICT"), nullable=False)
    staff_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    package_id: Mapped[int] = mapped_column(Integer, nullable=False)  # recycled display number
    provider: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=PackageStatus.WAITING.value)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    retrieved_timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    resolved_timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    pickup_staff_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    resolved_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    # Optimistic lock: two staff resolving the same package cannot both commit.
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    resident: Mapped["Resident"] = relationship("Resident", lazy="joined")

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_live(self) -> bool:
        return PackageStatus(self.status) in LIVE_STATUSES

    @property
    def current_number(self) -> int | None:
        """The display number, only while the package still holds it."""
        return self.package_id if self.is_live else None


class FailedPackageLog(Base):
    """
    Staff follow-up record. Registration failures never held a number;
    notification failures point at the (still live) package they concern.
    """

    __tablename__ = "failed_package_logs"
    __table_args__ = (
        Index("idx_failed_logs_mailroom", "mailroom_id"),
        Index("idx_failed_logs_resolved", "resolved"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    mailroom_id: Mapped[int] = mapped_column(ForeignKey("mailrooms.id", ondelete="CASCADE"), nullable=False)
    staff_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    failure_type: Mapped[str] = mapped_column(String(32), nullable=False)  # registration / notification
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=PackageStatus.FAILED.value)
    package_row_id: Mapped[int | None] = mapped_column(ForeignKey("packages.id", ondelete="SET NULL"), nullable=True)

    student_id: Mapped[str] = mapped_column(String(64), nullable=False)
    first_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    provider: Mapped[str] = mapped_column(String(64), nullable=False)
    error_details: Mapped[str | None] = mapped_column(Text, nullable=True)

    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolved_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
