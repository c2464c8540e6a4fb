from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.mailroom.models import Base


class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    notification_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="ACTIVE")  # ACTIVE / DEFUNCT / DEMO

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    # No FK: users already point at organizations/mailrooms for tenant scope.
    created_by_user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    mailrooms: Mapped[list["Mailroom"]] = relationship(
        "Mailroom",
        back_populates="organization",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class Mailroom(Base):
    __tablename__ = "mailrooms"
    __table_args__ = (
        UniqueConstraint("organization_id", "slug", name="uq_mailrooms_org_slug"),
        Index("idx_mailrooms_org", "organization_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="ACTIVE")

    # Notification settings
    admin_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    mailroom_hours: Mapped[dict | None] = mapped_column(JSON, nullable=True)  # day -> [{"start": "09:00", "end": "17:00"}, ...]
    email_additional_text: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    organization: Mapped["Organization"] = relationship("Organization", back_populates="mailrooms")
