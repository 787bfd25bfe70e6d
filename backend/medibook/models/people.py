from __future__ import annotations

from sqlalchemy import Boolean, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from medibook.models.base import Base, TimestampMixin, new_id


class Referrer(Base, TimestampMixin):
    __tablename__ = "referrers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(ForeignKey("organizations.id"), nullable=False)
    user_id: Mapped[str | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    # ciphertext columns, see medibook.core.encryption.REFERRER_ENCRYPTED_FIELDS
    first_name: Mapped[str] = mapped_column(Text, nullable=False)
    last_name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str | None] = mapped_column(Text, nullable=True)
    phone: Mapped[str | None] = mapped_column(Text, nullable=True)
    job_title: Mapped[str | None] = mapped_column(Text, nullable=True)


class Examinee(Base, TimestampMixin):
    __tablename__ = "examinees"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    referrer_id: Mapped[str] = mapped_column(ForeignKey("referrers.id"), nullable=False)
    # ciphertext columns, see medibook.core.encryption.EXAMINEE_ENCRYPTED_FIELDS
    first_name: Mapped[str] = mapped_column(Text, nullable=False)
    last_name: Mapped[str] = mapped_column(Text, nullable=False)
    date_of_birth: Mapped[str] = mapped_column(Text, nullable=False)
    address: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str] = mapped_column(Text, nullable=False)
    phone_number: Mapped[str | None] = mapped_column(Text, nullable=True)
    condition: Mapped[str] = mapped_column(Text, nullable=False)
    case_type: Mapped[str] = mapped_column(Text, nullable=False)
    authorized_contact: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    referrer = relationship("Referrer", lazy="joined")


class Specialist(Base, TimestampMixin):
    __tablename__ = "specialists"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    user_id: Mapped[str | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    external_calendar_id: Mapped[str] = mapped_column(
        String(64), unique=True, index=True, nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
