from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Enum, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from medibook.models.base import Base, TimestampMixin, UTCDateTime, new_id


class DocumentSection(str, enum.Enum):
    ime_documents = "ime_documents"
    supplementary_documents = "supplementary_documents"


class DocumentCategory(str, enum.Enum):
    consent_form = "consent_form"
    document_brief = "document_brief"
    dictation = "dictation"
    draft_report = "draft_report"
    final_report = "final_report"


class Document(Base, TimestampMixin):
    __tablename__ = "documents"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    booking_id: Mapped[str] = mapped_column(
        ForeignKey("bookings.id", ondelete="CASCADE"), index=True, nullable=False
    )
    uploaded_by: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    section: Mapped[DocumentSection] = mapped_column(
        Enum(DocumentSection, name="document_section"), nullable=False
    )
    category: Mapped[DocumentCategory] = mapped_column(
        Enum(DocumentCategory, name="document_category"), nullable=False
    )
    # ciphertext columns, see medibook.core.encryption.DOCUMENT_ENCRYPTED_FIELDS
    storage_key: Mapped[str] = mapped_column(Text, nullable=False)
    file_name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    storage_bucket: Mapped[str] = mapped_column(String(200), nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False)
    mime_type: Mapped[str] = mapped_column(String(120), nullable=False)
    extra: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True, index=True)
