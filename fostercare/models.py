"""Core SQLAlchemy models (2.x style) for carers, referrals and audit logs.

List-valued fields, the status history and the stored match list are JSON
columns; they are always replaced with a new value, never mutated in place.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, LargeBinary, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .domain import CarerProfile, ChildReferral


def _new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class Carer(Base):
    """Foster carer profiles."""
    __tablename__ = "carers"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    email: Mapped[str | None] = mapped_column(String(255))
    phone: Mapped[str | None] = mapped_column(String(64))

    min_age: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_age: Mapped[int] = mapped_column(Integer, nullable=False, default=18)
    accepts_siblings: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    allows_pets: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    experience_with_behavioural_needs: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    experience_with_sen: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    preferred_location: Mapped[str] = mapped_column(String(255), nullable=False, default="", index=True)
    excluded_locations: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    gender_preference: Mapped[str | None] = mapped_column(String(16))
    capacity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False,
    )
    created_by: Mapped[str | None] = mapped_column(String(255))
    updated_by: Mapped[str | None] = mapped_column(String(255))

    __table_args__ = (
        Index("ix_carers_updated_at", "updated_at"),
    )

    def to_profile(self) -> CarerProfile:
        return CarerProfile(
            id=self.id,
            name=self.name,
            min_age=self.min_age,
            max_age=self.max_age,
            accepts_siblings=self.accepts_siblings,
            allows_pets=self.allows_pets,
            experience_with_behavioural_needs=self.experience_with_behavioural_needs,
            experience_with_sen=self.experience_with_sen,
            preferred_location=self.preferred_location,
            excluded_locations=list(self.excluded_locations or []),
            gender_preference=self.gender_preference,
            capacity=self.capacity,
            status=self.status,
        )


class Referral(Base):
    """Child referrals with their match list and status history."""
    __tablename__ = "referrals"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)

    age: Mapped[int | None] = mapped_column(Integer)
    gender: Mapped[str | None] = mapped_column(String(16))
    ethnicity: Mapped[str] = mapped_column(String(255), nullable=False, default="Unknown")
    cultural_background: Mapped[str] = mapped_column(String(255), nullable=False, default="Unknown")

    sen_needs: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    disabilities: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    behavioural_needs: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    behavioural_details: Mapped[str] = mapped_column(Text, nullable=False, default="")

    placement_type: Mapped[str] = mapped_column(String(32), nullable=False, default="short-term")
    solo_placement_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sibling_group: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sibling_count: Mapped[int | None] = mapped_column(Integer)
    pets_allowed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    preferred_locations: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    excluded_locations: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    carer_gender_preference: Mapped[str | None] = mapped_column(String(16))

    support_needs: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    medical_needs: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    educational_needs: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    referral_source: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    referral_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    urgency: Mapped[str] = mapped_column(String(16), nullable=False, default="medium", index=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", index=True)
    attachment_name: Mapped[str | None] = mapped_column(String(255))
    # Loaded only on request; select it explicitly under asyncio
    attachment: Mapped[bytes | None] = mapped_column(LargeBinary, deferred=True)
    extracted_data: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    raw_text: Mapped[str | None] = mapped_column(Text)

    matched_carers: Mapped[list[dict]] = mapped_column(JSON, nullable=False, default=list)
    assigned_carer_id: Mapped[str | None] = mapped_column(String(32), index=True)
    assigned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    assigned_by: Mapped[str | None] = mapped_column(String(255))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False,
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    status_history: Mapped[list[dict]] = mapped_column(JSON, nullable=False, default=list)

    __table_args__ = (
        Index("ix_referrals_created_at", "created_at"),
    )

    def to_child_referral(self) -> ChildReferral:
        return ChildReferral(
            id=self.id,
            age=self.age,
            gender=self.gender,
            ethnicity=self.ethnicity,
            cultural_background=self.cultural_background,
            sen_needs=self.sen_needs,
            disabilities=list(self.disabilities or []),
            behavioural_needs=self.behavioural_needs,
            behavioural_details=self.behavioural_details,
            placement_type=self.placement_type,
            solo_placement_required=self.solo_placement_required,
            sibling_group=self.sibling_group,
            sibling_count=self.sibling_count,
            pets_allowed=self.pets_allowed,
            preferred_locations=list(self.preferred_locations or []),
            excluded_locations=list(self.excluded_locations or []),
            carer_gender_preference=self.carer_gender_preference,
            support_needs=list(self.support_needs or []),
            medical_needs=list(self.medical_needs or []),
            educational_needs=list(self.educational_needs or []),
            urgency=self.urgency,
            referral_source=self.referral_source,
            status=self.status,
        )


class AuditLog(Base):
    """Append-only audit trail for carer and referral changes."""
    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    user_name: Mapped[str] = mapped_column(String(255), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    changes: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    notes: Mapped[str | None] = mapped_column(Text)

    __table_args__ = (
        Index("ix_audit_logs_entity", "entity_type", "entity_id", "timestamp"),
    )
