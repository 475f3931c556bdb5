from __future__ import annotations

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator

from .base import Base

PROJECT_STATUSES = (
    "pending_payment",
    "paid",
    "accepted",
    "in_progress",
    "review",
    "completed",
    "cancellation_requested",
    "refunded",
)
REVISION_STATUSES = ("pending", "requested", "in_progress", "delivered")
PAYOUT_STATUSES = ("none", "transferred", "manual_required")

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _in_clause(column: str, values: tuple[str, ...]) -> str:
    quoted = ", ".join(f"'{value}'" for value in values)
    return f"{column} in ({quoted})"


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamps on every backend (SQLite drops tzinfo)."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):  # type: ignore[no-untyped-def]
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value, dialect):  # type: ignore[no-untyped-def]
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class ProducerAccount(Base):
    __tablename__ = "producer_account"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    name: Mapped[str | None] = mapped_column(Text, nullable=True)
    email: Mapped[str | None] = mapped_column(Text, nullable=True)
    payout_account_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    payout_onboarded_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)

    @property
    def has_verified_destination(self) -> bool:
        return bool(self.payout_account_id) and self.payout_onboarded_at is not None


class Project(Base):
    __tablename__ = "song_request"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    owner_id: Mapped[str] = mapped_column(Text)
    owner_email: Mapped[str | None] = mapped_column(Text, nullable=True)
    assigned_producer_id: Mapped[str | None] = mapped_column(Text, nullable=True)

    tier: Mapped[str] = mapped_column(Text)
    price: Mapped[int] = mapped_column(BigInteger)
    currency: Mapped[str] = mapped_column(Text, default="usd")
    payment_reference: Mapped[str | None] = mapped_column(Text, nullable=True, unique=True)
    platform_fee_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    producer_payout_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    payout_status: Mapped[str] = mapped_column(Text, default="none")
    refund_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    refund_reference: Mapped[str | None] = mapped_column(Text, nullable=True)
    refund_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(Text, default="pending_payment")
    acceptance_deadline: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    producer_paid_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    blocked_producer_ids: Mapped[list] = mapped_column(JSONType, default=list)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    recommended_refund_percent: Mapped[int | None] = mapped_column(Integer, nullable=True)

    number_of_revisions: Mapped[int] = mapped_column(Integer, default=0)
    wants_mixing: Mapped[bool] = mapped_column(Boolean, default=False)
    wants_mastering: Mapped[bool] = mapped_column(Boolean, default=False)
    wants_analog: Mapped[bool] = mapped_column(Boolean, default=False)
    wants_recorded_stems: Mapped[bool] = mapped_column(Boolean, default=False)
    genre_category: Mapped[str | None] = mapped_column(Text, nullable=True)
    song_idea: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivered_file_refs: Mapped[list | None] = mapped_column(JSONType, nullable=True)

    pending_operation: Mapped[str | None] = mapped_column(Text, nullable=True)
    pending_operation_payload: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow)

    revisions: Mapped[list["Revision"]] = relationship(
        back_populates="project",
        order_by="Revision.revision_number",
    )

    __table_args__ = (
        CheckConstraint(_in_clause("status", PROJECT_STATUSES), name="ck_song_request_status"),
        CheckConstraint(_in_clause("payout_status", PAYOUT_STATUSES), name="ck_song_request_payout_status"),
        CheckConstraint("price >= 0", name="ck_song_request_price"),
        CheckConstraint("number_of_revisions >= 0", name="ck_song_request_revisions"),
        CheckConstraint(
            "platform_fee_amount is null or producer_payout_amount is null "
            "or platform_fee_amount + producer_payout_amount = price",
            name="ck_song_request_split",
        ),
        CheckConstraint(
            "refunded_at is null or status = 'refunded'",
            name="ck_song_request_refunded_at",
        ),
        CheckConstraint(
            "status <> 'refunded' or producer_paid_at is null",
            name="ck_song_request_refund_unpaid",
        ),
        Index("ix_song_request_status_deadline", "status", "acceptance_deadline"),
    )

    def __repr__(self) -> str:
        return f"<Project id={self.id!s:.8} status={self.status} price={self.price}>"


class Revision(Base):
    __tablename__ = "song_revision"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    project_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("song_request.id", ondelete="CASCADE"),
    )
    revision_number: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(Text, default="pending")
    client_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    client_feedback: Mapped[str | None] = mapped_column(Text, nullable=True)
    wants_meeting: Mapped[bool] = mapped_column(Boolean, default=False)
    meeting_link: Mapped[str | None] = mapped_column(Text, nullable=True)
    drive_link: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivered_by: Mapped[str | None] = mapped_column(Text, nullable=True)
    requested_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow)

    project: Mapped["Project"] = relationship(back_populates="revisions")

    __table_args__ = (
        UniqueConstraint("project_id", "revision_number", name="uq_song_revision_number"),
        CheckConstraint(_in_clause("status", REVISION_STATUSES), name="ck_song_revision_status"),
        CheckConstraint("revision_number >= 1", name="ck_song_revision_number"),
    )


class Payout(Base):
    __tablename__ = "producer_payout"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    project_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("song_request.id", ondelete="RESTRICT"), index=True)
    producer_id: Mapped[str] = mapped_column(Text)
    kind: Mapped[str] = mapped_column(Text)
    amount: Mapped[int] = mapped_column(BigInteger)
    status: Mapped[str] = mapped_column(Text)
    transfer_reference: Mapped[str | None] = mapped_column(Text, nullable=True)
    idempotency_key: Mapped[str] = mapped_column(Text, unique=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)

    __table_args__ = (
        CheckConstraint("kind in ('partial_reassignment', 'completion')", name="ck_producer_payout_kind"),
        CheckConstraint("status in ('transferred', 'manual_required')", name="ck_producer_payout_status"),
        CheckConstraint("amount > 0", name="ck_producer_payout_amount"),
    )


class AuditEvent(Base):
    __tablename__ = "audit_event"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    event_type: Mapped[str] = mapped_column(Text)
    source: Mapped[str] = mapped_column(Text)
    actor_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    # no FK: the trail must outlive a purged project
    project_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)
    payload: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    __table_args__ = (
        CheckConstraint("source in ('ui', 'system', 'worker')", name="ck_audit_event_source"),
    )
