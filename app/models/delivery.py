"""
Webhook delivery models.

A WebhookDelivery is one logical notification (one event, one webhook).
Each HTTP call made for it is a DeliveryAttempt row. Automatic retries
append attempts to the same delivery; a manual replay creates a new
delivery pointing back at the original via previous_delivery_id.
"""
import enum
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, TimestampMixin, new_id, utcnow


class DeliveryStatus(str, enum.Enum):
    """Delivery lifecycle state."""
    PENDING = "pending"
    ATTEMPTING = "attempting"
    SCHEDULED = "scheduled"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    DeliveryStatus.SUCCEEDED,
    DeliveryStatus.EXHAUSTED,
    DeliveryStatus.FAILED,
})


class AttemptOutcome(str, enum.Enum):
    """Classification of a single attempt."""
    SUCCESS = "success"
    HTTP_FAILURE = "http_failure"
    NETWORK_FAILURE = "network_failure"
    SIGNATURE_SETUP_FAILURE = "signature_setup_failure"


class WebhookDelivery(Base, TimestampMixin):
    """
    One event delivered to one webhook.

    Invariants:
        len(attempts) == attempt_count
        success implies status SUCCEEDED and next_attempt_at is None
        terminal without success implies next_attempt_at is None
    """
    __tablename__ = "webhook_deliveries"
    __table_args__ = (
        Index("ix_webhook_deliveries_webhook_id_created_at", "webhook_id", "created_at"),
        Index("ix_webhook_deliveries_project_id_success", "project_id", "success"),
        Index("ix_webhook_deliveries_event_type_success", "event_type", "success"),
        Index("ix_webhook_deliveries_status_next_attempt_at", "status", "next_attempt_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    webhook_id: Mapped[str] = mapped_column(String(36), nullable=False)
    project_id: Mapped[str] = mapped_column(String(36), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)

    status: Mapped[DeliveryStatus] = mapped_column(
        SQLEnum(DeliveryStatus, native_enum=False, length=20,
                values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=DeliveryStatus.PENDING
    )
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    next_attempt_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    last_status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_response_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    previous_delivery_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    attempts: Mapped[list["DeliveryAttempt"]] = relationship(
        back_populates="delivery",
        order_by="DeliveryAttempt.attempt_number",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="selectin",
    )

    @property
    def is_terminal(self) -> bool:
        return DeliveryStatus(self.status).is_terminal

    @property
    def retry_count(self) -> int:
        return max(self.attempt_count - 1, 0)

    def __repr__(self):
        return (
            f"<WebhookDelivery(id={self.id}, event={self.event_type}, "
            f"status={self.status}, attempts={self.attempt_count})>"
        )


class DeliveryAttempt(Base):
    """A single HTTP call made for a delivery."""
    __tablename__ = "webhook_delivery_attempts"
    __table_args__ = (
        UniqueConstraint("delivery_id", "attempt_number",
                         name="uq_webhook_delivery_attempts_delivery_number"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    delivery_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("webhook_deliveries.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    outcome: Mapped[AttemptOutcome] = mapped_column(
        SQLEnum(AttemptOutcome, native_enum=False, length=30,
                values_callable=lambda e: [m.value for m in e]),
        nullable=False
    )
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    response_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    delivery: Mapped[WebhookDelivery] = relationship(back_populates="attempts")

    def __repr__(self):
        return (
            f"<DeliveryAttempt(delivery_id={self.delivery_id}, "
            f"number={self.attempt_number}, outcome={self.outcome})>"
        )
