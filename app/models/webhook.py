"""
Webhook Model

Registered subscriber endpoints. Rows are owned by the registration CRUD
layer; this service only reads them.
"""
from dataclasses import dataclass

from sqlalchemy import JSON, Boolean, Float, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.config import settings
from app.models.base import Base, TimestampMixin, new_id


WILDCARD_EVENT = "*"


@dataclass(frozen=True)
class RetryPolicy:
    """Automatic retry policy of a webhook. Delays are in milliseconds."""
    max_attempts: int = settings.DEFAULT_MAX_ATTEMPTS
    initial_delay_ms: int = settings.DEFAULT_INITIAL_DELAY_MS
    backoff_multiplier: float = settings.DEFAULT_BACKOFF_MULTIPLIER
    max_delay_ms: int = settings.DEFAULT_MAX_DELAY_MS


class Webhook(Base, TimestampMixin):
    """A subscriber URL with its secret, event filter and retry policy."""
    __tablename__ = "webhooks"
    __table_args__ = (
        Index("ix_webhooks_project_id_active", "project_id", "active"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    project_id: Mapped[str] = mapped_column(String(36), nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    secret: Mapped[str | None] = mapped_column(String(255), nullable=True)
    events: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    headers: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    max_attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=settings.DEFAULT_MAX_ATTEMPTS
    )
    initial_delay_ms: Mapped[int] = mapped_column(
        Integer, nullable=False, default=settings.DEFAULT_INITIAL_DELAY_MS
    )
    backoff_multiplier: Mapped[float] = mapped_column(
        Float, nullable=False, default=settings.DEFAULT_BACKOFF_MULTIPLIER
    )
    max_delay_ms: Mapped[int] = mapped_column(
        Integer, nullable=False, default=settings.DEFAULT_MAX_DELAY_MS
    )

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            initial_delay_ms=self.initial_delay_ms,
            backoff_multiplier=self.backoff_multiplier,
            max_delay_ms=self.max_delay_ms,
        )

    def subscribes_to(self, event_type: str) -> bool:
        events = self.events or []
        return event_type in events or WILDCARD_EVENT in events

    def __repr__(self):
        return f"<Webhook(id={self.id}, url={self.url}, active={self.active})>"
