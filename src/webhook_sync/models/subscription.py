"""SQLAlchemy model for webhook subscriptions."""

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from webhook_sync.models.base import Base, TimestampMixin


class WebhookStatus(str, Enum):
    """Lifecycle state of a repository's webhook subscription."""

    PENDING = "pending"
    ACTIVE = "active"
    FAILED = "failed"
    INACTIVE = "inactive"


class ErrorKind(str, Enum):
    """Classification of the most recent gateway failure."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"


class WebhookSubscription(TimestampMixin, Base):
    """One row per repository that has had a subscription attempt."""

    __tablename__ = "webhook_subscriptions"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    repository_id: Mapped[UUID] = mapped_column(
        ForeignKey("repositories.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=WebhookStatus.PENDING.value
    )
    webhook_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    webhook_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    events: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    last_ping: Mapped[datetime | None] = mapped_column(nullable=True)
    last_delivery: Mapped[datetime | None] = mapped_column(nullable=True)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_kind: Mapped[str | None] = mapped_column(String(16), nullable=True)
    subscription_date: Mapped[datetime] = mapped_column(
        server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("idx_webhook_subscriptions_status_updated", "status", "updated_at"),
        Index("idx_webhook_subscriptions_last_ping", "last_ping"),
    )

    def __repr__(self) -> str:
        return (
            f"WebhookSubscription(repository_id={self.repository_id}, status={self.status}, "
            f"failure_count={self.failure_count})"
        )
