from __future__ import annotations

import datetime as dt
from typing import Optional

from sqlalchemy import String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base_class import Base
from app.db.types import UTCDateTime
from app.models.subscription_models import utcnow


class ProcessorWebhookEvent(Base):
    """Processed inbound processor notifications, keyed by the processor's event id."""
    __tablename__ = "processor_webhook_events"
    __table_args__ = (
        UniqueConstraint("provider", "external_id", name="uq_processor_webhook_events_provider_external_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    provider: Mapped[str] = mapped_column(String(40), nullable=False)
    external_id: Mapped[str] = mapped_column(String(120), nullable=False)
    event_type: Mapped[str] = mapped_column(String(80), nullable=False)
    resource_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    outcome: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
