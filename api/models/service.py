import uuid
from datetime import datetime, date
from typing import Optional

from sqlalchemy import String, Numeric, DateTime, Date, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from api.database import Base


class Service(Base):
    """Subscription-scoped catalog entry that line items roll up into."""

    __tablename__ = "subscription_services"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("subscriptions.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(100))
    status: Mapped[str] = mapped_column(String(50), default="Active")
    current_quantity: Mapped[float] = mapped_column(
        Numeric(14, 4, asdecimal=False), default=1
    )
    current_unit_price: Mapped[float] = mapped_column(
        Numeric(14, 2, asdecimal=False), default=0
    )
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    # Date of the invoice the current pricing came from. Older invoices
    # never overwrite it.
    price_as_of: Mapped[Optional[date]] = mapped_column(Date)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    __table_args__ = (
        Index("idx_services_subscription", "subscription_id"),
    )
