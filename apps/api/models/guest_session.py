"""GuestSession model: durable fallback for guest balances."""

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import Column, DateTime, Numeric, String

from database import Base


class GuestSession(Base):
    __tablename__ = "guest_sessions"

    session_id = Column(String(255), primary_key=True)
    balance = Column(Numeric(10, 2), nullable=False, default=Decimal("200.00"))
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
