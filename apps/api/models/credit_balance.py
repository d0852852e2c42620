"""CreditBalance model: current balance per principal."""

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Numeric, String
from sqlalchemy.orm import relationship

from database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CreditBalance(Base):
    """One row per principal. Mutated only by the ledger service."""

    __tablename__ = "credit_balances"

    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    balance = Column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    last_monthly_allocation = Column(DateTime(timezone=True), nullable=True)
    is_new_user = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    user = relationship("User", back_populates="credit_balance")
