"""CreditTransaction model: append-only audit log of balance mutations."""

from datetime import datetime, timezone
import uuid

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Numeric, String, Text
from sqlalchemy.orm import relationship

from database import Base


TRANSACTION_TYPE_DEDUCTION = "deduction"
TRANSACTION_TYPE_PURCHASE = "purchase"
TRANSACTION_TYPE_BONUS = "bonus"
TRANSACTION_TYPE_MONTHLY_ALLOWANCE = "monthly_allowance"

CREDIT_TRANSACTION_TYPES = (
    TRANSACTION_TYPE_PURCHASE,
    TRANSACTION_TYPE_BONUS,
    TRANSACTION_TYPE_MONTHLY_ALLOWANCE,
)


class CreditTransaction(Base):
    """Immutable ledger entry. `amount` is always positive; `type` gives the direction."""

    __tablename__ = "credit_transactions"
    __table_args__ = (
        Index("ix_credit_transactions_user_created", "user_id", "created_at"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(String(50), nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    balance_after = Column(Numeric(10, 2), nullable=False)
    description = Column(Text, nullable=True)
    metadata_json = Column(JSON, nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        index=True,
    )

    user = relationship("User", back_populates="credit_transactions")
