"""UserPurchase model."""

from datetime import datetime, timezone
import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Numeric, String
from sqlalchemy.orm import relationship

from database import Base


PURCHASE_STATUSES = ("completed", "pending", "failed")


class UserPurchase(Base):
    """Purchase record with a point-in-time snapshot of plan credits and price."""

    __tablename__ = "user_purchases"
    __table_args__ = (
        Index("ix_user_purchases_user_created", "user_id", "created_at"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    plan_id = Column(String, ForeignKey("subscription_plans.id"), nullable=False)
    credits_added = Column(Numeric(10, 2), nullable=False)
    amount_paid = Column(Numeric(10, 2), nullable=False)
    status = Column(String(20), nullable=False, default="completed")
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        index=True,
    )

    user = relationship("User", back_populates="purchases")
    plan = relationship("SubscriptionPlan")
