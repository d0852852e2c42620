"""Models package."""

from .user import User
from .chat import Chat
from .credit_balance import CreditBalance
from .credit_transaction import CreditTransaction
from .subscription_plan import SubscriptionPlan
from .user_purchase import UserPurchase
from .guest_session import GuestSession
