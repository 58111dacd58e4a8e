"""Models package."""

from .plan import Plan
from .user import User
from .credit_account import CreditAccount
from .credit_transaction import CreditTransaction
