import logging
from typing import Optional, Union

from .exceptions import InsufficientCreditError
from .models import Category, CreditBalance
from .storage import Account

logger = logging.getLogger(__name__)


class CreditLedger:
    """
    Per-user, per-category class credit counters.

    The raw counter may be negative (confirmed overdraft, or debt carried
    under the deduct policy). Anything shown to a client should use
    ``CreditBalance.available``, which clamps at zero.
    """

    def __init__(self, storage, max_overdraft: int = 0):
        self.storage = storage
        self.max_overdraft = max_overdraft

    def get(self, user_id: str, category: Union[Category, str]) -> int:
        return self.storage.get_counter(user_id, Category.parse(category))

    def balance(self, user_id: str, category: Union[Category, str]) -> CreditBalance:
        category = Category.parse(category)
        return CreditBalance(user_id=user_id, category=category, balance=self.get(user_id, category))

    def deduct(self, user_id: str, category: Union[Category, str], allow_overdraft: bool = False) -> int:
        category = Category.parse(category)
        with self.storage.account(user_id, category) as account:
            taken = self.take(account, allow_overdraft)
            balance = account.counter
        if not taken:
            raise InsufficientCreditError(user_id, category.value, balance)
        return balance

    def restore(self, user_id: str, category: Union[Category, str]) -> int:
        category = Category.parse(category)
        with self.storage.account(user_id, category) as account:
            return self.give_back(account)

    def add(self, user_id: str, category: Union[Category, str], amount: int) -> int:
        category = Category.parse(category)
        with self.storage.account(user_id, category) as account:
            balance = account.increment(amount)
        logger.info(f"Added {amount} {category.value} credits for {user_id}; balance {balance}")
        return balance

    def set_balance(self, user_id: str, category: Union[Category, str], value: int) -> int:
        category = Category.parse(category)
        with self.storage.account(user_id, category) as account:
            previous = account.counter
            account.set_counter(value)
        logger.info(f"Set {category.value} credits for {user_id}: {previous} -> {value}")
        return value

    def low_balance(self, threshold: int, category: Optional[Category] = None) -> list[CreditBalance]:
        """Accounts that still have credits but fewer than ``threshold``."""
        balances = [
            CreditBalance(user_id=u, category=c, balance=n)
            for u, c, n in self.storage.list_counters()
            if 0 < n < threshold and (category is None or c == category)
        ]
        return sorted(balances, key=lambda b: (b.balance, b.user_id, b.category.value))

    # Operations on an open account transaction, shared with the service façade.

    def take(self, account: Account, allow_overdraft: bool = False) -> bool:
        minimum = -self.max_overdraft if allow_overdraft else 0
        if account.decrement(minimum):
            return True
        logger.info(
            f"Rejected {account.category.value} deduction for {account.user_id}: "
            f"balance {account.counter}, floor {minimum}"
        )
        return False

    def give_back(self, account: Account) -> int:
        # No upper bound against classes_included.
        return account.increment(1)
