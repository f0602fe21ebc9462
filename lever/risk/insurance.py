"""
Insurance fund.

First line of defense against bad debt. Funded by the protocol share of
liquidation penalties (and optional direct deposits).
"""

import threading
from decimal import Decimal

from ..core.errors import InvalidSizeError
from ..utils.fixed_point import ZERO, fp
from ..utils.logger import get_logger


class InsuranceFund:
    """Single-balance fund that pays out up to what it holds."""

    def __init__(self, initial_balance: Decimal = ZERO):
        self.logger = get_logger()
        self._lock = threading.Lock()
        self._balance = fp(initial_balance)
        self.total_deposited = self._balance
        self.total_paid = ZERO

    def deposit(self, amount: Decimal) -> None:
        amount = fp(amount)
        if amount < 0:
            raise InvalidSizeError(f"insurance deposit must be >= 0, got {amount}")
        with self._lock:
            self._balance += amount
            self.total_deposited += amount

    def cover(self, market_id: int, amount: Decimal) -> Decimal:
        """
        Pay out toward bad debt.

        Returns:
            Amount covered (min of amount and balance)
        """
        amount = fp(amount)
        if amount <= 0:
            return ZERO
        with self._lock:
            covered = min(amount, self._balance)
            self._balance -= covered
            self.total_paid += covered
            remaining = self._balance
        if covered > 0:
            self.logger.solvency("INSURANCE", market_id, covered, requested=amount, balance=remaining)
        return covered

    @property
    def balance(self) -> Decimal:
        with self._lock:
            return self._balance
