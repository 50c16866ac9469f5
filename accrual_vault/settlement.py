"""
Value Transfer Module

Interface to the external mechanism that moves real value in and out of the
vault's custody, plus an in-memory implementation for tests and local runs.
"""

from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional
import threading

from .errors import InsufficientBalance
from .logging_config import get_logger


logger = get_logger("accrual_vault.settlement")


class ValueTransfer(ABC):
    """External value custody used by the vault"""

    @abstractmethod
    def receive(self, sender: str, amount: int) -> None:
        """Take amount of external value from sender into custody"""
        pass

    @abstractmethod
    def pay(self, recipient: str, amount: int) -> bool:
        """Send amount out of custody; returns True once the transfer is confirmed"""
        pass

    @abstractmethod
    def reserve(self) -> int:
        """Value currently held in custody"""
        pass

    @abstractmethod
    def refund(self, sender: str, amount: int) -> None:
        """Return value taken by a receive whose enclosing operation rolled back"""
        pass

    @abstractmethod
    def reclaim(self, recipient: str, amount: int) -> None:
        """Take back a confirmed payout whose enclosing operation rolled back"""
        pass


class InMemoryValueTransfer(ValueTransfer):
    """
    In-memory custody with per-party wallets

    Parties without a funded wallet are treated as paying with value that
    arrives alongside the call, so `receive` only debits wallets that exist.
    `on_pay` hooks run after the reserve is debited and before the payout is
    confirmed, modelling a recipient that executes code when paid; a hook
    returning False or raising rejects the payout and leaves custody unchanged.
    `refund` and `reclaim` reverse a receive or a payout.
    """

    def __init__(self, wallets: Optional[Dict[str, int]] = None):
        self._reserve = 0
        self._wallets: Dict[str, int] = dict(wallets or {})
        self._hooks: Dict[str, Callable[[str, int], Optional[bool]]] = {}
        self._lock = threading.RLock()

    def set_wallet(self, party: str, amount: int) -> None:
        with self._lock:
            self._wallets[party] = amount

    def wallet_balance(self, party: str) -> int:
        with self._lock:
            return self._wallets.get(party, 0)

    def on_pay(self, recipient: str, hook: Callable[[str, int], Optional[bool]]) -> None:
        """Register code that runs when recipient is paid"""
        with self._lock:
            self._hooks[recipient] = hook

    def receive(self, sender: str, amount: int) -> None:
        with self._lock:
            if sender in self._wallets:
                available = self._wallets[sender]
                if amount > available:
                    raise InsufficientBalance(sender, available, amount)
                self._wallets[sender] = available - amount
            self._reserve += amount

    def pay(self, recipient: str, amount: int) -> bool:
        with self._lock:
            if amount > self._reserve:
                logger.warning(f"Payout of {amount} to {recipient} exceeds reserve {self._reserve}")
                return False

            self._reserve -= amount
            hook = self._hooks.get(recipient)
            try:
                accepted = hook(recipient, amount) if hook else True
            except Exception:
                self._reserve += amount
                raise
            if accepted is False:
                self._reserve += amount
                return False

            self._wallets[recipient] = self._wallets.get(recipient, 0) + amount
            return True

    def reserve(self) -> int:
        with self._lock:
            return self._reserve

    def refund(self, sender: str, amount: int) -> None:
        with self._lock:
            if amount > self._reserve:
                raise InsufficientBalance("reserve", self._reserve, amount)
            self._reserve -= amount
            if sender in self._wallets:
                self._wallets[sender] += amount

    def reclaim(self, recipient: str, amount: int) -> None:
        with self._lock:
            available = self._wallets.get(recipient, 0)
            if amount > available:
                raise InsufficientBalance(recipient, available, amount)
            self._wallets[recipient] = available - amount
            self._reserve += amount
