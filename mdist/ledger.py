"""
In-process fungible token ledger.

Implements the transfer collaborator the claim registry pays out through:
a wallet's ``transfer(to, amount)`` either moves the full amount or raises
``InsufficientFunds`` and changes nothing.

Thread-safe via threading.Lock.
"""

from __future__ import annotations

import logging
import threading

from mdist import REASON_INSUFFICIENT_FUNDS, UINT256_MAX
from mdist.codec import normalize_address

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Invalid ledger operation."""

    reason = "Ledger error"


class InvalidAmount(LedgerError, ValueError):
    """Amount is not an integer in the uint256 range."""

    reason = "Ledger: invalid amount"


class InsufficientFunds(LedgerError):
    """Sender balance is lower than the transfer amount."""

    reason = REASON_INSUFFICIENT_FUNDS


class TokenLedger:
    """Balance table for one token.

    Usage:
        ledger = TokenLedger("token", "TOKEN")
        ledger.set_balance(distributor, 201)
        ledger.transfer(distributor, alice, 100)
        wallet = ledger.wallet(distributor)   # transfer(to, amount) view
    """

    def __init__(self, name: str = "token", symbol: str = "TOKEN") -> None:
        self.name = name
        self.symbol = symbol
        self._lock = threading.Lock()
        self._balances: dict[str, int] = {}

    @staticmethod
    def _check_amount(amount: int) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise InvalidAmount(f"Amount must be an integer, got {amount!r}")
        if amount < 0 or amount > UINT256_MAX:
            raise InvalidAmount(f"Amount out of range: {amount}")

    def balance_of(self, account: str) -> int:
        account = normalize_address(account)
        with self._lock:
            return self._balances.get(account, 0)

    def set_balance(self, account: str, amount: int) -> None:
        """Mint or burn so that ``account`` holds exactly ``amount``."""
        self._check_amount(amount)
        account = normalize_address(account)
        with self._lock:
            self._balances[account] = amount

    @property
    def total_supply(self) -> int:
        with self._lock:
            return sum(self._balances.values())

    def transfer(self, sender: str, recipient: str, amount: int) -> None:
        """Move ``amount`` from sender to recipient, all or nothing.

        Raises:
            InsufficientFunds: If sender holds less than amount.
            InvalidAmount: On a negative, oversized or non-integer amount.
            ValueError: On an invalid address.
        """
        self._check_amount(amount)
        sender = normalize_address(sender)
        recipient = normalize_address(recipient)
        with self._lock:
            balance = self._balances.get(sender, 0)
            if balance < amount:
                raise InsufficientFunds(REASON_INSUFFICIENT_FUNDS)
            self._balances[sender] = balance - amount
            self._balances[recipient] = self._balances.get(recipient, 0) + amount
        logger.debug("Transferred %d %s: %s -> %s", amount, self.symbol, sender, recipient)

    def wallet(self, owner: str) -> TokenWallet:
        return TokenWallet(self, owner)


class TokenWallet:
    """A ledger account that can send: the registry's transfer collaborator."""

    def __init__(self, ledger: TokenLedger, owner: str) -> None:
        self.ledger = ledger
        self.address = normalize_address(owner)

    @property
    def balance(self) -> int:
        return self.ledger.balance_of(self.address)

    def transfer(self, to: str, amount: int) -> None:
        self.ledger.transfer(self.address, to, amount)

    def __repr__(self) -> str:
        return f"TokenWallet({self.ledger.symbol}, {self.address})"
