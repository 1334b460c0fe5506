"""
Account Management Module

Manages customer accounts and their balances. Balances are Decimal and can
never go negative: every operation either succeeds with balance >= 0 or
raises and leaves the account unchanged.
"""

from decimal import Decimal, InvalidOperation
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Union
from enum import Enum
import threading

from .errors import (
    DuplicateKeyError, InsufficientFundsError, InvalidInputError, NotFoundError
)


Amount = Union[Decimal, int, float, str]


class AccountType(Enum):
    """Banking product types"""
    SAVINGS = "Savings"
    CURRENT = "Current"
    FIXED = "Fixed"

    @classmethod
    def parse(cls, value: Union['AccountType', str]) -> 'AccountType':
        """Accept an AccountType or its name/value in any case"""
        if isinstance(value, cls):
            return value
        text = str(value).strip()
        for member in cls:
            if text.lower() in (member.value.lower(), member.name.lower()):
                return member
        raise InvalidInputError(f"Unknown account type: {value!r}")


def to_amount(value: Amount, field_name: str = "amount") -> Decimal:
    """
    Convert caller input to a finite Decimal.

    Floats go through str() so 0.1 becomes Decimal('0.1'), not its binary
    expansion.
    """
    if isinstance(value, bool):
        raise InvalidInputError(f"Invalid {field_name}: {value!r}")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as e:
        raise InvalidInputError(f"Invalid {field_name}: {value!r}") from e
    if not amount.is_finite():
        raise InvalidInputError(f"Invalid {field_name}: {value!r}")
    return amount


@dataclass
class Account:
    """Customer bank account"""
    acc_no: str
    name: str
    gender: str
    mobile: str
    account_type: AccountType
    balance: Decimal

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for snapshot storage"""
        return {
            'acc_no': self.acc_no,
            'name': self.name,
            'gender': self.gender,
            'mobile': self.mobile,
            'account_type': self.account_type.value,
            'balance': str(self.balance),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        """Create Account from a snapshot dictionary"""
        return cls(
            acc_no=data['acc_no'],
            name=data['name'],
            gender=data.get('gender', ""),
            mobile=data.get('mobile', ""),
            account_type=AccountType(data['account_type']),
            balance=to_amount(data['balance'], "balance"),
        )


@dataclass(frozen=True)
class BalanceChange:
    """Outcome of a deposit or withdrawal"""
    acc_no: str
    amount: Decimal
    old_balance: Decimal
    new_balance: Decimal


class AccountStore:
    """
    In-memory account collection keyed by account number, kept in
    insertion order.
    """

    def __init__(self, accounts: Optional[Iterable[Account]] = None):
        self._accounts: Dict[str, Account] = {}
        self._lock = threading.RLock()
        if accounts:
            self.replace_all(accounts)

    def create(
        self,
        acc_no: str,
        name: str,
        gender: str,
        mobile: str,
        account_type: Union[AccountType, str],
        balance: Amount
    ) -> Account:
        """
        Create a new account

        Args:
            acc_no: Unique account number
            name: Account holder name
            gender: Descriptive, not validated
            mobile: Descriptive, not validated
            account_type: Savings, Current or Fixed
            balance: Opening balance, must be >= 0

        Returns:
            Created Account object

        Raises:
            DuplicateKeyError: acc_no already exists
            InvalidInputError: empty acc_no/name, unknown type or negative balance
        """
        acc_no = (acc_no or "").strip()
        name = (name or "").strip()
        if not acc_no or not name:
            raise InvalidInputError("Account number and name are required")

        with self._lock:
            if acc_no in self._accounts:
                raise DuplicateKeyError(f"Account number {acc_no} already exists")

            opening = to_amount(balance, "balance")
            if opening < 0:
                raise InvalidInputError(f"Invalid balance amount: {opening}")
            kind = AccountType.parse(account_type)

            account = Account(
                acc_no=acc_no,
                name=name,
                gender=(gender or "").strip(),
                mobile=(mobile or "").strip(),
                account_type=kind,
                balance=opening,
            )
            self._accounts[acc_no] = account

        return account

    def delete(self, acc_no: str) -> Account:
        """Remove an account and return it"""
        with self._lock:
            account = self._accounts.pop((acc_no or "").strip(), None)
        if account is None:
            raise NotFoundError(f"Account {acc_no} not found")
        return account

    def deposit(self, acc_no: str, amount: Amount) -> BalanceChange:
        """Add a positive amount to the balance"""
        value = self._positive(amount)
        with self._lock:
            account = self._require(acc_no)
            old_balance = account.balance
            account.balance = old_balance + value
            return BalanceChange(acc_no, value, old_balance, account.balance)

    def withdraw(self, acc_no: str, amount: Amount) -> BalanceChange:
        """Take a positive amount from the balance, never below zero"""
        value = self._positive(amount)
        with self._lock:
            account = self._require(acc_no)
            if value > account.balance:
                raise InsufficientFundsError(
                    f"Insufficient funds. Current balance: {account.balance}"
                )
            old_balance = account.balance
            account.balance = old_balance - value
            return BalanceChange(acc_no, value, old_balance, account.balance)

    def find(self, acc_no: str) -> Optional[Account]:
        """Get account by number, None if absent"""
        with self._lock:
            return self._accounts.get((acc_no or "").strip())

    def exists(self, acc_no: str) -> bool:
        return self.find(acc_no) is not None

    def list_all(self) -> List[Account]:
        """All accounts in insertion order"""
        with self._lock:
            return list(self._accounts.values())

    def replace_all(self, accounts: Iterable[Account]) -> None:
        """Replace the whole collection, e.g. after loading a snapshot"""
        fresh: Dict[str, Account] = {}
        for account in accounts:
            if account.acc_no in fresh:
                raise DuplicateKeyError(f"Account number {account.acc_no} already exists")
            if not account.balance.is_finite() or account.balance < 0:
                raise InvalidInputError(f"Account {account.acc_no} has an invalid balance")
            fresh[account.acc_no] = account
        with self._lock:
            self._accounts = fresh

    def _require(self, acc_no: str) -> Account:
        account = self._accounts.get((acc_no or "").strip())
        if account is None:
            raise NotFoundError(f"Account {acc_no} not found")
        return account

    @staticmethod
    def _positive(amount: Amount) -> Decimal:
        value = to_amount(amount)
        if value <= 0:
            raise InvalidInputError(f"Invalid amount: {value}")
        return value

    def __len__(self) -> int:
        return len(self._accounts)

    def __contains__(self, acc_no: str) -> bool:
        return self.exists(acc_no)
