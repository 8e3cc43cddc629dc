"""
Account Management Module

Opens accounts for credential records and owns every write to the
``accounts`` table. Balances are Decimal with scale 2 and never negative;
they change only inside a ledger transaction that holds the row lock.
"""

from decimal import Decimal, ROUND_HALF_EVEN
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional
import logging
import secrets

from .auth import UserManager
from .exceptions import (
    AccountNotFoundError, AuthenticationError, InsufficientFundsError,
    StorageError, UserNotFoundError
)
from .logging_config import log_action
from .storage import StorageInterface, StorageRecord


logger = logging.getLogger(__name__)

ACCOUNT_NUMBER_PREFIX = "ACC-"
CENT = Decimal("0.01")


def to_money(value: Decimal) -> Decimal:
    """Quantize to two decimal places"""
    return value.quantize(CENT, rounding=ROUND_HALF_EVEN)


@dataclass
class Account(StorageRecord):
    """
    Ledger account owned by one credential record
    """
    user_id: int
    account_number: str
    balance: Decimal = Decimal("0.00")


class AccountManager:
    """
    Manages account opening, lookups and locked balance writes
    """

    def __init__(self, storage: StorageInterface, user_manager: UserManager):
        self.storage = storage
        self.user_manager = user_manager
        self.accounts_table = "accounts"

    def open_account(self, user_id: int) -> Account:
        """
        Open a zero-balance account for an existing credential record.

        Raises:
            UserNotFoundError: If no credential record has this id
        """
        if self.user_manager.get_user(user_id) is None:
            raise UserNotFoundError("User not found")

        now = datetime.now(timezone.utc)
        account = Account(
            id=0,
            created_at=now,
            updated_at=now,
            user_id=int(user_id),
            account_number=self._generate_account_number(),
            balance=Decimal("0.00")
        )

        record = self._account_to_dict(account)
        del record['id']
        with self.storage.atomic():
            account.id = self.storage.insert(self.accounts_table, record)

        log_action(logger, "info", "Account opened",
                   user_id=str(account.user_id), action="open_account",
                   resource=f"account:{account.id}")
        return account

    def open_account_for_auxiliary_user(self, auxiliary_user_id: str, password: str, pin: str) -> Account:
        """
        Open an additional account for the credential record behind a
        public auxiliary identifier, after checking its password and PIN.

        Raises:
            UserNotFoundError: Unknown auxiliary identifier
            AuthenticationError: Wrong password or PIN
        """
        user = self.user_manager.get_user_by_auxiliary_id(auxiliary_user_id)
        if user is None:
            raise UserNotFoundError("User ID not found")

        if not self.user_manager.verify_password(user, password):
            log_action(logger, "warning", "Password check failed for additional account",
                       user_id=str(user.id), action="open_account", resource="accounts")
            raise AuthenticationError("Invalid password")

        if not self.user_manager.verify_pin(user, pin):
            log_action(logger, "warning", "PIN check failed for additional account",
                       user_id=str(user.id), action="open_account", resource="accounts")
            raise AuthenticationError("Invalid PIN")

        return self.open_account(user.id)

    def get_account(self, account_id: int) -> Optional[Account]:
        """Get account by ID"""
        account_dict = self.storage.load(self.accounts_table, account_id)
        if account_dict:
            return self._account_from_dict(account_dict)
        return None

    def get_account_by_number(self, account_number: str) -> Optional[Account]:
        """Get account by account number"""
        accounts = self.storage.find(self.accounts_table, {"account_number": account_number})
        if accounts:
            return self._account_from_dict(accounts[0])
        return None

    def get_user_accounts(self, user_id: int) -> List[Account]:
        """Get all accounts for a user, oldest first"""
        accounts_data = self.storage.find(self.accounts_table, {"user_id": int(user_id)})
        accounts = [self._account_from_dict(data) for data in accounts_data]
        return sorted(accounts, key=lambda account: account.id)

    def get_all_account_numbers(self) -> List[str]:
        return sorted(data['account_number'] for data in self.storage.load_all(self.accounts_table))

    def lock_account(self, account_id: int) -> Account:
        """
        Take the row lock on an account and return its current state.

        Raises:
            AccountNotFoundError: If the account does not exist
        """
        account_dict = self.storage.lock_for_update(self.accounts_table, account_id)
        if not account_dict:
            raise AccountNotFoundError("Account not found")
        return self._account_from_dict(account_dict)

    def update_balance(self, account: Account, new_balance: Decimal) -> Account:
        """Write a new balance for an account locked in the current transaction"""
        if not self.storage.in_transaction:
            raise StorageError("Balance updates require an open transaction")
        if new_balance < 0:
            raise InsufficientFundsError("Insufficient funds")

        account.balance = to_money(new_balance)
        account.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.accounts_table, account.id, self._account_to_dict(account))
        return account

    def _generate_account_number(self) -> str:
        """Generate a random account number; the unique index rejects collisions"""
        return f"{ACCOUNT_NUMBER_PREFIX}{secrets.token_hex(4).upper()}"

    def _account_to_dict(self, account: Account) -> Dict:
        """Convert Account to dictionary for storage"""
        result = account.to_dict()
        result['balance'] = str(to_money(account.balance))
        return result

    def _account_from_dict(self, data: Dict) -> Account:
        """Convert dictionary to Account"""
        return Account(
            id=int(data['id']),
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            user_id=int(data['user_id']),
            account_number=data['account_number'],
            balance=to_money(Decimal(data['balance']))
        )
