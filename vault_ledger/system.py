"""
Vault Ledger System

Composition root: builds storage, the key custodian, field encryption and
the managers once, and hands the same instances to every collaborator.
This is the operation surface a front-end calls.
"""

from decimal import Decimal
from typing import List, Optional

from .accounts import Account, AccountManager
from .auth import User, UserManager
from .config import VaultLedgerConfig, get_config
from .encryption import RSAEncryptionProvider
from .exceptions import AuthenticationError
from .keys import SystemKeyStore
from .ledger import LedgerEngine, LedgerEntry
from .logging_config import get_logger
from .storage import StorageInterface, InMemoryStorage, SQLiteStorage, PostgreSQLStorage


logger = get_logger("vault_ledger.system")


def create_storage(database_url: str, lock_timeout: Optional[float] = None) -> StorageInterface:
    """
    Build a storage backend from a database URL.

    Supported forms: ``memory://``, ``sqlite:///:memory:``, ``sqlite:///path/to.db``
    and ``postgresql://...`` (or ``postgres://...``).
    """
    kwargs = {}
    if lock_timeout is not None:
        kwargs['lock_timeout'] = lock_timeout

    if database_url.startswith("memory://"):
        return InMemoryStorage(**kwargs)
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):] or ":memory:", **kwargs)
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url, **kwargs)
    raise ValueError(f"Unsupported database URL scheme: {database_url.split(':', 1)[0]}")


class VaultLedgerSystem:
    """Vault ledger with all components initialized"""

    def __init__(self, config: Optional[VaultLedgerConfig] = None,
                 storage: Optional[StorageInterface] = None):
        self.config = config or get_config()

        # Initialize storage
        if storage is None:
            storage = create_storage(self.config.database_url, self.config.lock_timeout_seconds)
        self.storage = storage

        # Initialize core components
        self.key_store = SystemKeyStore(
            self.storage,
            key_bits=self.config.rsa_key_bits,
            key_name=self.config.system_key_name
        )
        self.encryption = RSAEncryptionProvider(self.key_store)
        self.user_manager = UserManager(
            self.storage,
            salt_length=self.config.salt_length,
            password_min_length=self.config.password_min_length,
            pin_min_length=self.config.pin_min_length
        )
        self.account_manager = AccountManager(self.storage, self.user_manager)
        self.ledger = LedgerEngine(
            self.storage,
            self.account_manager,
            self.encryption,
            min_amount=Decimal(self.config.min_transaction_amount),
            max_amount=Decimal(self.config.max_transaction_amount),
            max_description_length=self.config.max_description_length,
            legacy_plaintext_fallback=self.config.legacy_plaintext_fallback
        )
        logger.info("Vault ledger system initialized")

    # Credentials

    def register_user(self, username: str, password: str, pin: str) -> User:
        return self.user_manager.register(username, password, pin)

    def authenticate(self, username: str, password: str) -> User:
        return self.user_manager.authenticate(username, password)

    def verify_pin(self, user_id: int, pin: str) -> bool:
        """Check a transaction PIN for a user id; False for unknown users"""
        user = self.user_manager.get_user(user_id)
        if user is None:
            return False
        return self.user_manager.verify_pin(user, pin)

    def require_pin(self, user_id: int, pin: str) -> None:
        """Raise AuthenticationError unless the PIN verifies"""
        if not self.verify_pin(user_id, pin):
            raise AuthenticationError("Invalid PIN")

    # Accounts

    def open_account(self, user_id: int) -> Account:
        return self.account_manager.open_account(user_id)

    def open_account_for_auxiliary_user(self, auxiliary_user_id: str, password: str, pin: str) -> Account:
        return self.account_manager.open_account_for_auxiliary_user(auxiliary_user_id, password, pin)

    def get_user_accounts(self, user_id: int) -> List[Account]:
        return self.account_manager.get_user_accounts(user_id)

    def get_all_account_numbers(self) -> List[str]:
        return self.account_manager.get_all_account_numbers()

    def get_account(self, account_id: int) -> Optional[Account]:
        return self.account_manager.get_account(account_id)

    def get_account_by_number(self, account_number: str) -> Optional[Account]:
        return self.account_manager.get_account_by_number(account_number)

    # Ledger

    def deposit(self, account_id: int, amount, memo: Optional[str] = None) -> LedgerEntry:
        return self.ledger.deposit(account_id, amount, memo)

    def withdraw(self, account_id: int, amount, memo: Optional[str] = None) -> LedgerEntry:
        return self.ledger.withdraw(account_id, amount, memo)

    def transfer(self, from_account_id: int, to_account_id: int, amount,
                 memo: Optional[str] = None) -> LedgerEntry:
        return self.ledger.transfer(from_account_id, to_account_id, amount, memo)

    def get_account_history(self, account_id: int) -> List[LedgerEntry]:
        return self.ledger.get_account_history(account_id)

    def close(self) -> None:
        """Close storage backend"""
        self.storage.close()
