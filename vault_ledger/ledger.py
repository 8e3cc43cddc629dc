"""
Ledger Engine Module

Deposits, withdrawals and transfers over account balances, each executed as
one all-or-nothing storage transaction that also appends an encrypted entry
to the ``transactions`` table.

Entry shape by operation:
- deposit: destination only
- withdrawal: source only
- transfer: source and destination

Counterparties, amount and memo are stored only as ciphertext, so history
lookups decrypt every entry and filter afterwards.
"""

from decimal import Decimal, InvalidOperation
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum
import logging
import uuid

from .accounts import AccountManager
from .encryption import EncryptionProvider
from .exceptions import ValidationError, InsufficientFundsError, StorageError
from .logging_config import log_action
from .storage import StorageInterface


logger = logging.getLogger(__name__)

DEFAULT_MIN_AMOUNT = Decimal("0.01")
DEFAULT_MAX_AMOUNT = Decimal("1000000.00")
DEFAULT_MAX_DESCRIPTION_LENGTH = 200
MAX_AMOUNT_SCALE = 2

DEFAULT_DEPOSIT_MEMO = "Deposit"
DEFAULT_WITHDRAWAL_MEMO = "Withdrawal"

# Characters removed from memos before encryption
MEMO_STRIP_TABLE = str.maketrans("", "", "<>\"';\\")


class EntryType(Enum):
    """Kind of money movement, derived from which counterparties are present"""
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    TRANSFER = "transfer"


class OperationState(Enum):
    """Progress of a ledger operation"""
    VALIDATED = "validated"      # Input accepted, nothing written
    LOCKED = "locked"            # Row locks held
    MUTATED = "mutated"          # Balances written
    LOGGED = "logged"            # Ledger entry written
    COMMITTED = "committed"      # Transaction committed
    FAILED = "failed"            # Operation aborted
    ROLLED_BACK = "rolled_back"  # Writes undone


@dataclass
class LedgerEntry:
    """
    Decrypted view of one immutable ledger entry
    """
    id: int
    from_account_id: Optional[int]
    to_account_id: Optional[int]
    amount: Decimal
    description: Optional[str]
    created_at: datetime

    @property
    def entry_type(self) -> EntryType:
        if self.from_account_id is None:
            return EntryType.DEPOSIT
        if self.to_account_id is None:
            return EntryType.WITHDRAWAL
        return EntryType.TRANSFER

    def involves(self, account_id: int) -> bool:
        return account_id in (self.from_account_id, self.to_account_id)


class LedgerEngine:
    """
    Executes balance-changing operations and reads the encrypted trail.

    Every operation locks the rows it mutates in ascending account-id order,
    whichever side is source or destination, so two opposing transfers
    between the same accounts cannot deadlock.
    """

    def __init__(
        self,
        storage: StorageInterface,
        account_manager: AccountManager,
        encryption: EncryptionProvider,
        min_amount: Decimal = DEFAULT_MIN_AMOUNT,
        max_amount: Decimal = DEFAULT_MAX_AMOUNT,
        max_description_length: int = DEFAULT_MAX_DESCRIPTION_LENGTH,
        legacy_plaintext_fallback: bool = True
    ):
        self.storage = storage
        self.account_manager = account_manager
        self.encryption = encryption
        self.min_amount = Decimal(min_amount)
        self.max_amount = Decimal(max_amount)
        self.max_description_length = max_description_length
        self.legacy_plaintext_fallback = legacy_plaintext_fallback
        self.entries_table = "transactions"

    def deposit(self, account_id: int, amount: Any, memo: Optional[str] = None) -> LedgerEntry:
        """
        Credit an account.

        Args:
            account_id: Destination account
            amount: Amount as Decimal, int or numeric string
            memo: Optional memo; defaults to "Deposit"

        Returns:
            The written LedgerEntry

        Raises:
            ValidationError: Bad amount or account identifier
            AccountNotFoundError: Unknown account
            StorageError: Lock, write or commit failure
        """
        amount = self.validate_amount(amount)
        account_id = self._validate_account_id(account_id)
        description = self.sanitize_memo(memo) or DEFAULT_DEPOSIT_MEMO
        return self._execute(EntryType.DEPOSIT, None, account_id, amount, description)

    def withdraw(self, account_id: int, amount: Any, memo: Optional[str] = None) -> LedgerEntry:
        """
        Debit an account.

        Raises:
            InsufficientFundsError: Balance lower than amount
        """
        amount = self.validate_amount(amount)
        account_id = self._validate_account_id(account_id)
        description = self.sanitize_memo(memo) or DEFAULT_WITHDRAWAL_MEMO
        return self._execute(EntryType.WITHDRAWAL, account_id, None, amount, description)

    def transfer(self, from_account_id: int, to_account_id: int, amount: Any,
                 memo: Optional[str] = None) -> LedgerEntry:
        """
        Move money between two accounts and record one entry with both sides.

        Raises:
            ValidationError: Bad amount, bad identifiers or source == destination
            InsufficientFundsError: Source balance lower than amount
        """
        amount = self.validate_amount(amount)
        from_account_id = self._validate_account_id(from_account_id)
        to_account_id = self._validate_account_id(to_account_id)
        if from_account_id == to_account_id:
            raise ValidationError("Cannot transfer to the same account")
        description = self.sanitize_memo(memo)
        return self._execute(EntryType.TRANSFER, from_account_id, to_account_id, amount, description)

    def get_account_history(self, account_id: int) -> List[LedgerEntry]:
        """
        Entries where the account is source or destination, newest first.

        Counterparties are encrypted, so every entry is decrypted before
        filtering. An unknown account yields an empty history.
        """
        account_id = self._validate_account_id(account_id)
        return [entry for entry in self.get_all_entries() if entry.involves(account_id)]

    def get_all_entries(self) -> List[LedgerEntry]:
        """Every ledger entry decrypted, newest first"""
        entries = [self._entry_from_dict(data) for data in self.storage.load_all(self.entries_table)]
        entries.sort(key=lambda entry: (entry.created_at, entry.id), reverse=True)
        return entries

    def validate_amount(self, amount: Any) -> Decimal:
        """
        Parse and bound-check a transaction amount.

        Accepts Decimal, int or a numeric string. Floats are refused because
        their binary value is not the decimal the caller wrote.

        Raises:
            ValidationError: Absent, non-numeric, out of range or over 2 decimal places
        """
        if amount is None:
            raise ValidationError("Amount cannot be null")
        if isinstance(amount, bool) or not isinstance(amount, (Decimal, int, str)):
            raise ValidationError("Amount must be a decimal number")

        try:
            value = Decimal(amount.strip()) if isinstance(amount, str) else Decimal(amount)
        except InvalidOperation:
            raise ValidationError("Amount must be a decimal number")

        if not value.is_finite():
            raise ValidationError("Amount must be a decimal number")
        if value < self.min_amount:
            raise ValidationError(f"Amount must be at least {self.min_amount}")
        if value > self.max_amount:
            raise ValidationError(f"Amount cannot exceed {self.max_amount}")
        if value.as_tuple().exponent < -MAX_AMOUNT_SCALE:
            raise ValidationError(f"Amount cannot have more than {MAX_AMOUNT_SCALE} decimal places")
        return value

    def sanitize_memo(self, memo: Optional[str]) -> Optional[str]:
        """
        Strip markup/quoting characters, trim, and cut to the maximum length.

        Truncation is silent for the caller. Returns None for an empty memo.
        """
        if memo is None:
            return None
        if not isinstance(memo, str):
            raise ValidationError("Memo must be text")

        description = memo.translate(MEMO_STRIP_TABLE).strip()
        if not description:
            return None

        if len(description) > self.max_description_length:
            # Log lengths only, never the memo text
            log_action(logger, "warning", "Memo truncated",
                       action="sanitize_memo",
                       extra={"original_length": len(description),
                              "max_length": self.max_description_length})
            description = description[:self.max_description_length]
        return description

    def _validate_account_id(self, account_id: Any) -> int:
        if isinstance(account_id, bool) or not isinstance(account_id, int) or account_id <= 0:
            raise ValidationError("Invalid account ID")
        return account_id

    def _execute(self, entry_type: EntryType, from_account_id: Optional[int],
                 to_account_id: Optional[int], amount: Decimal,
                 description: Optional[str]) -> LedgerEntry:
        operation_id = uuid.uuid4().hex[:12]
        state = OperationState.VALIDATED
        self._trace(entry_type, state, operation_id)

        in_transaction = False
        try:
            # Encrypt before BEGIN: key creation must not join this transaction
            record = self._encrypt_entry(from_account_id, to_account_id, amount, description)

            with self.storage.atomic():
                in_transaction = True

                accounts = {}
                for account_id in self._lock_order(from_account_id, to_account_id):
                    accounts[account_id] = self.account_manager.lock_account(account_id)
                state = OperationState.LOCKED
                self._trace(entry_type, state, operation_id)

                if from_account_id is not None:
                    source = accounts[from_account_id]
                    if source.balance < amount:
                        raise InsufficientFundsError("Insufficient funds")
                    self.account_manager.update_balance(source, source.balance - amount)
                if to_account_id is not None:
                    destination = accounts[to_account_id]
                    self.account_manager.update_balance(destination, destination.balance + amount)
                state = OperationState.MUTATED
                self._trace(entry_type, state, operation_id)

                created_at = datetime.now(timezone.utc)
                record['created_at'] = created_at.isoformat()
                entry_id = self.storage.insert(self.entries_table, record)
                state = OperationState.LOGGED
                self._trace(entry_type, state, operation_id)
        except Exception as e:
            self._trace(entry_type, OperationState.FAILED, operation_id, failed_at=state)
            if in_transaction:
                self._trace(entry_type, OperationState.ROLLED_BACK, operation_id)
            log_action(logger, "warning", f"{entry_type.value.capitalize()} failed",
                       action=entry_type.value, resource=self._resource(from_account_id, to_account_id),
                       correlation_id=operation_id,
                       extra={"error": type(e).__name__, "state": state.value})
            raise

        self._trace(entry_type, OperationState.COMMITTED, operation_id)
        log_action(logger, "info", f"{entry_type.value.capitalize()} committed",
                   action=entry_type.value, resource=self._resource(from_account_id, to_account_id),
                   correlation_id=operation_id, extra={"entry_id": entry_id})

        return LedgerEntry(
            id=entry_id,
            from_account_id=from_account_id,
            to_account_id=to_account_id,
            amount=amount,
            description=description,
            created_at=created_at
        )

    @staticmethod
    def _lock_order(*account_ids: Optional[int]) -> List[int]:
        """Ascending account id, the canonical lock order"""
        return sorted({account_id for account_id in account_ids if account_id is not None})

    @staticmethod
    def _resource(from_account_id: Optional[int], to_account_id: Optional[int]) -> str:
        ids = [str(account_id) for account_id in (from_account_id, to_account_id) if account_id is not None]
        return "account:" + ",".join(ids)

    def _trace(self, entry_type: EntryType, state: OperationState, operation_id: str,
               failed_at: Optional[OperationState] = None) -> None:
        extra = {"state": state.value}
        if failed_at is not None:
            extra["failed_at"] = failed_at.value
        log_action(logger, "debug", f"{entry_type.value} {state.value}",
                   action=entry_type.value, correlation_id=operation_id, extra=extra)

    def _encrypt_entry(self, from_account_id: Optional[int], to_account_id: Optional[int],
                       amount: Decimal, description: Optional[str]) -> Dict[str, Any]:
        return {
            'from_account_encrypted': self.encryption.encrypt_account_id(from_account_id),
            'to_account_encrypted': self.encryption.encrypt_account_id(to_account_id),
            'amount_encrypted': self.encryption.encrypt_amount(amount),
            'description_encrypted': self.encryption.encrypt(description),
        }

    def _legacy(self, data: Dict[str, Any], key: str) -> Any:
        """Plaintext column of a migrated row, if the fallback is enabled"""
        if not self.legacy_plaintext_fallback:
            return None
        value = data.get(key)
        if value is None or value == "":
            return None
        return value

    def _entry_from_dict(self, data: Dict[str, Any]) -> LedgerEntry:
        """Decrypt a stored entry, falling back to legacy plaintext columns"""
        from_account_id, to_account_id = self._counterparties(data)

        amount = self.encryption.decrypt_amount(data.get('amount_encrypted'))
        if amount is None:
            legacy_amount = self._legacy(data, 'amount')
            if legacy_amount is not None:
                try:
                    amount = Decimal(str(legacy_amount))
                except InvalidOperation as e:
                    raise StorageError(f"Ledger entry {data.get('id')} has a malformed amount") from e
        if amount is None:
            raise StorageError(f"Ledger entry {data.get('id')} has no amount")

        description = self.encryption.decrypt(data.get('description_encrypted'))
        if description is None:
            description = self._legacy(data, 'description')

        return LedgerEntry(
            id=int(data['id']),
            from_account_id=from_account_id,
            to_account_id=to_account_id,
            amount=amount,
            description=description,
            created_at=self._parse_timestamp(data['created_at'])
        )

    @staticmethod
    def _parse_timestamp(value: str) -> datetime:
        created_at = datetime.fromisoformat(str(value))
        # Migrated rows may carry naive timestamps; those were written in UTC
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        return created_at

    def _counterparties(self, data: Dict[str, Any]) -> Tuple[Optional[int], Optional[int]]:
        result = []
        for encrypted_key, legacy_key in (('from_account_encrypted', 'from_account_id'),
                                          ('to_account_encrypted', 'to_account_id')):
            account_id = self.encryption.decrypt_account_id(data.get(encrypted_key))
            if account_id is None:
                legacy_id = self._legacy(data, legacy_key)
                if legacy_id is not None:
                    account_id = int(legacy_id)
            result.append(account_id)
        return result[0], result[1]
