"""
Tests for the ledger engine: balance operations, encrypted trail,
rollback and lock ordering
"""

import logging
import threading
from datetime import datetime, timezone, timedelta
from decimal import Decimal

import pytest

from vault_ledger.exceptions import (
    AccountNotFoundError, AuthorizationError, CryptoRangeError,
    InsufficientFundsError, StorageError, ValidationError
)
from vault_ledger.ledger import EntryType, LedgerEngine, OperationState


class LedgerTestBase:

    @pytest.fixture(autouse=True)
    def setup(self, system):
        self.system = system
        self.storage = system.storage
        self.ledger = system.ledger
        user = system.register_user("alice", "password123", "4821")
        self.account_a = system.open_account(user.id).id
        self.account_b = system.open_account(user.id).id

    def balance(self, account_id):
        return self.system.get_account(account_id).balance

    def entry_count(self):
        return self.storage.count("transactions")


class TestDepositWithdraw(LedgerTestBase):

    def test_deposit_then_withdraw_returns_to_zero(self):
        deposit = self.ledger.deposit(self.account_a, Decimal("100.00"))
        withdrawal = self.ledger.withdraw(self.account_a, Decimal("100.00"))

        assert self.balance(self.account_a) == Decimal("0.00")
        assert self.entry_count() == 2

        assert deposit.from_account_id is None
        assert deposit.to_account_id == self.account_a
        assert deposit.entry_type == EntryType.DEPOSIT
        assert withdrawal.from_account_id == self.account_a
        assert withdrawal.to_account_id is None
        assert withdrawal.entry_type == EntryType.WITHDRAWAL

        history = self.ledger.get_account_history(self.account_a)
        assert [entry.id for entry in history] == [withdrawal.id, deposit.id]
        assert history[1].to_account_id == self.account_a and history[1].from_account_id is None
        assert history[0].from_account_id == self.account_a and history[0].to_account_id is None

    def test_default_memos(self):
        deposit = self.ledger.deposit(self.account_a, "10.00")
        withdrawal = self.ledger.withdraw(self.account_a, "5.00")
        assert deposit.description == "Deposit"
        assert withdrawal.description == "Withdrawal"

        history = self.ledger.get_account_history(self.account_a)
        assert [entry.description for entry in history] == ["Withdrawal", "Deposit"]

    def test_insufficient_funds_leaves_balance(self):
        self.ledger.deposit(self.account_a, "10.00")

        with pytest.raises(InsufficientFundsError):
            self.ledger.withdraw(self.account_a, "100.00")

        assert self.balance(self.account_a) == Decimal("10.00")
        assert self.entry_count() == 1

    def test_withdraw_entire_balance(self):
        self.ledger.deposit(self.account_a, "0.01")
        self.ledger.withdraw(self.account_a, "0.01")
        assert self.balance(self.account_a) == Decimal("0.00")

    def test_unknown_account(self):
        with pytest.raises(AccountNotFoundError):
            self.ledger.deposit(999, "10.00")
        with pytest.raises(AuthorizationError):
            self.ledger.withdraw(999, "10.00")
        assert self.entry_count() == 0

    def test_returned_entry_matches_stored(self):
        entry = self.ledger.deposit(self.account_a, "42.50", "Salary")
        stored = self.ledger.get_all_entries()[0]
        assert stored == entry


class TestTransfer(LedgerTestBase):

    def test_transfer_exact_balance(self):
        self.ledger.deposit(self.account_a, "50.00")
        self.ledger.deposit(self.account_b, "7.25")
        before = self.entry_count()

        entry = self.ledger.transfer(self.account_a, self.account_b, Decimal("50.00"))

        assert self.balance(self.account_a) == Decimal("0.00")
        assert self.balance(self.account_b) == Decimal("57.25")
        assert self.entry_count() == before + 1
        assert entry.from_account_id == self.account_a
        assert entry.to_account_id == self.account_b
        assert entry.entry_type == EntryType.TRANSFER
        assert entry.description is None

    def test_transfer_appears_in_both_histories(self):
        self.ledger.deposit(self.account_a, "20.00")
        entry = self.ledger.transfer(self.account_a, self.account_b, "5.00", "Lunch")

        assert self.ledger.get_account_history(self.account_b) == [entry]
        assert self.ledger.get_account_history(self.account_a)[0] == entry
        assert entry.description == "Lunch"

    def test_transfer_insufficient_funds(self):
        self.ledger.deposit(self.account_a, "10.00")
        with pytest.raises(InsufficientFundsError):
            self.ledger.transfer(self.account_a, self.account_b, "10.01")
        assert self.balance(self.account_a) == Decimal("10.00")
        assert self.balance(self.account_b) == Decimal("0.00")
        assert self.entry_count() == 1

    def test_transfer_from_higher_to_lower_id(self):
        self.ledger.deposit(self.account_b, "30.00")
        self.ledger.transfer(self.account_b, self.account_a, "30.00")
        assert self.balance(self.account_a) == Decimal("30.00")
        assert self.balance(self.account_b) == Decimal("0.00")

    def test_transfer_to_same_account(self):
        self.ledger.deposit(self.account_a, "10.00")
        with pytest.raises(ValidationError):
            self.ledger.transfer(self.account_a, self.account_a, "1.00")
        assert self.entry_count() == 1

    def test_transfer_to_unknown_account_rolls_back(self):
        self.ledger.deposit(self.account_a, "10.00")
        with pytest.raises(AccountNotFoundError):
            self.ledger.transfer(self.account_a, 999, "5.00")
        assert self.balance(self.account_a) == Decimal("10.00")
        assert self.entry_count() == 1

    def test_total_balance_conserved(self):
        self.ledger.deposit(self.account_a, "100.00")
        self.ledger.deposit(self.account_b, "40.00")
        for amount in ["12.34", "0.01", "50.00"]:
            self.ledger.transfer(self.account_a, self.account_b, amount)
        self.ledger.transfer(self.account_b, self.account_a, "33.33")
        assert self.balance(self.account_a) + self.balance(self.account_b) == Decimal("140.00")


class TestAmountValidation(LedgerTestBase):

    @pytest.mark.parametrize("amount", [
        Decimal("0.00"), "0.00", 0, Decimal("-5.00"), "-0.01", "1.005", Decimal("1.005"),
        "1.500", None, "abc", "", "NaN", "Infinity", "1000000.01", 10 ** 7, True, 1.5,
    ])
    def test_invalid_amounts_write_nothing(self, amount):
        self.ledger.deposit(self.account_a, "10.00")

        for operation in (
            lambda: self.ledger.deposit(self.account_a, amount),
            lambda: self.ledger.withdraw(self.account_a, amount),
            lambda: self.ledger.transfer(self.account_a, self.account_b, amount),
        ):
            with pytest.raises(ValidationError):
                operation()

        assert self.entry_count() == 1
        assert self.balance(self.account_a) == Decimal("10.00")
        assert self.balance(self.account_b) == Decimal("0.00")

    @pytest.mark.parametrize("amount,expected", [
        ("0.01", Decimal("0.01")),
        (5, Decimal("5")),
        (" 12.5 ", Decimal("12.5")),
        (Decimal("1000000.00"), Decimal("1000000.00")),
        ("1E+2", Decimal("100")),
    ])
    def test_valid_amounts(self, amount, expected):
        assert self.ledger.validate_amount(amount) == expected

    def test_validation_happens_before_account_lookup(self):
        with pytest.raises(ValidationError):
            self.ledger.deposit(999, "0.001")

    @pytest.mark.parametrize("account_id", [0, -1, "1", None, True, 1.0])
    def test_invalid_account_identifier(self, account_id):
        with pytest.raises(ValidationError):
            self.ledger.deposit(account_id, "10.00")
        assert self.entry_count() == 0


class TestMemoSanitation(LedgerTestBase):

    def test_long_memo_truncated_to_200(self):
        self.ledger.deposit(self.account_a, "10.00", "x" * 250)
        entry = self.ledger.get_account_history(self.account_a)[0]
        assert entry.description == "x" * 200

    def test_truncation_logs_without_content(self, caplog):
        caplog.set_level(logging.WARNING, logger="vault_ledger.ledger")
        self.ledger.deposit(self.account_a, "10.00", "confidential " * 30)
        assert any(record.getMessage() == "Memo truncated" for record in caplog.records)
        assert "confidential" not in caplog.text

    def test_dangerous_characters_stripped(self):
        assert self.ledger.sanitize_memo('Rent <b>"June"</b>; it\'s \\paid') == "Rent bJune/b its paid"

    def test_memo_trimmed(self):
        assert self.ledger.sanitize_memo("   Groceries   ") == "Groceries"

    def test_empty_memo_becomes_absent(self):
        assert self.ledger.sanitize_memo("   ") is None
        assert self.ledger.sanitize_memo("<>;") is None
        assert self.ledger.sanitize_memo(None) is None
        entry = self.ledger.deposit(self.account_a, "1.00", "  ")
        assert entry.description == "Deposit"

    def test_non_text_memo_rejected(self):
        with pytest.raises(ValidationError):
            self.ledger.deposit(self.account_a, "1.00", 42)

    def test_multibyte_memo_over_cipher_budget(self):
        self.ledger.deposit(self.account_a, "10.00")
        with pytest.raises(CryptoRangeError):
            self.ledger.deposit(self.account_a, "5.00", "€" * 200)
        assert self.balance(self.account_a) == Decimal("10.00")
        assert self.entry_count() == 1

    def test_unicode_memo_round_trip(self):
        self.ledger.deposit(self.account_a, "10.00", "Café ☕ für Ödön")
        assert self.ledger.get_account_history(self.account_a)[0].description == "Café ☕ für Ödön"


class TestEncryptedTrail(LedgerTestBase):

    def test_stored_entry_holds_only_ciphertext(self):
        self.ledger.deposit(self.account_a, "100.00")
        self.ledger.transfer(self.account_a, self.account_b, "25.00", "Rent")

        for row in self.storage.load_all("transactions"):
            assert set(row) == {
                "id", "from_account_encrypted", "to_account_encrypted",
                "amount_encrypted", "description_encrypted", "created_at"
            }
            assert row["amount_encrypted"].isdigit()
            assert row["amount_encrypted"] not in ("100.00", "25.00")

        transfer_row = self.storage.load_all("transactions")[-1]
        assert transfer_row["from_account_encrypted"] != str(self.account_a)
        assert transfer_row["to_account_encrypted"] != str(self.account_b)
        assert transfer_row["description_encrypted"] != "Rent"

    def test_deposit_has_no_source_ciphertext(self):
        self.ledger.deposit(self.account_a, "1.00")
        row = self.storage.load_all("transactions")[0]
        assert row["from_account_encrypted"] is None
        assert row["to_account_encrypted"] is not None

    def test_round_trip_exactness(self):
        self.ledger.deposit(self.account_a, "100.10", "Bonus")
        entry = self.ledger.get_all_entries()[0]
        assert entry.amount == Decimal("100.10")
        assert str(entry.amount) == "100.10"
        assert entry.description == "Bonus"
        assert entry.to_account_id == self.account_a

    def test_history_filters_by_account(self):
        self.ledger.deposit(self.account_a, "10.00")
        self.ledger.deposit(self.account_b, "20.00")
        self.ledger.deposit(self.account_a, "30.00")

        amounts = [entry.amount for entry in self.ledger.get_account_history(self.account_a)]
        assert amounts == [Decimal("30.00"), Decimal("10.00")]
        assert len(self.ledger.get_all_entries()) == 3

    def test_history_of_unknown_account_is_empty(self):
        self.ledger.deposit(self.account_a, "10.00")
        assert self.ledger.get_account_history(999) == []


class TestLegacyFallback(LedgerTestBase):

    def insert_legacy(self, **fields):
        row = {"created_at": (datetime.now(timezone.utc) - timedelta(days=30)).isoformat()}
        row.update(fields)
        return self.storage.insert("transactions", row)

    def test_plaintext_columns_read_when_ciphertext_missing(self):
        legacy_id = self.insert_legacy(from_account_id=None, to_account_id=self.account_a,
                                       amount="25.00", description="Legacy deposit")
        new_entry = self.ledger.deposit(self.account_a, "5.00")

        history = self.ledger.get_account_history(self.account_a)
        assert [entry.id for entry in history] == [new_entry.id, legacy_id]
        legacy = history[1]
        assert legacy.amount == Decimal("25.00")
        assert legacy.description == "Legacy deposit"
        assert legacy.to_account_id == self.account_a
        assert legacy.from_account_id is None

    def test_empty_ciphertext_falls_back(self):
        self.insert_legacy(from_account_encrypted="", to_account_encrypted="",
                           amount_encrypted="", description_encrypted="",
                           from_account_id=self.account_a, to_account_id=self.account_b,
                           amount="3.00", description="Old transfer")
        entry = self.ledger.get_account_history(self.account_b)[0]
        assert entry.from_account_id == self.account_a
        assert entry.amount == Decimal("3.00")

    def test_naive_legacy_timestamp(self):
        self.insert_legacy(to_account_id=self.account_a, amount="1.00",
                           created_at="2020-01-01T00:00:00")
        self.ledger.deposit(self.account_a, "2.00")
        history = self.ledger.get_account_history(self.account_a)
        assert history[-1].created_at == datetime(2020, 1, 1, tzinfo=timezone.utc)

    def test_ciphertext_preferred_over_plaintext(self):
        entry = self.ledger.deposit(self.account_a, "9.00")
        row = self.storage.load("transactions", entry.id)
        row["amount"] = "999.00"
        self.storage.save("transactions", entry.id, row)
        assert self.ledger.get_all_entries()[0].amount == Decimal("9.00")

    def test_entry_without_amount(self):
        self.insert_legacy(to_account_id=self.account_a)
        with pytest.raises(StorageError):
            self.ledger.get_all_entries()

    def test_fallback_disabled(self):
        self.insert_legacy(to_account_id=self.account_a, amount="25.00")
        ledger = LedgerEngine(self.storage, self.system.account_manager, self.system.encryption,
                              legacy_plaintext_fallback=False)
        with pytest.raises(StorageError):
            ledger.get_all_entries()


class TestRollback(LedgerTestBase):

    def test_entry_write_failure_rolls_back_balance(self):
        self.ledger.deposit(self.account_a, "10.00")
        original_insert = self.storage.insert

        def failing_insert(table, data):
            if table == "transactions":
                raise StorageError("disk full")
            return original_insert(table, data)

        self.storage.insert = failing_insert
        try:
            with pytest.raises(StorageError, match="disk full"):
                self.ledger.transfer(self.account_a, self.account_b, "4.00")
        finally:
            self.storage.insert = original_insert

        assert self.balance(self.account_a) == Decimal("10.00")
        assert self.balance(self.account_b) == Decimal("0.00")
        assert self.entry_count() == 1
        assert not self.storage.in_transaction

    def test_state_trace(self, caplog):
        caplog.set_level(logging.DEBUG, logger="vault_ledger.ledger")
        self.ledger.deposit(self.account_a, "10.00", "private memo")

        states = [record.extra["state"] for record in caplog.records
                  if getattr(record, "extra", None) and "state" in record.extra
                  and record.levelno == logging.DEBUG]
        assert states == [
            OperationState.VALIDATED.value, OperationState.LOCKED.value,
            OperationState.MUTATED.value, OperationState.LOGGED.value,
            OperationState.COMMITTED.value,
        ]
        assert "private memo" not in caplog.text
        assert "10.00" not in caplog.text

    def test_failure_trace(self, caplog):
        caplog.set_level(logging.DEBUG, logger="vault_ledger.ledger")
        with pytest.raises(InsufficientFundsError):
            self.ledger.withdraw(self.account_a, "1.00")

        states = [record.extra["state"] for record in caplog.records
                  if getattr(record, "extra", None) and "state" in record.extra
                  and record.levelno == logging.DEBUG]
        assert states == [
            OperationState.VALIDATED.value, OperationState.LOCKED.value,
            OperationState.FAILED.value, OperationState.ROLLED_BACK.value,
        ]


class TestConcurrency(LedgerTestBase):

    def run_threads(self, targets):
        errors = []
        barrier = threading.Barrier(len(targets))

        def wrap(target):
            def run():
                barrier.wait()
                try:
                    target()
                except Exception as e:
                    errors.append(e)
            return run

        threads = [threading.Thread(target=wrap(target)) for target in targets]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        return errors

    def test_opposing_transfers_do_not_deadlock(self):
        self.ledger.deposit(self.account_a, "100.00")
        self.ledger.deposit(self.account_b, "100.00")

        def a_to_b():
            for _ in range(15):
                self.ledger.transfer(self.account_a, self.account_b, "1.00")

        def b_to_a():
            for _ in range(15):
                self.ledger.transfer(self.account_b, self.account_a, "1.00")

        errors = self.run_threads([a_to_b, b_to_a, a_to_b, b_to_a])

        assert errors == []
        assert self.balance(self.account_a) == Decimal("100.00")
        assert self.balance(self.account_b) == Decimal("100.00")
        assert self.entry_count() == 2 + 60

    def test_concurrent_withdrawals_never_overdraw(self):
        self.ledger.deposit(self.account_a, "100.00")

        def withdraw():
            self.ledger.withdraw(self.account_a, "30.00")

        errors = self.run_threads([withdraw] * 6)

        assert len(errors) == 3
        assert all(isinstance(e, InsufficientFundsError) for e in errors)
        assert self.balance(self.account_a) == Decimal("10.00")
        assert self.entry_count() == 1 + 3
