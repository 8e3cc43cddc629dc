"""
Error Taxonomy Module

Typed failures surfaced by every public operation. Messages are shown to
end users verbatim, so they never carry passwords or PINs.
"""


class VaultLedgerError(Exception):
    """Base class for all vault ledger errors"""


class ValidationError(VaultLedgerError, ValueError):
    """Malformed or out-of-range input, rejected before any storage write"""


class AuthorizationError(VaultLedgerError):
    """Bad credentials or unknown account/user; no state was changed"""


class AuthenticationError(AuthorizationError):
    """Username/password or PIN did not verify"""


class UserNotFoundError(AuthorizationError):
    """The requested credential record does not exist"""


class AccountNotFoundError(AuthorizationError):
    """The requested account does not exist"""


class InsufficientFundsError(VaultLedgerError):
    """Debit would take an account balance below zero"""


class CryptoRangeError(VaultLedgerError, ValueError):
    """Cipher operand outside [0, modulus) or plaintext over the byte budget"""


class StorageError(VaultLedgerError):
    """Connectivity, lock or commit failure in the storage backend"""


class DuplicateRecordError(StorageError):
    """Insert or update violated a primary key or unique constraint"""


class LockTimeoutError(StorageError):
    """A row lock could not be acquired before the configured timeout"""
