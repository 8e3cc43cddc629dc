"""
Vault Ledger

An account ledger whose transaction trail stores counterparties, amounts
and memos only as RSA ciphertext, with salted SHA-256 credential checks
and atomic, row-locked balance transfers.
"""

__version__ = "1.0.0"
