"""
Ledger Field Encryption Module

Field-level encryption for the ledger trail: counterparties, amounts and
memos are written only as ciphertext. Ciphertexts are stored as decimal
strings of the RSA integer so they fit a plain text column.
"""

import logging
from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation
from typing import Optional, Union

from .exceptions import CryptoRangeError
from .keys import SystemKeyStore
from . import rsa


logger = logging.getLogger(__name__)

# Longest amount string accepted for encryption
MAX_AMOUNT_LENGTH = 50


class EncryptionProvider(ABC):
    """Abstract base class for field encryption providers"""

    @abstractmethod
    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        """Encrypt plaintext and return ciphertext; None/empty maps to None"""
        pass

    @abstractmethod
    def decrypt(self, ciphertext: Optional[str]) -> Optional[str]:
        """Decrypt ciphertext and return plaintext; None/empty maps to None"""
        pass

    def encrypt_amount(self, amount: Union[Decimal, str]) -> Optional[str]:
        """Encrypt the plain string form of an amount"""
        if amount is None:
            return None
        text = amount if isinstance(amount, str) else format(amount, "f")
        if len(text) > MAX_AMOUNT_LENGTH:
            raise CryptoRangeError(f"Amount string too long ({len(text)} > {MAX_AMOUNT_LENGTH} characters)")
        return self.encrypt(text)

    def decrypt_amount(self, ciphertext: Optional[str]) -> Optional[Decimal]:
        text = self.decrypt(ciphertext)
        if text is None:
            return None
        try:
            amount = Decimal(text)
        except InvalidOperation as e:
            raise CryptoRangeError("Decrypted amount is not a decimal number") from e
        if not amount.is_finite():
            raise CryptoRangeError("Decrypted amount is not a decimal number")
        return amount

    def encrypt_account_id(self, account_id: Optional[int]) -> Optional[str]:
        if account_id is None:
            return None
        return self.encrypt(str(account_id))

    def decrypt_account_id(self, ciphertext: Optional[str]) -> Optional[int]:
        text = self.decrypt(ciphertext)
        if text is None:
            return None
        try:
            return int(text)
        except ValueError as e:
            raise CryptoRangeError("Decrypted account identifier is not an integer") from e


class RSAEncryptionProvider(EncryptionProvider):
    """
    Textbook RSA over the system key pair.

    Deterministic: equal plaintexts give equal ciphertexts. See the rsa
    module for the limits of the unpadded transform.
    """

    def __init__(self, key_store: SystemKeyStore):
        self.key_store = key_store

    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        """Encrypt UTF-8 text to a decimal ciphertext string"""
        if plaintext is None or plaintext == "":
            return None

        key_pair = self.key_store.get_or_create_system_key_pair()
        data = plaintext.encode("utf-8")
        if len(data) > key_pair.max_plaintext_bytes:
            # Byte counts only; the plaintext itself must not leak into errors
            raise CryptoRangeError(
                f"Plaintext too long for key ({len(data)} bytes > {key_pair.max_plaintext_bytes} bytes)"
            )

        message = int.from_bytes(data, "big")
        return str(rsa.encrypt(message, key_pair.public_exponent, key_pair.modulus))

    def decrypt(self, ciphertext: Optional[str]) -> Optional[str]:
        """Decrypt a decimal ciphertext string back to text"""
        if ciphertext is None or ciphertext == "":
            return None

        try:
            value = int(ciphertext)
        except (TypeError, ValueError) as e:
            raise CryptoRangeError("Ciphertext is not a decimal integer") from e

        key_pair = self.key_store.get_or_create_system_key_pair()
        message = rsa.decrypt(value, key_pair.private_exponent, key_pair.modulus)
        return rsa.int_to_text(message)
