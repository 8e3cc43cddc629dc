"""
Credential Verification Module

Salted SHA-256 hashes for the two secret classes of a credential record:
the login password and the transaction PIN. PIN hashes carry a fixed
"PIN:" prefix inside the hashed string so the two namespaces never collide,
even when salts do.
"""

import secrets
import string
from typing import Optional

from .exceptions import ValidationError
from .hashing import sha256_hex


SALT_ALPHABET = string.ascii_letters + string.digits
DEFAULT_SALT_LENGTH = 16
PIN_PREFIX = "PIN:"


def generate_salt(length: int = DEFAULT_SALT_LENGTH) -> str:
    """Generate an alphanumeric salt from a cryptographically secure source"""
    if length <= 0:
        raise ValidationError("Salt length must be positive")
    return "".join(secrets.choice(SALT_ALPHABET) for _ in range(length))


def _require(secret: Optional[str], salt: Optional[str], label: str) -> None:
    if secret is None or salt is None:
        raise ValidationError(f"{label} and salt must not be null")


def hash_password(password: str, salt: str) -> str:
    """
    Hash a login password with its salt.

    Returns:
        64-character lowercase hex digest of "salt:password"
    """
    _require(password, salt, "Password")
    # Single round; a production system would stretch this with many iterations
    return sha256_hex(f"{salt}:{password}")


def hash_pin(pin: str, salt: str) -> str:
    """Hash a transaction PIN with its salt, in the PIN namespace"""
    _require(pin, salt, "PIN")
    return sha256_hex(f"{PIN_PREFIX}{salt}:{pin}")


def verify_password(password: str, salt: str, expected_hash: Optional[str]) -> bool:
    """Check a password against a stored hash in constant time"""
    return constant_time_equals(expected_hash, hash_password(password, salt))


def verify_pin(pin: str, salt: str, expected_hash: Optional[str]) -> bool:
    """Check a PIN against a stored hash in constant time"""
    return constant_time_equals(expected_hash, hash_pin(pin, salt))


def constant_time_equals(a: Optional[str], b: Optional[str]) -> bool:
    """
    Compare two strings without an early exit on the first differing character.

    Only a missing operand or a length mismatch returns early; otherwise every
    position is XORed and the results ORed together.
    """
    if a is None or b is None:
        return False
    if len(a) != len(b):
        return False

    result = 0
    for x, y in zip(a, b):
        result |= ord(x) ^ ord(y)
    return result == 0
