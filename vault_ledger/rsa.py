"""
RSA Cipher Module

Textbook RSA over Python integers: key generation, modular-exponentiation
encrypt/decrypt and a UTF-8 text <-> integer codec.

WARNING: this is the raw, unpadded transform. It is deterministic (equal
plaintexts give equal ciphertexts), malleable and unauthenticated. It is
kept as a deliberate simplification; real deployments must substitute a
padded, authenticated scheme such as RSA-OAEP or an AEAD cipher.
"""

import math
import secrets
from dataclasses import dataclass, field

from .exceptions import CryptoRangeError


PUBLIC_EXPONENT = 65537
DEFAULT_KEY_BITS = 2048
# Smallest modulus accepted. Below this the modulus is factorable with
# public tooling and the 50-character amount field no longer fits.
MIN_KEY_BITS = 1024
MILLER_RABIN_ROUNDS = 40

_SMALL_PRIMES = [p for p in range(3, 2000) if all(p % d for d in range(2, int(p ** 0.5) + 1))]


@dataclass(frozen=True)
class KeyPair:
    """RSA key pair: modulus n, public exponent e, private exponent d"""
    modulus: int
    public_exponent: int
    private_exponent: int = field(repr=False)

    @property
    def bit_length(self) -> int:
        return self.modulus.bit_length()

    @property
    def max_plaintext_bytes(self) -> int:
        """Largest plaintext (in bytes) guaranteed to encode below the modulus"""
        return self.bit_length // 8 - 1


def is_probable_prime(candidate: int, rounds: int = MILLER_RABIN_ROUNDS) -> bool:
    """Miller-Rabin probabilistic primality test with random bases"""
    if candidate < 2:
        return False
    if candidate in (2, 3):
        return True
    if candidate % 2 == 0:
        return False

    for prime in _SMALL_PRIMES:
        if candidate == prime:
            return True
        if candidate % prime == 0:
            return False

    # Write candidate - 1 as 2^s * d with d odd
    d = candidate - 1
    s = 0
    while d % 2 == 0:
        d //= 2
        s += 1

    for _ in range(rounds):
        base = secrets.randbelow(candidate - 3) + 2
        x = pow(base, d, candidate)
        if x == 1 or x == candidate - 1:
            continue
        for _ in range(s - 1):
            x = pow(x, 2, candidate)
            if x == candidate - 1:
                break
        else:
            return False
    return True


def generate_probable_prime(bits: int) -> int:
    """
    Draw a random probable prime of exactly `bits` bits.

    The two most significant bits are forced on so that the product of two
    such primes has exactly 2 * bits bits.
    """
    if bits < 8:
        raise ValueError("Prime size must be at least 8 bits")

    while True:
        candidate = secrets.randbits(bits) | (0b11 << (bits - 2)) | 1
        if is_probable_prime(candidate):
            return candidate


def generate_key_pair(bit_length: int = DEFAULT_KEY_BITS) -> KeyPair:
    """
    Generate an RSA key pair.

    Args:
        bit_length: Modulus size in bits (at least MIN_KEY_BITS)

    Returns:
        KeyPair with public exponent 65537

    Raises:
        ValueError: If bit_length is below MIN_KEY_BITS
    """
    if bit_length < MIN_KEY_BITS:
        raise ValueError(
            f"Key size too small; use at least {MIN_KEY_BITS} bits "
            f"({DEFAULT_KEY_BITS} bits for production)"
        )

    p_bits = bit_length // 2
    q_bits = bit_length - p_bits

    while True:
        p = generate_probable_prime(p_bits)
        q = generate_probable_prime(q_bits)
        if p == q:
            continue

        phi = (p - 1) * (q - 1)
        # e must be invertible modulo phi; otherwise resample both primes
        if math.gcd(PUBLIC_EXPONENT, phi) != 1:
            continue

        private_exponent = pow(PUBLIC_EXPONENT, -1, phi)
        return KeyPair(
            modulus=p * q,
            public_exponent=PUBLIC_EXPONENT,
            private_exponent=private_exponent,
        )


def _check_operand(value: int, modulus: int, label: str) -> None:
    if not isinstance(value, int) or isinstance(value, bool):
        raise CryptoRangeError(f"{label} must be an integer")
    if value < 0 or value >= modulus:
        raise CryptoRangeError(f"{label} out of range")


def encrypt(plaintext: int, public_exponent: int, modulus: int) -> int:
    """Compute plaintext^e mod n; plaintext must lie in [0, n)"""
    _check_operand(plaintext, modulus, "Plaintext")
    return pow(plaintext, public_exponent, modulus)


def decrypt(ciphertext: int, private_exponent: int, modulus: int) -> int:
    """Compute ciphertext^d mod n; ciphertext must lie in [0, n)"""
    _check_operand(ciphertext, modulus, "Ciphertext")
    return pow(ciphertext, private_exponent, modulus)


def text_to_int(text: str) -> int:
    """Interpret the UTF-8 bytes of text as a big-endian non-negative integer"""
    return int.from_bytes(text.encode("utf-8"), "big")


def int_to_text(number: int) -> str:
    """
    Inverse of text_to_int.

    The minimal big-endian encoding is used, so there is never a sign
    byte to strip; leading NUL characters of the original text are lost.
    """
    if number < 0:
        raise CryptoRangeError("Encoded text must be non-negative")
    raw = number.to_bytes((number.bit_length() + 7) // 8, "big")
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise CryptoRangeError("Decrypted value is not valid UTF-8 text") from e
