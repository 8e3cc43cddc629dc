"""
SHA-256 Hashing Module

Bit-level SHA-256 (FIPS 180-4) used for salted credential hashes.
The algorithm is implemented here rather than delegated to hashlib so
the digest never depends on a platform cryptography library.
"""

from typing import List, Union


MASK_32 = 0xFFFFFFFF
BLOCK_SIZE = 64
DIGEST_SIZE = 32

# First 32 bits of the fractional parts of the square roots of the first 8 primes
INITIAL_HASH = (
    0x6a09e667, 0xbb67ae85, 0x3c6ef372, 0xa54ff53a,
    0x510e527f, 0x9b05688c, 0x1f83d9ab, 0x5be0cd19,
)

# First 32 bits of the fractional parts of the cube roots of the first 64 primes
ROUND_CONSTANTS = (
    0x428a2f98, 0x71374491, 0xb5c0fbcf, 0xe9b5dba5,
    0x3956c25b, 0x59f111f1, 0x923f82a4, 0xab1c5ed5,
    0xd807aa98, 0x12835b01, 0x243185be, 0x550c7dc3,
    0x72be5d74, 0x80deb1fe, 0x9bdc06a7, 0xc19bf174,
    0xe49b69c1, 0xefbe4786, 0x0fc19dc6, 0x240ca1cc,
    0x2de92c6f, 0x4a7484aa, 0x5cb0a9dc, 0x76f988da,
    0x983e5152, 0xa831c66d, 0xb00327c8, 0xbf597fc7,
    0xc6e00bf3, 0xd5a79147, 0x06ca6351, 0x14292967,
    0x27b70a85, 0x2e1b2138, 0x4d2c6dfc, 0x53380d13,
    0x650a7354, 0x766a0abb, 0x81c2c92e, 0x92722c85,
    0xa2bfe8a1, 0xa81a664b, 0xc24b8b70, 0xc76c51a3,
    0xd192e819, 0xd6990624, 0xf40e3585, 0x106aa070,
    0x19a4c116, 0x1e376c08, 0x2748774c, 0x34b0bcb5,
    0x391c0cb3, 0x4ed8aa4a, 0x5b9cca4f, 0x682e6ff3,
    0x748f82ee, 0x78a5636f, 0x84c87814, 0x8cc70208,
    0x90befffa, 0xa4506ceb, 0xbef9a3f7, 0xc67178f2,
)

BytesLike = Union[bytes, bytearray, memoryview]


def _rotate_right(value: int, bits: int) -> int:
    return ((value >> bits) | (value << (32 - bits))) & MASK_32


def _big_sigma0(x: int) -> int:
    return _rotate_right(x, 2) ^ _rotate_right(x, 13) ^ _rotate_right(x, 22)


def _big_sigma1(x: int) -> int:
    return _rotate_right(x, 6) ^ _rotate_right(x, 11) ^ _rotate_right(x, 25)


def _small_sigma0(x: int) -> int:
    return _rotate_right(x, 7) ^ _rotate_right(x, 18) ^ (x >> 3)


def _small_sigma1(x: int) -> int:
    return _rotate_right(x, 17) ^ _rotate_right(x, 19) ^ (x >> 10)


def _pad(tail: bytes, total_length: int) -> bytes:
    """
    Pad the unprocessed tail of a message.

    Appends the '1' bit (0x80), zero bytes, and the total message length in
    bits as a 64-bit big-endian integer so the result is a multiple of 64 bytes.
    """
    bit_length = (total_length * 8) & 0xFFFFFFFFFFFFFFFF
    zero_count = (BLOCK_SIZE - (len(tail) + 9) % BLOCK_SIZE) % BLOCK_SIZE
    return tail + b"\x80" + b"\x00" * zero_count + bit_length.to_bytes(8, "big")


def _compress(state: List[int], block: bytes) -> None:
    """Run the 64-round compression function over one block, updating state in place"""
    # Message schedule
    w = [int.from_bytes(block[i:i + 4], "big") for i in range(0, BLOCK_SIZE, 4)]
    for t in range(16, 64):
        w.append((w[t - 16] + _small_sigma0(w[t - 15]) + w[t - 7] + _small_sigma1(w[t - 2])) & MASK_32)

    a, b, c, d, e, f, g, h = state

    for t in range(64):
        choose = (e & f) ^ (~e & g)
        temp1 = (h + _big_sigma1(e) + choose + ROUND_CONSTANTS[t] + w[t]) & MASK_32
        majority = (a & b) ^ (a & c) ^ (b & c)
        temp2 = (_big_sigma0(a) + majority) & MASK_32

        h = g
        g = f
        f = e
        e = (d + temp1) & MASK_32
        d = c
        c = b
        b = a
        a = (temp1 + temp2) & MASK_32

    for i, value in enumerate((a, b, c, d, e, f, g, h)):
        state[i] = (state[i] + value) & MASK_32


class SHA256:
    """
    Incremental SHA-256 hasher with a hashlib-like surface.

    Example:
        >>> SHA256(b"abc").hexdigest()[:16]
        'ba7816bf8f01cfea'
    """

    name = "sha256"
    digest_size = DIGEST_SIZE
    block_size = BLOCK_SIZE

    def __init__(self, data: BytesLike = b""):
        self._state = list(INITIAL_HASH)
        self._buffer = b""
        self._length = 0
        if data:
            self.update(data)

    def update(self, data: BytesLike) -> None:
        """Feed more bytes into the hash"""
        if data is None:
            raise ValueError("Input cannot be None")
        if not isinstance(data, (bytes, bytearray, memoryview)):
            raise TypeError(f"Expected bytes-like input, got {type(data).__name__}")

        data = bytes(data)
        self._length += len(data)

        buffer = self._buffer + data
        full_length = len(buffer) - len(buffer) % BLOCK_SIZE
        for offset in range(0, full_length, BLOCK_SIZE):
            _compress(self._state, buffer[offset:offset + BLOCK_SIZE])
        self._buffer = buffer[full_length:]

    def digest(self) -> bytes:
        """Return the 32-byte digest of everything fed so far"""
        state = list(self._state)
        padded = _pad(self._buffer, self._length)
        for offset in range(0, len(padded), BLOCK_SIZE):
            _compress(state, padded[offset:offset + BLOCK_SIZE])
        return b"".join(word.to_bytes(4, "big") for word in state)

    def hexdigest(self) -> str:
        return self.digest().hex()

    def copy(self) -> "SHA256":
        clone = SHA256()
        clone._state = list(self._state)
        clone._buffer = self._buffer
        clone._length = self._length
        return clone


def sha256(data: BytesLike) -> bytes:
    """
    Hash a byte string.

    Args:
        data: Message bytes

    Returns:
        32-byte digest

    Raises:
        ValueError: If data is None
    """
    if data is None:
        raise ValueError("Input cannot be None")
    return SHA256(data).digest()


def sha256_hex(text: str) -> str:
    """Hash the UTF-8 encoding of text and return lowercase hex"""
    if text is None:
        raise ValueError("Input cannot be None")
    return sha256(text.encode("utf-8")).hex()
