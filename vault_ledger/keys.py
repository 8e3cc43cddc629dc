"""
System Key Custodian Module

Owns the single RSA key pair used to encrypt ledger fields. The pair is
persisted in the ``system_keys`` table under a logical name and cached in
memory for the lifetime of the owning object.
"""

import threading
import logging
from typing import Dict, Any, Optional

from .exceptions import StorageError, DuplicateRecordError
from .logging_config import log_action
from .rsa import KeyPair, generate_key_pair, DEFAULT_KEY_BITS
from .storage import StorageInterface


logger = logging.getLogger(__name__)

SYSTEM_KEYS_TABLE = "system_keys"
SYSTEM_KEY_NAME = "SYSTEM_TRANSACTION_KEY"


class SystemKeyStore:
    """
    Thread-safe cache of the system key pair.

    The first caller loads the pair from storage or, when no row exists,
    generates and inserts one. If another process wins the insert race the
    unique constraint on ``key_name`` rejects ours and the winner's row is
    read back, so every caller ends up with the persisted pair.
    """

    def __init__(self, storage: StorageInterface, key_bits: int = DEFAULT_KEY_BITS,
                 key_name: str = SYSTEM_KEY_NAME):
        self.storage = storage
        self.key_bits = key_bits
        self.key_name = key_name
        self._key_pair: Optional[KeyPair] = None
        self._lock = threading.Lock()

    @property
    def is_loaded(self) -> bool:
        return self._key_pair is not None

    def get_or_create_system_key_pair(self) -> KeyPair:
        """
        Return the system key pair, creating and persisting it on first use.

        Must not be called inside another storage transaction; key creation
        commits on its own.

        Raises:
            StorageError: If the pair can neither be loaded nor persisted
        """
        key_pair = self._key_pair
        if key_pair is not None:
            return key_pair

        with self._lock:
            if self._key_pair is not None:
                return self._key_pair

            key_pair = self._load()
            if key_pair is None:
                key_pair = self._create()

            self._key_pair = key_pair
            return key_pair

    def _load(self) -> Optional[KeyPair]:
        rows = self.storage.find(SYSTEM_KEYS_TABLE, {"key_name": self.key_name})
        if not rows:
            return None
        return self._key_pair_from_dict(rows[0])

    def _create(self) -> KeyPair:
        log_action(logger, "info", "Generating system key pair",
                   action="generate_system_key", resource=self.key_name,
                   extra={"key_bits": self.key_bits})
        key_pair = generate_key_pair(self.key_bits)

        try:
            with self.storage.atomic():
                self.storage.insert(SYSTEM_KEYS_TABLE, self._key_pair_to_dict(key_pair))
        except DuplicateRecordError:
            # Lost the creation race; use the pair that was committed first
            logger.info("System key inserted concurrently, loading stored pair")
            stored = self._load()
            if stored is None:
                raise StorageError("System key row vanished after duplicate insert")
            return stored

        log_action(logger, "info", "System key pair stored",
                   action="store_system_key", resource=self.key_name)
        return key_pair

    def _key_pair_to_dict(self, key_pair: KeyPair) -> Dict[str, Any]:
        return {
            'key_name': self.key_name,
            'modulus': str(key_pair.modulus),
            'public_exponent': str(key_pair.public_exponent),
            'private_exponent': str(key_pair.private_exponent),
        }

    def _key_pair_from_dict(self, data: Dict[str, Any]) -> KeyPair:
        try:
            return KeyPair(
                modulus=int(data['modulus']),
                public_exponent=int(data['public_exponent']),
                private_exponent=int(data['private_exponent']),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise StorageError(f"Stored key '{self.key_name}' is malformed") from e
