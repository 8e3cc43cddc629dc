"""
Shared fixtures. Key generation in pure Python is slow, so one 2048-bit
system key pair is generated per test session and written into each test
storage before the system touches it.
"""

import pytest

from vault_ledger.config import VaultLedgerConfig
from vault_ledger.keys import SYSTEM_KEYS_TABLE, SYSTEM_KEY_NAME
from vault_ledger.rsa import generate_key_pair
from vault_ledger.storage import InMemoryStorage
from vault_ledger.system import VaultLedgerSystem


def store_key_pair(storage, key_pair, key_name=SYSTEM_KEY_NAME):
    """Persist a key pair the way SystemKeyStore does"""
    storage.insert(SYSTEM_KEYS_TABLE, {
        "key_name": key_name,
        "modulus": str(key_pair.modulus),
        "public_exponent": str(key_pair.public_exponent),
        "private_exponent": str(key_pair.private_exponent),
    })


@pytest.fixture(scope="session")
def system_key_pair():
    """Production-sized key pair shared by the whole session"""
    return generate_key_pair(2048)


@pytest.fixture
def storage(system_key_pair):
    """In-memory storage with the system key already stored"""
    storage = InMemoryStorage(lock_timeout=5.0)
    store_key_pair(storage, system_key_pair)
    return storage


@pytest.fixture
def test_config():
    return VaultLedgerConfig(database_url="memory://", lock_timeout_seconds=5.0)


@pytest.fixture
def system(storage, test_config):
    """Fully wired system over seeded in-memory storage"""
    system = VaultLedgerSystem(config=test_config, storage=storage)
    yield system
    system.close()
