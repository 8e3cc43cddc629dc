"""
Credential Records Module

Registration, login and PIN checks over the ``users`` table. A credential
record is immutable once created; only salted hashes of the password and
PIN are ever stored.
"""

import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional

from .credentials import generate_salt, hash_password, hash_pin, verify_password, verify_pin, DEFAULT_SALT_LENGTH
from .exceptions import ValidationError, AuthenticationError, DuplicateRecordError
from .logging_config import log_action
from .storage import StorageInterface, StorageRecord


logger = logging.getLogger(__name__)

AUXILIARY_ID_PREFIX = "UID-"


@dataclass
class User(StorageRecord):
    """Credential record; hashes and salts are kept out of repr"""
    username: str
    password_hash: str = field(repr=False)
    password_salt: str = field(repr=False)
    pin_hash: str = field(repr=False)
    pin_salt: str = field(repr=False)
    auxiliary_user_id: Optional[str] = None


class UserManager:
    """
    Creates and verifies credential records
    """

    def __init__(
        self,
        storage: StorageInterface,
        salt_length: int = DEFAULT_SALT_LENGTH,
        password_min_length: int = 8,
        pin_min_length: int = 4
    ):
        self.storage = storage
        self.salt_length = salt_length
        self.password_min_length = password_min_length
        self.pin_min_length = pin_min_length
        self.users_table = "users"

    def register(self, username: str, password: str, pin: str) -> User:
        """
        Register a new credential record.

        Args:
            username: Unique login name (surrounding whitespace is trimmed)
            password: Login password, at least password_min_length characters
            pin: Transaction PIN, at least pin_min_length characters

        Returns:
            Created User with a freshly generated auxiliary identifier

        Raises:
            ValidationError: If any field is missing/too short or the username is taken
        """
        if username is None or not username.strip():
            raise ValidationError("Username is required")
        username = username.strip()
        if password is None or not password.strip():
            raise ValidationError("Password is required")
        if len(password) < self.password_min_length:
            raise ValidationError(f"Password must be at least {self.password_min_length} characters")
        if pin is None or len(pin) < self.pin_min_length:
            raise ValidationError(f"PIN must be at least {self.pin_min_length} digits")

        if self.get_user_by_username(username) is not None:
            raise ValidationError("Username already exists")

        password_salt = generate_salt(self.salt_length)
        pin_salt = generate_salt(self.salt_length)
        now = datetime.now(timezone.utc)

        user = User(
            id=0,
            created_at=now,
            updated_at=now,
            username=username,
            password_hash=hash_password(password, password_salt),
            password_salt=password_salt,
            pin_hash=hash_pin(pin, pin_salt),
            pin_salt=pin_salt,
            auxiliary_user_id=self._generate_auxiliary_id()
        )

        record = self._user_to_dict(user)
        del record['id']
        try:
            with self.storage.atomic():
                user.id = self.storage.insert(self.users_table, record)
        except DuplicateRecordError as e:
            # Another registration took the username between our check and insert
            raise ValidationError("Username already exists") from e

        log_action(logger, "info", "User registered",
                   user_id=str(user.id), action="register_user", resource="users")
        return user

    def authenticate(self, username: str, password: str) -> User:
        """
        Verify a username/password pair.

        Raises:
            AuthenticationError: Unknown user or wrong password (same message for both)
        """
        user = None
        if username and password is not None:
            user = self.get_user_by_username(username.strip())

        if user is None or not self.verify_password(user, password):
            log_action(logger, "warning", "Authentication failed",
                       action="authenticate", resource="users")
            raise AuthenticationError("Invalid username or password")

        log_action(logger, "info", "User authenticated",
                   user_id=str(user.id), action="authenticate", resource="users")
        return user

    def verify_password(self, user: User, password: str) -> bool:
        if password is None:
            return False
        return verify_password(password, user.password_salt, user.password_hash)

    def verify_pin(self, user: User, pin: str) -> bool:
        """Check a transaction PIN against the user's stored PIN hash"""
        if pin is None:
            return False
        return verify_pin(pin, user.pin_salt, user.pin_hash)

    def get_user(self, user_id: int) -> Optional[User]:
        """Get user by ID"""
        user_dict = self.storage.load(self.users_table, user_id)
        if user_dict:
            return self._user_from_dict(user_dict)
        return None

    def get_user_by_username(self, username: str) -> Optional[User]:
        """Get user by username"""
        users = self.storage.find(self.users_table, {"username": username})
        if users:
            return self._user_from_dict(users[0])
        return None

    def get_user_by_auxiliary_id(self, auxiliary_user_id: str) -> Optional[User]:
        """Get user by public auxiliary identifier"""
        if not auxiliary_user_id:
            return None
        users = self.storage.find(self.users_table, {"auxiliary_user_id": auxiliary_user_id.strip()})
        if users:
            return self._user_from_dict(users[0])
        return None

    def _generate_auxiliary_id(self) -> str:
        return f"{AUXILIARY_ID_PREFIX}{secrets.token_hex(4).upper()}"

    def _user_to_dict(self, user: User) -> Dict:
        """Convert User to dictionary for storage"""
        return user.to_dict()

    def _user_from_dict(self, data: Dict) -> User:
        """Convert dictionary to User"""
        return User(
            id=int(data['id']),
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            username=data['username'],
            password_hash=data['password_hash'],
            password_salt=data['password_salt'],
            pin_hash=data['pin_hash'],
            pin_salt=data['pin_salt'],
            auxiliary_user_id=data.get('auxiliary_user_id')
        )
