from __future__ import annotations

from typing import List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from gatehouse.logging import get_logger
from gatehouse.storage.models import (
    Account,
    Company,
    SecondFactorSecret,
    User,
    UserAuthProvider,
)

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class AccountStore(Protocol):
    """Persistence operations the login engine relies on.

    Implemented by :class:`gatehouse.storage.memory.MemoryStore` and
    :class:`gatehouse.storage.postgres.PostgresStore`.
    """

    def create_company(self, name: Optional[str] = None) -> Company: ...

    def get_company(self, company_id: str) -> Optional[Company]: ...

    def create_account(
        self, company_id: str, name: Optional[str] = None
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_key(self, account_key: str) -> Optional[Account]: ...

    def create_user(
        self,
        account_id: str,
        email: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        registered: bool = False,
        is_active: bool = True,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def count_users(self) -> int: ...

    def increment_failed_logins(self, user_id: str) -> int: ...

    def reset_failed_logins(self, user_id: str) -> None: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[Tuple[str, str]]: ...

    def set_second_factor_secret(
        self, user_id: str, secret: str, enabled: bool = True
    ) -> SecondFactorSecret: ...

    def get_second_factor_secret(
        self, user_id: str
    ) -> Optional[SecondFactorSecret]: ...

    def link_user_auth_provider(
        self, user_id: str, provider: str, provider_uid: str
    ) -> None: ...

    def get_user_by_provider(
        self, provider: str, provider_uid: str
    ) -> Optional[User]: ...

    def list_user_auth_providers(self, user_id: str) -> List[UserAuthProvider]: ...

    def unlink_user_auth_providers(self, user_id: str) -> int: ...

    def force_delete_account(self, account_id: str) -> bool: ...


class CredentialVerifier:
    """Hashes and checks passwords with argon2id."""

    def __init__(self, store: AccountStore) -> None:
        self.store = store
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def set_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self.hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def verify(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False
