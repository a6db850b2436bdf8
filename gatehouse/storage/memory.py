from __future__ import annotations

import base64
import copy
import hashlib
import json
import os
import secrets
import threading
import uuid
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from gatehouse.logging import get_logger
from gatehouse.storage.errors import ConstraintViolation, StorageError
from gatehouse.storage.models import (
    Account,
    Company,
    SecondFactorSecret,
    User,
    UserAuthProvider,
)


class MemoryStore:
    """In-memory account store with JSON snapshots under ``fs_root``."""

    def __init__(
        self,
        fs_root: str = "/tmp/gatehouse",
        *,
        mfa_encryption_key: str | None = None,
        persist: bool = True,
    ) -> None:
        self.logger = get_logger(__name__)
        self.companies: Dict[str, Company] = {}
        self.accounts: Dict[str, Account] = {}
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.providers: List[UserAuthProvider] = []
        self.second_factor_secrets: Dict[str, SecondFactorSecret] = {}
        # RLock so cascading operations can call the single-row helpers
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.persist = persist
        self._mfa_cipher = self._build_mfa_cipher(mfa_encryption_key)
        if self.persist:
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_mfa_cipher(self, key_material: str | None) -> Fernet:
        material = key_material or os.getenv("MFA_SECRET_KEY")
        if not material:
            key_path = self.fs_root / ".mfa_key"
            try:
                if key_path.exists():
                    material = key_path.read_text().strip()
            except OSError as exc:
                self.logger.warning("mfa_key_read_failed", error=str(exc))
            if not material:
                material = secrets.token_urlsafe(64)
                try:
                    key_path.write_text(material)
                    os.chmod(key_path, 0o600)
                except OSError as exc:
                    raise RuntimeError("Unable to persist MFA encryption key") from exc
        return Fernet(self._derive_cipher_key(material))

    # companies / accounts
    def create_company(self, name: Optional[str] = None) -> Company:
        with self._data_lock:
            company = Company(id=str(uuid.uuid4()), name=name)
            self.companies[company.id] = company
            self._persist_state()
            return company

    def get_company(self, company_id: str) -> Optional[Company]:
        with self._data_lock:
            return self.companies.get(company_id)

    def create_account(
        self, company_id: str, name: Optional[str] = None
    ) -> Account:
        with self._data_lock:
            if company_id not in self.companies:
                raise ConstraintViolation("company not found", {"company_id": company_id})
            account = Account(
                id=str(uuid.uuid4()),
                company_id=company_id,
                account_key=Account.new_key(),
                name=name,
            )
            self.accounts[account.id] = account
            self._persist_state()
            return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account and account.deleted_at:
                return None
            return account

    def get_account_by_key(self, account_key: str) -> Optional[Account]:
        with self._data_lock:
            return next(
                (
                    a
                    for a in self.accounts.values()
                    if a.account_key == account_key and not a.deleted_at
                ),
                None,
            )

    # users
    def create_user(
        self,
        account_id: str,
        email: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        registered: bool = False,
        is_active: bool = True,
    ) -> User:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("account not found", {"account_id": account_id})
            folded = email.lower()
            if any(existing.email.lower() == folded for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                account_id=account_id,
                email=email,
                first_name=first_name,
                last_name=last_name,
                registered=registered,
                is_active=is_active,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if user and user.deleted_at:
                return None
            return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next(
                (
                    u
                    for u in self.users.values()
                    if u.email.lower() == email.lower() and not u.deleted_at
                ),
                None,
            )

    def count_users(self) -> int:
        with self._data_lock:
            return sum(1 for u in self.users.values() if not u.deleted_at)

    # failed-login counter
    def increment_failed_logins(self, user_id: str) -> int:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            user.failed_logins += 1
            self._persist_state()
            return user.failed_logins

    def reset_failed_logins(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.failed_logins == 0:
                return
            user.failed_logins = 0
            self._persist_state()

    # credentials
    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def _encrypt_mfa_secret(self, secret: str) -> str:
        if not secret:
            return secret
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_mfa_secret(self, secret: str) -> str:
        if not secret:
            return secret
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            self.logger.warning("mfa_secret_decrypt_failed")
            return secret

    def set_second_factor_secret(
        self, user_id: str, secret: str, enabled: bool = True
    ) -> SecondFactorSecret:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for mfa", {"user_id": user_id})
            record = SecondFactorSecret(
                user_id=user_id,
                secret=self._encrypt_mfa_secret(secret),
                enabled=enabled,
            )
            self.second_factor_secrets[user_id] = record
            self._persist_state()
            return SecondFactorSecret(
                user_id=user_id,
                secret=secret,
                enabled=enabled,
                created_at=record.created_at,
            )

    def get_second_factor_secret(self, user_id: str) -> Optional[SecondFactorSecret]:
        with self._data_lock:
            record = self.second_factor_secrets.get(user_id)
            if not record:
                return None
            return SecondFactorSecret(
                user_id=record.user_id,
                secret=self._decrypt_mfa_secret(record.secret),
                enabled=record.enabled,
                created_at=record.created_at,
            )

    # external identities
    def link_user_auth_provider(
        self, user_id: str, provider: str, provider_uid: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            for existing in self.providers:
                if existing.provider == provider and existing.provider_uid == provider_uid:
                    if existing.user_id != user_id:
                        raise ConstraintViolation(
                            "identity already linked", {"provider": provider}
                        )
                    return
                if existing.user_id == user_id and existing.provider == provider:
                    raise ConstraintViolation(
                        "provider already linked for user", {"provider": provider}
                    )
            max_id = max((p.id for p in self.providers), default=0)
            self.providers.append(
                UserAuthProvider(
                    id=max_id + 1,
                    user_id=user_id,
                    provider=provider,
                    provider_uid=provider_uid,
                )
            )
            self._persist_state()

    def get_user_by_provider(self, provider: str, provider_uid: str) -> Optional[User]:
        with self._data_lock:
            for mapping in self.providers:
                if mapping.provider == provider and mapping.provider_uid == provider_uid:
                    return self.get_user(mapping.user_id)
            return None

    def list_user_auth_providers(self, user_id: str) -> List[UserAuthProvider]:
        with self._data_lock:
            return [p for p in self.providers if p.user_id == user_id]

    def unlink_user_auth_providers(self, user_id: str) -> int:
        with self._data_lock:
            before = len(self.providers)
            self.providers = [p for p in self.providers if p.user_id != user_id]
            removed = before - len(self.providers)
            if removed:
                self._persist_state()
            return removed

    # deletion
    def force_delete_account(self, account_id: str) -> bool:
        """Irrecoverably remove an account, its users and, when no other account
        shares it, its company.

        Runs as one unit: on any failure the previous state is restored.
        Returns True when the company was removed as well.
        """
        with self._data_lock:
            snapshot = self._snapshot()
            try:
                account = self.accounts.get(account_id)
                if not account:
                    raise ConstraintViolation("account not found", {"account_id": account_id})
                user_ids = [u.id for u in self.users.values() if u.account_id == account_id]
                self.providers = [p for p in self.providers if p.user_id not in user_ids]
                delete_company = not any(
                    a.company_id == account.company_id and a.id != account_id
                    for a in self.accounts.values()
                )
                if delete_company:
                    self.companies.pop(account.company_id, None)
                for user_id in user_ids:
                    self.users.pop(user_id, None)
                    self.credentials.pop(user_id, None)
                    self.second_factor_secrets.pop(user_id, None)
                self.accounts.pop(account_id, None)
                self._persist_state()
                return delete_company
            except Exception as exc:
                self._restore(snapshot)
                self.logger.error(
                    "force_delete_account_rolled_back",
                    account_id=account_id,
                    error=str(exc),
                )
                if isinstance(exc, ConstraintViolation):
                    raise
                raise StorageError(
                    "account deletion failed", {"account_id": account_id}
                ) from exc

    def _snapshot(self) -> dict:
        return copy.deepcopy(
            {
                "companies": self.companies,
                "accounts": self.accounts,
                "users": self.users,
                "credentials": self.credentials,
                "providers": self.providers,
                "second_factor_secrets": self.second_factor_secrets,
            }
        )

    def _restore(self, snapshot: dict) -> None:
        self.companies = snapshot["companies"]
        self.accounts = snapshot["accounts"]
        self.users = snapshot["users"]
        self.credentials = snapshot["credentials"]
        self.providers = snapshot["providers"]
        self.second_factor_secrets = snapshot["second_factor_secrets"]

    # persistence
    @staticmethod
    def _serialize(obj) -> dict:
        data = asdict(obj)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        return data

    @staticmethod
    def _deserialize(model, data: dict):
        values = dict(data)
        for key in ("created_at", "deleted_at"):
            if values.get(key):
                values[key] = datetime.fromisoformat(values[key])
        return model(**values)

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "companies": [self._serialize(c) for c in self.companies.values()],
            "accounts": [self._serialize(a) for a in self.accounts.values()],
            "users": [self._serialize(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "providers": [self._serialize(p) for p in self.providers],
            "second_factor_secrets": [
                self._serialize(s) for s in self.second_factor_secrets.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.companies = {
            c["id"]: self._deserialize(Company, c) for c in data.get("companies", [])
        }
        self.accounts = {
            a["id"]: self._deserialize(Account, a) for a in data.get("accounts", [])
        }
        self.users = {u["id"]: self._deserialize(User, u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.providers = [
            self._deserialize(UserAuthProvider, p) for p in data.get("providers", [])
        ]
        self.second_factor_secrets = {
            s["user_id"]: self._deserialize(SecondFactorSecret, s)
            for s in data.get("second_factor_secrets", [])
        }
        return True
