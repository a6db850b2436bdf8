from __future__ import annotations

import base64
import hashlib
import uuid
from datetime import datetime
from typing import List, Optional

from cryptography.fernet import Fernet, InvalidToken
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from gatehouse.logging import get_logger
from gatehouse.storage.errors import ConstraintViolation, StorageError
from gatehouse.storage.models import (
    Account,
    Company,
    SecondFactorSecret,
    User,
    UserAuthProvider,
)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS company (
        id UUID PRIMARY KEY,
        name TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        deleted_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS account (
        id UUID PRIMARY KEY,
        company_id UUID NOT NULL REFERENCES company(id) ON DELETE CASCADE,
        account_key TEXT NOT NULL UNIQUE,
        name TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        deleted_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        account_id UUID NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        email CITEXT NOT NULL UNIQUE,
        first_name TEXT,
        last_name TEXT,
        registered BOOLEAN NOT NULL DEFAULT FALSE,
        failed_logins INTEGER NOT NULL DEFAULT 0,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        deleted_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_provider (
        id BIGSERIAL PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        provider TEXT NOT NULL,
        provider_uid TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (provider, provider_uid),
        UNIQUE (user_id, provider)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_second_factor (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        secret TEXT NOT NULL,
        enabled BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
]


def _row_to_user(row: dict) -> User:
    return User(
        id=str(row["id"]),
        account_id=str(row["account_id"]),
        email=row["email"],
        first_name=row.get("first_name"),
        last_name=row.get("last_name"),
        registered=bool(row.get("registered", False)),
        failed_logins=int(row.get("failed_logins") or 0),
        is_active=row.get("is_active", True),
        created_at=row.get("created_at", datetime.utcnow()),
        deleted_at=row.get("deleted_at"),
    )


def _row_to_account(row: dict) -> Account:
    return Account(
        id=str(row["id"]),
        company_id=str(row["company_id"]),
        account_key=row["account_key"],
        name=row.get("name"),
        created_at=row.get("created_at", datetime.utcnow()),
        deleted_at=row.get("deleted_at"),
    )


class PostgresStore:
    """Postgres-backed account store."""

    def __init__(self, dsn: str, *, mfa_encryption_key: str | None = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        if not mfa_encryption_key:
            raise RuntimeError("MFA_SECRET_KEY is required for the Postgres store")
        self._mfa_cipher = Fernet(
            base64.urlsafe_b64encode(hashlib.sha256(mfa_encryption_key.encode()).digest())
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute("CREATE EXTENSION IF NOT EXISTS citext")
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # companies / accounts
    def create_company(self, name: Optional[str] = None) -> Company:
        company = Company(id=str(uuid.uuid4()), name=name)
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO company (id, name, created_at) VALUES (%s, %s, %s)",
                (company.id, name, company.created_at),
            )
        return company

    def get_company(self, company_id: str) -> Optional[Company]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM company WHERE id = %s", (company_id,)
            ).fetchone()
        if not row:
            return None
        return Company(
            id=str(row["id"]),
            name=row.get("name"),
            created_at=row.get("created_at", datetime.utcnow()),
            deleted_at=row.get("deleted_at"),
        )

    def create_account(self, company_id: str, name: Optional[str] = None) -> Account:
        account = Account(
            id=str(uuid.uuid4()),
            company_id=company_id,
            account_key=Account.new_key(),
            name=name,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account (id, company_id, account_key, name, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (account.id, company_id, account.account_key, name, account.created_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("company not found", {"company_id": company_id})
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s AND deleted_at IS NULL",
                (account_id,),
            ).fetchone()
        return _row_to_account(row) if row else None

    def get_account_by_key(self, account_key: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE account_key = %s AND deleted_at IS NULL",
                (account_key,),
            ).fetchone()
        return _row_to_account(row) if row else None

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
        user = User(
            id=str(uuid.uuid4()),
            account_id=account_id,
            email=email,
            first_name=first_name,
            last_name=last_name,
            registered=registered,
            is_active=is_active,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, account_id, email, first_name, last_name, registered, is_active, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        account_id,
                        email,
                        first_name,
                        last_name,
                        registered,
                        is_active,
                        user.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("account not found", {"account_id": account_id})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s AND deleted_at IS NULL", (user_id,)
            ).fetchone()
        return _row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s AND deleted_at IS NULL", (email,)
            ).fetchone()
        return _row_to_user(row) if row else None

    def count_users(self) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS c FROM app_user WHERE deleted_at IS NULL"
            ).fetchone()
        return int(row["c"]) if row else 0

    # failed-login counter
    def increment_failed_logins(self, user_id: str) -> int:
        # Single-statement increment; the row lock serializes concurrent attempts.
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user SET failed_logins = failed_logins + 1
                WHERE id = %s
                RETURNING failed_logins
                """,
                (user_id,),
            ).fetchone()
        if not row:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        return int(row["failed_logins"])

    def reset_failed_logins(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET failed_logins = 0 WHERE id = %s AND failed_logins <> 0",
                (user_id,),
            )

    # credentials
    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    def set_second_factor_secret(
        self, user_id: str, secret: str, enabled: bool = True
    ) -> SecondFactorSecret:
        encrypted = self._mfa_cipher.encrypt(secret.encode()).decode()
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_second_factor (user_id, secret, enabled, created_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE SET secret = EXCLUDED.secret, enabled = EXCLUDED.enabled
                    """,
                    (user_id, encrypted, enabled),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for mfa", {"user_id": user_id})
        return SecondFactorSecret(user_id=user_id, secret=secret, enabled=enabled)

    def get_second_factor_secret(self, user_id: str) -> Optional[SecondFactorSecret]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_second_factor WHERE user_id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        try:
            secret = self._mfa_cipher.decrypt(row["secret"].encode()).decode()
        except InvalidToken:
            self.logger.warning("mfa_secret_decrypt_failed", user_id=user_id)
            return None
        return SecondFactorSecret(
            user_id=str(row["user_id"]),
            secret=secret,
            enabled=bool(row.get("enabled", False)),
            created_at=row.get("created_at", datetime.utcnow()),
        )

    # external identities
    def link_user_auth_provider(
        self, user_id: str, provider: str, provider_uid: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_provider (user_id, provider, provider_uid)
                    VALUES (%s, %s, %s)
                    """,
                    (user_id, provider, provider_uid),
                )
        except errors.UniqueViolation:
            existing = self.get_user_by_provider(provider, provider_uid)
            if existing and existing.id == user_id:
                return
            raise ConstraintViolation("identity already linked", {"provider": provider})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found", {"user_id": user_id})

    def get_user_by_provider(self, provider: str, provider_uid: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT u.* FROM user_auth_provider p
                JOIN app_user u ON u.id = p.user_id
                WHERE p.provider = %s AND p.provider_uid = %s AND u.deleted_at IS NULL
                """,
                (provider, provider_uid),
            ).fetchone()
        return _row_to_user(row) if row else None

    def list_user_auth_providers(self, user_id: str) -> List[UserAuthProvider]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM user_auth_provider WHERE user_id = %s ORDER BY id",
                (user_id,),
            ).fetchall()
        return [
            UserAuthProvider(
                id=int(row["id"]),
                user_id=str(row["user_id"]),
                provider=row["provider"],
                provider_uid=row["provider_uid"],
                created_at=row.get("created_at", datetime.utcnow()),
            )
            for row in rows
        ]

    def unlink_user_auth_providers(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM user_auth_provider WHERE user_id = %s", (user_id,)
            )
            return result.rowcount

    # deletion
    def force_delete_account(self, account_id: str) -> bool:
        """Irrecoverably remove an account, its users and, when no other account
        shares it, its company.

        Detach, company delete and account delete commit together or not at all.
        The company row is locked before its accounts are counted, so two
        sharers deleted concurrently cannot both leave it behind.
        Returns True when the company was removed as well.
        """
        try:
            with self._connect() as conn:
                with conn.transaction():
                    row = conn.execute(
                        "SELECT company_id FROM account WHERE id = %s FOR UPDATE",
                        (account_id,),
                    ).fetchone()
                    if not row:
                        raise ConstraintViolation(
                            "account not found", {"account_id": account_id}
                        )
                    conn.execute(
                        """
                        DELETE FROM user_auth_provider
                        WHERE user_id IN (SELECT id FROM app_user WHERE account_id = %s)
                        """,
                        (account_id,),
                    )
                    conn.execute(
                        "SELECT id FROM company WHERE id = %s FOR UPDATE",
                        (row["company_id"],),
                    )
                    siblings = conn.execute(
                        "SELECT COUNT(*) AS c FROM account WHERE company_id = %s AND id <> %s",
                        (row["company_id"], account_id),
                    ).fetchone()
                    delete_company = int(siblings["c"]) == 0
                    if delete_company:
                        # Cascades to the account and its users.
                        conn.execute(
                            "DELETE FROM company WHERE id = %s", (row["company_id"],)
                        )
                    conn.execute("DELETE FROM app_user WHERE account_id = %s", (account_id,))
                    conn.execute("DELETE FROM account WHERE id = %s", (account_id,))
            return delete_company
        except ConstraintViolation:
            raise
        except errors.Error as exc:
            self.logger.error(
                "force_delete_account_failed", account_id=account_id, error=str(exc)
            )
            raise StorageError("account deletion failed", {"account_id": account_id}) from exc
