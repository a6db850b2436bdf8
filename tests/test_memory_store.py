"""Tests for MemoryStore persistence and the account deletion unit."""

import json
from concurrent.futures import ThreadPoolExecutor

import pytest

from gatehouse.storage.errors import ConstraintViolation, StorageError
from gatehouse.storage.memory import MemoryStore


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="k")


@pytest.fixture
def account(store):
    company = store.create_company("acme")
    return store.create_account(company.id, name="main")


class TestUsers:
    def test_duplicate_email_rejected(self, store, account):
        store.create_user(account.id, "dup@example.com")
        with pytest.raises(ConstraintViolation):
            store.create_user(account.id, "dup@example.com")

    def test_user_requires_account(self, store):
        with pytest.raises(ConstraintViolation):
            store.create_user("missing", "x@example.com")

    def test_duplicate_email_differing_in_case_rejected(self, store, account):
        store.create_user(account.id, "Bob@example.com")
        with pytest.raises(ConstraintViolation):
            store.create_user(account.id, "bob@example.com")
        assert store.count_users() == 1

    def test_email_lookup_ignores_case(self, store, account):
        user = store.create_user(account.id, "Mixed@Example.com")
        assert store.get_user_by_email("mixed@example.com").id == user.id

    def test_failed_login_counter(self, store, account):
        user = store.create_user(account.id, "c@example.com")
        assert store.increment_failed_logins(user.id) == 1
        assert store.increment_failed_logins(user.id) == 2
        store.reset_failed_logins(user.id)
        assert store.get_user(user.id).failed_logins == 0

    def test_account_key_lookup(self, store, account):
        assert store.get_account_by_key(account.account_key).id == account.id
        assert store.get_account_by_key("nope") is None


class TestPersistence:
    def test_state_survives_reload(self, tmp_path, store, account):
        user = store.create_user(account.id, "keep@example.com", registered=True)
        store.save_password(user.id, "hash", "argon2id")
        store.link_user_auth_provider(user.id, "github", "7")

        reloaded = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="k")
        again = reloaded.get_user_by_email("keep@example.com")
        assert again.registered is True
        assert reloaded.get_password_record(user.id) == ("hash", "argon2id")
        assert reloaded.get_user_by_provider("github", "7").id == user.id
        assert reloaded.get_account(account.id).account_key == account.account_key

    def test_second_factor_secret_encrypted_at_rest(self, tmp_path, store, account):
        user = store.create_user(account.id, "mfa@example.com")
        store.set_second_factor_secret(user.id, "JBSWY3DPEHPK3PXP", enabled=True)
        raw = (tmp_path / "state" / "memory_store.json").read_text()
        assert "JBSWY3DPEHPK3PXP" not in raw
        stored = json.loads(raw)["second_factor_secrets"][0]
        assert stored["enabled"] is True
        assert store.get_second_factor_secret(user.id).secret == "JBSWY3DPEHPK3PXP"


class TestForceDeleteAccount:
    def test_removes_account_users_and_company(self, store, account):
        user = store.create_user(account.id, "gone@example.com")
        store.save_password(user.id, "hash", "argon2id")
        assert store.force_delete_account(account.id) is True
        assert store.get_account(account.id) is None
        assert store.get_user(user.id) is None
        assert store.get_password_record(user.id) is None
        assert store.get_company(account.company_id) is None

    def test_keeps_company_shared_with_another_account(self, store, account):
        sibling = store.create_account(account.company_id)
        assert store.force_delete_account(account.id) is False
        assert store.get_company(account.company_id) is not None
        assert store.get_account(sibling.id) is not None

    def test_last_sharer_removes_company(self, store, account):
        sibling = store.create_account(account.company_id)
        assert store.force_delete_account(account.id) is False
        assert store.force_delete_account(sibling.id) is True
        assert store.get_company(account.company_id) is None

    def test_concurrent_sharers_leave_no_orphan_company(self, store, account):
        sibling = store.create_account(account.company_id)
        with ThreadPoolExecutor(max_workers=2) as pool:
            results = list(pool.map(store.force_delete_account, [account.id, sibling.id]))
        assert sorted(results) == [False, True]
        assert store.get_company(account.company_id) is None

    def test_unknown_account(self, store):
        with pytest.raises(ConstraintViolation):
            store.force_delete_account("missing")

    def test_failure_rolls_back(self, store, account, monkeypatch):
        user = store.create_user(account.id, "stay@example.com")
        store.link_user_auth_provider(user.id, "google", "g")

        def fail():
            raise RuntimeError("disk full")

        monkeypatch.setattr(store, "_persist_state", fail)
        with pytest.raises(StorageError):
            store.force_delete_account(account.id)
        assert store.get_account(account.id) is not None
        assert store.get_company(account.company_id) is not None
        assert store.get_user(user.id) is not None
        assert store.get_user_by_provider("google", "g").id == user.id

