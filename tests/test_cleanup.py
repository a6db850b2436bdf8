"""Tests for forced logout cleanup of trial accounts."""

import pytest

from gatehouse.service.cleanup import AccountCleanup
from gatehouse.service.errors import CleanupFailed
from gatehouse.storage.errors import StorageError
from gatehouse.storage.memory import MemoryStore


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="k", persist=False)


@pytest.fixture
def cleanup(store):
    return AccountCleanup(store)


def _make_user(store, *, registered, company_id=None, email="trial@example.com"):
    if company_id is None:
        company_id = store.create_company().id
    account = store.create_account(company_id)
    user = store.create_user(account.id, email, registered=registered)
    store.link_user_auth_provider(user.id, "google", f"uid-{user.id}")
    return user, account


class TestRegisteredGuard:
    @pytest.mark.parametrize("force", [True, False])
    def test_registered_user_is_never_touched(self, cleanup, store, force):
        user, account = _make_user(store, registered=True)
        assert cleanup.force_logout(user, force) is False
        assert store.get_user(user.id) is not None
        assert store.get_account(account.id) is not None
        assert store.get_company(account.company_id) is not None
        assert store.list_user_auth_providers(user.id)

    def test_unregistered_without_force_is_plain_logout(self, cleanup, store):
        user, account = _make_user(store, registered=False)
        assert cleanup.force_logout(user, False) is False
        assert store.get_account(account.id) is not None


class TestForcedCleanup:
    def test_unshared_company_is_deleted(self, cleanup, store):
        user, account = _make_user(store, registered=False)
        assert cleanup.force_logout(user, True) is True
        assert store.get_user(user.id) is None
        assert store.get_account(account.id) is None
        assert store.get_company(account.company_id) is None
        assert store.get_user_by_provider("google", f"uid-{user.id}") is None

    def test_shared_company_is_preserved(self, cleanup, store):
        user, account = _make_user(store, registered=False)
        other, other_account = _make_user(
            store, registered=True, company_id=account.company_id, email="owner@example.com"
        )
        assert cleanup.force_logout(user, True) is True
        assert store.get_account(account.id) is None
        assert store.get_company(account.company_id) is not None
        assert store.get_account(other_account.id) is not None
        assert store.get_user(other.id) is not None
        assert store.list_user_auth_providers(other.id)

    def test_second_trial_sharer_removes_company(self, cleanup, store):
        first, account = _make_user(store, registered=False)
        second, _ = _make_user(
            store, registered=False, company_id=account.company_id, email="second@example.com"
        )
        assert cleanup.force_logout(first, True) is True
        assert store.get_company(account.company_id) is not None
        assert cleanup.force_logout(second, True) is True
        assert store.get_company(account.company_id) is None

    def test_storage_failure_raises_cleanup_failed(self, cleanup, store, monkeypatch):
        user, _ = _make_user(store, registered=False)

        def boom(account_id):
            raise StorageError("account deletion failed", {"account_id": account_id})

        monkeypatch.setattr(store, "force_delete_account", boom)
        with pytest.raises(CleanupFailed):
            cleanup.force_logout(user, True)
        assert store.get_user(user.id) is not None
