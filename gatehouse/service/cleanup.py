from __future__ import annotations

from gatehouse.logging import get_logger
from gatehouse.service.credentials import AccountStore
from gatehouse.service.errors import CleanupFailed
from gatehouse.storage.errors import ConstraintViolation, StorageError
from gatehouse.storage.models import User

logger = get_logger(__name__)


class AccountCleanup:
    """Destroys disposable (unregistered) trial accounts on forced logout."""

    def __init__(self, store: AccountStore) -> None:
        self.store = store

    def force_logout(self, user: User, force: bool) -> bool:
        """Remove ``user``'s account when it is unregistered and ``force`` is set.

        Returns True when the account was deleted. Registered users are never
        touched. The OAuth unlink, the company removal (only when no other
        account shares it) and the account removal happen in one storage
        transaction; a failure leaves everything in place and raises
        :class:`CleanupFailed`.
        """
        if user.registered or not force:
            return False
        account = self.store.get_account(user.account_id)
        if not account:
            logger.warning("forced_logout_account_missing", user_id=user.id)
            return False
        try:
            company_deleted = self.store.force_delete_account(account.id)
        except (StorageError, ConstraintViolation) as exc:
            logger.error(
                "forced_logout_cleanup_failed",
                account_id=account.id,
                error=str(exc),
            )
            raise CleanupFailed(
                "account cleanup failed", detail={"account_id": account.id}
            ) from exc
        logger.info(
            "forced_logout_cleanup",
            account_id=account.id,
            company_deleted=company_deleted,
        )
        return True
