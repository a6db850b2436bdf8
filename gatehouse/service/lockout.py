from __future__ import annotations

from typing import Optional

from gatehouse.logging import get_logger
from gatehouse.service.credentials import AccountStore

logger = get_logger(__name__)


class LockoutPolicy:
    """Failed-login counter and gate.

    The counter is kept on the user the login identifier resolves to. It never
    decays with time: once it reaches ``max_failed_logins`` the identifier is
    refused until a successful authentication (or an operator ``unlock``)
    resets it. Unknown identifiers have nothing to count and are always
    admitted, so the gate reveals nothing about which identifiers exist.
    """

    def __init__(self, store: AccountStore, max_failed_logins: int) -> None:
        if max_failed_logins < 1:
            raise ValueError("max_failed_logins must be at least 1")
        self.store = store
        self.max_failed_logins = max_failed_logins

    def admit(self, identifier: str) -> bool:
        user = self.store.get_user_by_email(identifier)
        if not user:
            return True
        return user.failed_logins < self.max_failed_logins

    def record_failure(self, identifier: str) -> Optional[int]:
        user = self.store.get_user_by_email(identifier)
        if not user:
            return None
        count = self.store.increment_failed_logins(user.id)
        if count >= self.max_failed_logins:
            logger.warning("login_lockout_reached", user_id=user.id, failed_logins=count)
        return count

    def record_success(self, user_id: str) -> None:
        self.store.reset_failed_logins(user_id)

    def unlock(self, identifier: str) -> bool:
        user = self.store.get_user_by_email(identifier)
        if not user:
            return False
        self.store.reset_failed_logins(user.id)
        logger.info("login_lockout_cleared", user_id=user.id)
        return True
