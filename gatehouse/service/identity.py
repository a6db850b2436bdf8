from __future__ import annotations

from typing import List

from gatehouse.logging import get_logger
from gatehouse.service.credentials import AccountStore
from gatehouse.service.errors import ConflictError, ForbiddenError
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import UserAuthProvider, VerifiedIdentity

logger = get_logger(__name__)


class IdentityLinker:
    """Associates external OAuth identities with local users."""

    def __init__(self, store: AccountStore) -> None:
        self.store = store

    def link(self, user_id: str, identity: VerifiedIdentity) -> None:
        try:
            self.store.link_user_auth_provider(
                user_id, identity.provider, identity.provider_uid
            )
        except ConstraintViolation as exc:
            raise ConflictError(
                "identity already linked", detail={"provider": identity.provider}
            ) from exc
        logger.info("identity_linked", user_id=user_id, provider=identity.provider)

    def identities(self, user_id: str) -> List[UserAuthProvider]:
        return self.store.list_user_auth_providers(user_id)

    def unlink(self, user_id: str) -> int:
        removed = self.store.unlink_user_auth_providers(user_id)
        logger.info("identity_unlinked", user_id=user_id, removed=removed)
        return removed

    def associate_accounts(self, current_user_id: str, other_user_id: str) -> None:
        """Let one session act for several local users.

        Not available: associating accounts is refused until it has a
        design that does not let one login escalate into another user.
        """
        logger.warning(
            "account_linking_refused",
            user_id=current_user_id,
            other_user_id=other_user_id,
        )
        raise ForbiddenError("account linking is disabled")
