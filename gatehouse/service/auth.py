"""Login orchestration.

``LoginOrchestrator`` drives one login attempt through its states::

    anonymous -> credentials_submitted -> denied
                                       -> awaiting_second_factor -> authenticated
                                       -> authenticated

It coordinates the lockout gate, the credential check, the pending
second-factor marker in the session, the replay denylist, the login event and
the forced cleanup of disposable accounts on logout. Each operation returns an
outcome from :mod:`gatehouse.service.outcomes`; domain errors are converted to
``Denied`` here and only cleanup or unexpected failures propagate.
"""

from __future__ import annotations

import html
from dataclasses import dataclass
from typing import Optional

from gatehouse.config import Settings
from gatehouse.logging import get_logger
from gatehouse.service.cleanup import AccountCleanup
from gatehouse.service.credentials import AccountStore, CredentialVerifier
from gatehouse.service.errors import (
    INVALID_CODE_KEY,
    INVALID_CREDENTIALS_KEY,
    AccountLocked,
    InvalidCredentials,
    InvalidSecondFactorCode,
    NoPendingChallenge,
)
from gatehouse.service.events import EventDispatcher, UserLoggedIn
from gatehouse.service.identity import IdentityLinker
from gatehouse.service.lockout import LockoutPolicy
from gatehouse.service.messages import MessageCatalog
from gatehouse.service.oauth import OAuthProviderFlow
from gatehouse.service.outcomes import Denied, Outcome, Redirect, View
from gatehouse.service.second_factor import SecondFactorChallenges
from gatehouse.service.session import SessionStore
from gatehouse.storage.models import User

logger = get_logger(__name__)

AUTH_USER_KEY = "auth:user_id"
PENDING_SECOND_FACTOR_KEY = "2fa:user:id"
INTENDED_URL_KEY = "url:intended"

LOGIN_PATH = "/login"
SETUP_PATH = "/setup"
SETTINGS_PATH = "/settings/user_details"


@dataclass
class RequestContext:
    """What the orchestrator needs to know about the incoming request."""

    session_id: str
    url: str = ""
    host: str = ""


class LoginOrchestrator:
    def __init__(
        self,
        *,
        settings: Settings,
        store: AccountStore,
        sessions: SessionStore,
        credentials: CredentialVerifier,
        lockout: LockoutPolicy,
        challenges: SecondFactorChallenges,
        linker: IdentityLinker,
        cleanup: AccountCleanup,
        oauth: OAuthProviderFlow,
        events: EventDispatcher,
        messages: MessageCatalog,
    ) -> None:
        self.settings = settings
        self.store = store
        self.sessions = sessions
        self.credentials = credentials
        self.lockout = lockout
        self.challenges = challenges
        self.linker = linker
        self.cleanup = cleanup
        self.oauth = oauth
        self.events = events
        self.messages = messages

    def _invalid_credentials(self) -> Denied:
        return Denied(
            self.messages.translate_or(
                INVALID_CREDENTIALS_KEY, "These credentials do not match our records."
            )
        )

    def _invalid_code(self) -> Denied:
        return Denied(
            self.messages.translate_or(
                INVALID_CODE_KEY, "The code is invalid or has already been used."
            )
        )

    async def current_user(self, ctx: RequestContext) -> Optional[User]:
        user_id = await self.sessions.get(ctx.session_id, AUTH_USER_KEY)
        if not user_id:
            return None
        return self.store.get_user(user_id)

    async def remember_intended(self, ctx: RequestContext, path: str) -> None:
        """Record where to send the user once a login completes."""
        if path.startswith("/") and not path.startswith("//"):
            await self.sessions.put(ctx.session_id, INTENDED_URL_KEY, path)

    def _is_tenant_host(self, host: str) -> bool:
        labels = host.split(":", 1)[0].split(".")
        if len(labels) < 3:
            return False
        return labels[0].startswith(self.settings.tenant_subdomain_prefix)

    async def begin_login(self, ctx: RequestContext) -> Outcome:
        if await self.current_user(ctx):
            return Redirect("/")
        if not self.settings.hosted_mode and self.store.count_users() == 0:
            return Redirect(SETUP_PATH)
        if (
            self.settings.hosted_mode
            and not self.settings.test_mode
            and ctx.url.rstrip("/") != self.settings.login_url
            and not self._is_tenant_host(ctx.host)
        ):
            return Redirect(self.settings.login_url)
        return View("auth.login")

    async def complete_login(
        self, ctx: RequestContext, identifier: str, secret: str
    ) -> Outcome:
        """Check credentials, honoring the lockout gate.

        Every failure (unknown identifier, wrong secret, locked account)
        yields the same denial.
        """
        identifier = (identifier or "").strip()
        try:
            if not self.lockout.admit(identifier):
                raise AccountLocked()
            user = self.store.get_user_by_email(identifier) if identifier else None
            if not user or not user.is_active or not self.credentials.verify(
                user.id, secret or ""
            ):
                self.lockout.record_failure(identifier)
                raise InvalidCredentials()
        except AccountLocked:
            logger.warning("login_denied_locked")
            return self._invalid_credentials()
        except InvalidCredentials:
            logger.info("login_failed")
            return self._invalid_credentials()
        return await self._authenticated(ctx, user, method="password")

    async def begin_oauth_login(
        self,
        ctx: RequestContext,
        provider: str,
        code: Optional[str] = None,
        state: Optional[str] = None,
    ) -> Outcome:
        if not code:
            return Redirect(await self.oauth.begin_flow(provider))
        identity = await self.oauth.complete_flow(provider, code, state)
        if identity is None:
            return self._invalid_credentials()
        user = self.store.get_user_by_provider(identity.provider, identity.provider_uid)
        if user is None and identity.email and identity.email_verified:
            user = self.store.get_user_by_email(identity.email)
            if user is not None:
                self.linker.link(user.id, identity)
        if user is None or not user.is_active:
            logger.info("oauth_login_unmatched", provider=provider)
            return self._invalid_credentials()
        return await self._authenticated(ctx, user, method=f"oauth:{provider}")

    async def _authenticated(self, ctx: RequestContext, user: User, *, method: str) -> Outcome:
        if self.challenges.is_enrolled(user.id):
            account = self.store.get_account(user.account_id)
            if account is None:
                return self._invalid_credentials()
            # The primary credential alone must not leave an authenticated session
            await self.sessions.forget(ctx.session_id, AUTH_USER_KEY)
            await self.sessions.put(ctx.session_id, PENDING_SECOND_FACTOR_KEY, user.id)
            logger.info("second_factor_required", user_id=user.id, method=method)
            return Redirect(f"/validate_two_factor/{account.account_key}")
        return await self._complete(ctx, user, method=method)

    async def _complete(self, ctx: RequestContext, user: User, *, method: str) -> Outcome:
        session_id = await self.sessions.regenerate(ctx.session_id)
        await self.sessions.put(session_id, AUTH_USER_KEY, user.id)
        self.lockout.record_success(user.id)
        self.events.publish(
            UserLoggedIn(user_id=user.id, account_id=user.account_id, method=method)
        )
        intended = await self.sessions.pull(session_id, INTENDED_URL_KEY)
        return Redirect(intended or self.settings.redirect_to, session_id=session_id)

    def _challenge_matches(self, user: Optional[User], account_key: Optional[str]) -> bool:
        """Whether the challenge URL's account key belongs to the pending user."""
        if user is None:
            return False
        if account_key is None:
            return True
        account = self.store.get_account_by_key(account_key)
        return account is not None and account.id == user.account_id

    async def begin_second_factor_challenge(
        self, ctx: RequestContext, account_key: str
    ) -> Outcome:
        user_id = await self.sessions.get(ctx.session_id, PENDING_SECOND_FACTOR_KEY)
        if not user_id or not self._challenge_matches(
            self.store.get_user(user_id), account_key
        ):
            return Redirect(LOGIN_PATH)
        return View("auth.two_factor", {"account_key": account_key})

    async def complete_second_factor_challenge(
        self, ctx: RequestContext, code: str, account_key: Optional[str] = None
    ) -> Outcome:
        """Verify the one-time code for the pending challenge.

        The pending marker is consumed before verification, so a wrong or
        replayed code ends the challenge and the user starts over.
        """
        try:
            user_id = await self.sessions.pull(ctx.session_id, PENDING_SECOND_FACTOR_KEY)
            if not user_id:
                raise NoPendingChallenge()
            user = self.store.get_user(user_id)
            if not self._challenge_matches(user, account_key):
                raise NoPendingChallenge()
            await self.challenges.validate(user.id, code)
        except NoPendingChallenge:
            return Redirect(LOGIN_PATH)
        except InvalidSecondFactorCode:
            return self._invalid_code()
        return await self._complete(ctx, user, method="second_factor")

    async def unlink_identity(self, ctx: RequestContext) -> Outcome:
        user = await self.current_user(ctx)
        if user is None:
            return Redirect(LOGIN_PATH)
        self.linker.unlink(user.id)
        return Redirect(
            SETTINGS_PATH,
            flash=(
                "message",
                self.messages.translate_or("texts.updated_settings", "Settings updated"),
            ),
        )

    async def logout(
        self, ctx: RequestContext, *, force: bool = False, reason: Optional[str] = None
    ) -> Outcome:
        """End the session; destroys disposable trial accounts when forced.

        Raises :class:`gatehouse.service.errors.CleanupFailed` when a forced
        cleanup could not complete. The session is left intact in that case.
        """
        user = await self.current_user(ctx)
        if user is not None and force:
            self.cleanup.force_logout(user, force)
        await self.sessions.flush(ctx.session_id)
        session_id = await self.sessions.regenerate(ctx.session_id)
        flash = None
        if reason:
            key = f"texts.{html.escape(reason)}_logout"
            if self.messages.has(key):
                flash = ("warning", self.messages.translate(key))
        if user is not None:
            logger.info("user_logged_out", user_id=user.id, forced=force)
        return Redirect("/", flash=flash, session_id=session_id)
