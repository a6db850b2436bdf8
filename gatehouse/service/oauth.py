from __future__ import annotations

import secrets
import threading
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlencode

import httpx

from gatehouse.config import Settings
from gatehouse.logging import get_logger
from gatehouse.service.errors import NotFoundError, ValidationError
from gatehouse.storage.models import VerifiedIdentity
from gatehouse.storage.redis_cache import RedisCache, SyncRedisCache

OAUTH_PROVIDERS = {
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "openid email profile",
    },
    "github": {
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "scope": "read:user user:email",
    },
    "microsoft": {
        "auth_url": "https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
        "token_url": "https://login.microsoftonline.com/common/oauth2/v2.0/token",
        "userinfo_url": "https://graph.microsoft.com/v1.0/me",
        "scope": "openid email profile User.Read",
    },
}

OAUTH_STATE_TTL = timedelta(minutes=10)

logger = get_logger(__name__)


class OAuthProviderFlow:
    """Authorization-code handshake with the supported OAuth providers."""

    def __init__(
        self,
        settings: Settings,
        cache: Optional[Union[RedisCache, SyncRedisCache]] = None,
        *,
        http_timeout: float = 30.0,
    ) -> None:
        self.settings = settings
        self.cache = cache
        self.http_timeout = http_timeout
        self._states: Dict[str, Tuple[str, datetime]] = {}
        self._code_registry: Dict[Tuple[str, str], dict] = {}
        self._lock = threading.Lock()

    def _credentials(self, provider: str) -> Tuple[Optional[str], Optional[str]]:
        return (
            getattr(self.settings, f"oauth_{provider}_client_id", None),
            getattr(self.settings, f"oauth_{provider}_client_secret", None),
        )

    def _redirect_uri(self, provider: str) -> str:
        configured = self.settings.oauth_redirect_uri
        if configured:
            return configured.replace("{provider}", provider)
        return f"{self.settings.site_url}/auth/{provider}"

    async def begin_flow(self, provider: str) -> str:
        """Store a fresh ``state`` and return the provider authorization URL."""
        if provider not in OAUTH_PROVIDERS:
            raise NotFoundError("unsupported oauth provider", detail={"provider": provider})
        client_id, _ = self._credentials(provider)
        if not client_id:
            logger.warning("oauth_not_configured", provider=provider)
            raise ValidationError(
                "oauth provider not configured", detail={"provider": provider}
            )

        state = secrets.token_urlsafe(24)
        if self.cache:
            await self.cache.set_oauth_state(
                state, provider, int(OAUTH_STATE_TTL.total_seconds())
            )
        else:
            with self._lock:
                self._purge_states()
                self._states[state] = (provider, datetime.utcnow() + OAUTH_STATE_TTL)

        provider_config = OAUTH_PROVIDERS[provider]
        params = {
            "client_id": client_id,
            "redirect_uri": self._redirect_uri(provider),
            "response_type": "code",
            "scope": provider_config["scope"],
            "state": state,
        }
        logger.info("oauth_flow_started", provider=provider)
        return f"{provider_config['auth_url']}?{urlencode(params)}"

    def _purge_states(self) -> None:
        now = datetime.utcnow()
        for key in [k for k, (_, exp) in self._states.items() if exp <= now]:
            self._states.pop(key, None)

    async def _consume_state(self, state: Optional[str]) -> Optional[str]:
        if not state:
            return None
        if self.cache:
            return await self.cache.pop_oauth_state(state)
        with self._lock:
            entry = self._states.pop(state, None)
        if not entry:
            return None
        provider, expires_at = entry
        if expires_at <= datetime.utcnow():
            return None
        return provider

    def register_code(self, provider: str, code: str, payload: dict) -> None:
        """Record an exchanged OAuth payload for testing or offline flows."""
        with self._lock:
            self._code_registry[(provider, code)] = payload

    async def complete_flow(
        self, provider: str, code: str, state: Optional[str]
    ) -> Optional[VerifiedIdentity]:
        """Validate ``state`` and exchange ``code`` for a verified identity.

        Returns None when the state is missing, expired or issued for another
        provider, or when the provider exchange fails.
        """
        if provider not in OAUTH_PROVIDERS:
            raise NotFoundError("unsupported oauth provider", detail={"provider": provider})
        stored_provider = await self._consume_state(state)
        if stored_provider != provider:
            logger.warning("oauth_state_invalid", provider=provider)
            return None

        with self._lock:
            payload = self._code_registry.pop((provider, code), None)
        if payload is None:
            payload = await self._exchange_code(provider, code)
        if not payload or not payload.get("provider_uid"):
            return None
        return VerifiedIdentity(
            provider=provider,
            provider_uid=str(payload["provider_uid"]),
            email=payload.get("email"),
            name=payload.get("name"),
            email_verified=payload.get("email_verified") is True,
        )

    async def _exchange_code(self, provider: str, code: str) -> Optional[dict]:
        client_id, client_secret = self._credentials(provider)
        if not client_id or not client_secret:
            logger.error("oauth_credentials_missing", provider=provider)
            return None
        provider_config = OAUTH_PROVIDERS[provider]
        try:
            async with httpx.AsyncClient(
                timeout=self.http_timeout, follow_redirects=False
            ) as client:
                token_response = await client.post(
                    provider_config["token_url"],
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "code": code,
                        "redirect_uri": self._redirect_uri(provider),
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                access_token = token_response.json().get("access_token")
                if not access_token:
                    logger.error("oauth_no_access_token", provider=provider)
                    return None

                headers = {"Authorization": f"Bearer {access_token}"}
                if provider == "github":
                    headers["Accept"] = "application/vnd.github+json"
                userinfo_response = await client.get(
                    provider_config["userinfo_url"], headers=headers
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
                if not isinstance(userinfo, dict):
                    logger.error("oauth_userinfo_invalid_format", provider=provider)
                    return None
                identity = parse_userinfo(provider, userinfo)

                if provider == "github":
                    # The profile email is user-editable; only /user/emails reports verification
                    emails_response = await client.get(
                        "https://api.github.com/user/emails", headers=headers
                    )
                    if emails_response.status_code == 200:
                        verified = _github_verified_email(
                            emails_response.json(), identity.get("email")
                        )
                        if verified:
                            identity["email"] = verified
                            identity["email_verified"] = True
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider=provider,
                status_code=exc.response.status_code,
            )
            return None
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("oauth_exchange_error", provider=provider, error=str(exc))
            return None

        logger.info("oauth_exchange_success", provider=provider)
        return identity


def parse_userinfo(provider: str, userinfo: dict) -> dict:
    """Normalize provider user info into ``provider_uid``/``email``/``name``."""
    if provider == "google":
        verified = userinfo.get("verified_email", userinfo.get("email_verified"))
        return {
            "provider_uid": userinfo.get("id") or userinfo.get("sub"),
            "email": userinfo.get("email"),
            "name": userinfo.get("name"),
            "email_verified": verified is True or verified == "true",
        }
    if provider == "github":
        uid = userinfo.get("id")
        return {
            "provider_uid": str(uid) if uid is not None else None,
            "email": userinfo.get("email"),
            "name": userinfo.get("name") or userinfo.get("login"),
            "email_verified": False,
        }
    if provider == "microsoft":
        return {
            "provider_uid": userinfo.get("id"),
            # Graph does not assert mailbox ownership; userPrincipalName is not a mailbox
            "email": userinfo.get("mail"),
            "name": userinfo.get("displayName"),
            "email_verified": False,
        }
    return {"provider_uid": userinfo.get("id") or userinfo.get("sub")}


def _github_verified_email(entries, preferred: Optional[str]) -> Optional[str]:
    """Pick a verified address from GitHub's /user/emails listing.

    The profile email wins when it is among the verified ones, otherwise the
    verified primary address is used.
    """
    if not isinstance(entries, list):
        return None
    verified = [
        e for e in entries if isinstance(e, dict) and e.get("verified") is True and e.get("email")
    ]
    if preferred and any(e["email"] == preferred for e in verified):
        return preferred
    return next((e["email"] for e in verified if e.get("primary")), None)
