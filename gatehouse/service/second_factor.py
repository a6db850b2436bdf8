from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
import threading
import time
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple, Union
from urllib.parse import quote, urlencode

from gatehouse.logging import get_logger
from gatehouse.service.credentials import AccountStore
from gatehouse.service.errors import InvalidSecondFactorCode, ReplayedCode
from gatehouse.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def generate_secret() -> str:
    return base64.b32encode(secrets.token_bytes(20)).decode().rstrip("=")


def generate_totp(
    secret: str, timestamp: float, *, interval: int = 30, digits: int = 6
) -> str:
    """RFC 6238 code (HMAC-SHA1) for the time step containing ``timestamp``."""
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except (ValueError, TypeError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def verify_totp(
    secret: str,
    code: str,
    *,
    window: int = 1,
    interval: int = 30,
    digits: int = 6,
    now: Optional[float] = None,
) -> bool:
    if not code or len(code) != digits or not code.isdigit():
        return False
    timestamp = time.time() if now is None else now
    for step in range(-window, window + 1):
        generated = generate_totp(
            secret, timestamp + step * interval, interval=interval, digits=digits
        )
        # Constant-time comparison
        if generated and hmac.compare_digest(generated, code):
            return True
    return False


def provisioning_uri(secret: str, account_name: str, issuer: str) -> str:
    label = quote(f"{issuer}:{account_name}")
    query = urlencode({"secret": secret, "issuer": issuer})
    return f"otpauth://totp/{label}?{query}"


class ReplayDenylist:
    """Short-lived set of consumed ``(user, code)`` pairs.

    ``insert_if_absent`` is atomic: concurrent inserts of the same key have
    exactly one winner. Redis SET NX EX gives that across workers; the
    fallback dict only within one process.
    """

    def __init__(
        self,
        cache: Optional[Union[RedisCache, SyncRedisCache]] = None,
        *,
        ttl_seconds: int = 240,
    ) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self._entries: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    async def insert_if_absent(self, key: str) -> bool:
        if self.cache:
            return await self.cache.add_if_absent(key, self.ttl_seconds)
        now = datetime.utcnow()
        with self._lock:
            expired = [k for k, exp in self._entries.items() if exp <= now]
            for k in expired:
                self._entries.pop(k, None)
            if key in self._entries:
                return False
            self._entries[key] = now + timedelta(seconds=self.ttl_seconds)
            return True


class SecondFactorChallenges:
    """TOTP enrollment and replay-protected verification."""

    def __init__(
        self,
        store: AccountStore,
        denylist: ReplayDenylist,
        *,
        interval: int = 30,
        digits: int = 6,
        window: int = 1,
        issuer: str = "Gatehouse",
    ) -> None:
        self.store = store
        self.denylist = denylist
        self.interval = interval
        self.digits = digits
        self.window = window
        self.issuer = issuer

    def is_enrolled(self, user_id: str) -> bool:
        record = self.store.get_second_factor_secret(user_id)
        return bool(record and record.enabled and record.secret)

    def enroll(self, user_id: str, account_name: str) -> Tuple[str, str]:
        """Create and enable a secret; returns it with its ``otpauth://`` URI."""
        secret = generate_secret()
        self.store.set_second_factor_secret(user_id, secret, enabled=True)
        logger.info("second_factor_enrolled", user_id=user_id)
        return secret, provisioning_uri(secret, account_name, self.issuer)

    def current_code(self, user_id: str, *, now: Optional[float] = None) -> str:
        record = self.store.get_second_factor_secret(user_id)
        if not record:
            raise InvalidSecondFactorCode()
        timestamp = time.time() if now is None else now
        return generate_totp(
            record.secret, timestamp, interval=self.interval, digits=self.digits
        )

    async def validate(self, user_id: str, code: str) -> None:
        """Accept ``code`` once for ``user_id`` or raise.

        A code that verifies but was already accepted inside the replay
        window raises :class:`ReplayedCode`.
        """
        record = self.store.get_second_factor_secret(user_id)
        if not record or not record.enabled:
            raise InvalidSecondFactorCode()
        code = (code or "").strip()
        if not verify_totp(
            record.secret,
            code,
            window=self.window,
            interval=self.interval,
            digits=self.digits,
        ):
            logger.info("second_factor_rejected", user_id=user_id)
            raise InvalidSecondFactorCode()
        if not await self.denylist.insert_if_absent(f"{user_id}:{code}"):
            logger.warning("second_factor_replayed", user_id=user_id)
            raise ReplayedCode()
