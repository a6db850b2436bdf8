from __future__ import annotations

import threading
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Union

from gatehouse.logging import get_logger
from gatehouse.storage.models import Session
from gatehouse.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

FLASH_PREFIX = "flash:"
FLASH_LEVELS = ("message", "warning", "error")


class SessionStore:
    """Server-side per-client session with read-once (pull) semantics.

    Backed by Redis when a cache is configured, otherwise by a process-local
    dict that is only suitable for a single worker.
    """

    def __init__(
        self,
        cache: Optional[Union[RedisCache, SyncRedisCache]] = None,
        *,
        ttl_minutes: int = 120,
    ) -> None:
        self.cache = cache
        self.ttl = timedelta(minutes=ttl_minutes)
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()

    @property
    def ttl_seconds(self) -> int:
        return int(self.ttl.total_seconds())

    def _live(self, session_id: str) -> Optional[Session]:
        # Caller holds self._lock
        session = self._sessions.get(session_id)
        if session and session.expires_at <= datetime.utcnow():
            self._sessions.pop(session_id, None)
            return None
        return session

    def _touch(self, session: Session) -> None:
        session.expires_at = datetime.utcnow() + self.ttl

    async def start(self, session_id: Optional[str] = None) -> str:
        """Return ``session_id`` when it names a live session, else a fresh id."""
        if session_id:
            if self.cache:
                if await self.cache.session_exists(session_id):
                    return session_id
            else:
                with self._lock:
                    if self._live(session_id):
                        return session_id
        new_id = str(uuid.uuid4())
        if self.cache:
            await self.cache.session_create(new_id, self.ttl_seconds)
        else:
            with self._lock:
                self._purge_expired()
                session = Session.new()
                session.id = new_id
                self._touch(session)
                self._sessions[new_id] = session
        return new_id

    def _purge_expired(self) -> None:
        now = datetime.utcnow()
        expired = [sid for sid, s in self._sessions.items() if s.expires_at <= now]
        for sid in expired:
            self._sessions.pop(sid, None)

    async def put(self, session_id: str, key: str, value: Any) -> None:
        if self.cache:
            await self.cache.session_put(session_id, key, value, self.ttl_seconds)
            return
        with self._lock:
            session = self._live(session_id)
            if session is None:
                session = Session.new()
                session.id = session_id
                self._sessions[session_id] = session
            session.data[key] = value
            self._touch(session)

    async def get(self, session_id: str, key: str) -> Any:
        if self.cache:
            return await self.cache.session_get(session_id, key)
        with self._lock:
            session = self._live(session_id)
            return session.data.get(key) if session else None

    async def pull(self, session_id: str, key: str) -> Any:
        """Read and remove ``key`` in one step; a second pull returns None."""
        if self.cache:
            return await self.cache.session_pull(session_id, key)
        with self._lock:
            session = self._live(session_id)
            return session.data.pop(key, None) if session else None

    async def forget(self, session_id: str, key: str) -> None:
        if self.cache:
            await self.cache.session_forget(session_id, key)
            return
        with self._lock:
            session = self._live(session_id)
            if session:
                session.data.pop(key, None)

    async def flush(self, session_id: str) -> None:
        """Drop every value held by the session."""
        if self.cache:
            await self.cache.session_flush(session_id)
            return
        with self._lock:
            session = self._live(session_id)
            if session:
                session.data.clear()

    async def regenerate(self, session_id: str) -> str:
        """Move the session's data under a new id and discard the old one."""
        if self.cache:
            data = await self.cache.session_all(session_id)
            new_id = await self.start()
            for key, value in data.items():
                await self.cache.session_put(new_id, key, value, self.ttl_seconds)
            await self.cache.session_flush(session_id)
        else:
            new_id = await self.start()
            with self._lock:
                old = self._sessions.pop(session_id, None)
                if old and old.expires_at > datetime.utcnow():
                    self._sessions[new_id].data.update(old.data)
        logger.debug("session_regenerated")
        return new_id

    async def flash(self, session_id: str, level: str, message: str) -> None:
        if level not in FLASH_LEVELS:
            raise ValueError(f"unknown flash level: {level}")
        await self.put(session_id, f"{FLASH_PREFIX}{level}", message)

    async def pull_flashes(self, session_id: str) -> Dict[str, str]:
        flashes: Dict[str, str] = {}
        for level in FLASH_LEVELS:
            message = await self.pull(session_id, f"{FLASH_PREFIX}{level}")
            if message:
                flashes[level] = message
        return flashes
