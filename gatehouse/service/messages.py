from __future__ import annotations

from typing import Dict, Mapping, Optional

from gatehouse.logging import get_logger
from gatehouse.service.errors import UnknownLocalizationKey

logger = get_logger(__name__)

DEFAULT_MESSAGES: Dict[str, Dict[str, str]] = {
    "en": {
        "texts.invalid_credentials": "These credentials do not match our records.",
        "texts.invalid_code": "The code is invalid or has already been used.",
        "texts.updated_settings": "Successfully updated settings",
        "texts.inactive_logout": "You have been logged out due to inactivity.",
        "texts.expired_logout": "Your session has expired, please log in again.",
        "texts.deleted_logout": "Your trial account has been removed.",
    },
}


class MessageCatalog:
    """Key to localized string lookup.

    Lookups that miss are never fatal to login or logout: ``has`` returns
    False and ``translate_or`` falls back to the given default.
    """

    def __init__(
        self,
        messages: Optional[Mapping[str, Mapping[str, str]]] = None,
        *,
        locale: str = "en",
        fallback_locale: str = "en",
    ) -> None:
        merged: Dict[str, Dict[str, str]] = {
            loc: dict(entries) for loc, entries in DEFAULT_MESSAGES.items()
        }
        for loc, entries in (messages or {}).items():
            merged.setdefault(loc, {}).update(entries)
        self._messages = merged
        self.locale = locale
        self.fallback_locale = fallback_locale

    def _lookup(self, key: str, locale: Optional[str]) -> Optional[str]:
        for loc in (locale or self.locale, self.fallback_locale):
            value = self._messages.get(loc, {}).get(key)
            if value is not None:
                return value
        return None

    def has(self, key: str, locale: Optional[str] = None) -> bool:
        return self._lookup(key, locale) is not None

    def translate(self, key: str, locale: Optional[str] = None, **params: str) -> str:
        value = self._lookup(key, locale)
        if value is None:
            raise UnknownLocalizationKey(key)
        return value.format(**params) if params else value

    def translate_or(
        self, key: str, default: str, locale: Optional[str] = None, **params: str
    ) -> str:
        try:
            return self.translate(key, locale, **params)
        except (UnknownLocalizationKey, KeyError, IndexError) as exc:
            logger.debug("message_lookup_failed", key=key, error=str(exc))
            return default
