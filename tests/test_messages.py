import pytest

from gatehouse.service.errors import UnknownLocalizationKey
from gatehouse.service.messages import MessageCatalog


class TestMessageCatalog:
    def test_default_keys(self):
        catalog = MessageCatalog()
        assert catalog.has("texts.invalid_credentials")
        assert catalog.translate("texts.updated_settings") == "Successfully updated settings"

    def test_unknown_key(self):
        catalog = MessageCatalog()
        assert not catalog.has("texts.nope_logout")
        with pytest.raises(UnknownLocalizationKey):
            catalog.translate("texts.nope_logout")
        assert catalog.translate_or("texts.nope_logout", "fallback") == "fallback"

    def test_overrides_and_locale_fallback(self):
        catalog = MessageCatalog(
            {"de": {"texts.updated_settings": "Einstellungen gespeichert"}}, locale="de"
        )
        assert catalog.translate("texts.updated_settings") == "Einstellungen gespeichert"
        # Falls back to English for keys the locale lacks
        assert catalog.has("texts.invalid_code")
        assert catalog.translate("texts.updated_settings", locale="en") == (
            "Successfully updated settings"
        )

    def test_parameters(self):
        catalog = MessageCatalog({"en": {"texts.hello": "Hello {name}"}})
        assert catalog.translate("texts.hello", name="Jane") == "Hello Jane"
        # A missing parameter falls back instead of failing
        assert catalog.translate_or("texts.hello", "Hi", other="x") == "Hi"
