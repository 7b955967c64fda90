"""i18n message catalogs with English fallback."""

import json
from pathlib import Path

SUPPORTED_LOCALES = ["en", "zh"]
DEFAULT_LOCALE = "en"

_cache: dict[str, dict[str, str]] = {}
_dir = Path(__file__).parent


def load_all() -> None:
    """Load all JSON translation files into the module cache."""
    for locale in SUPPORTED_LOCALES:
        path = _dir / f"{locale}.json"
        with open(path, encoding="utf-8") as f:
            _cache[locale] = json.load(f)


def get_translations(locale: str) -> dict[str, str]:
    """Return merged translations: English base + target locale overrides.

    Guarantees every English key is present. Falls back to English for
    unsupported locales or missing keys.
    """
    if not _cache:
        load_all()

    en = _cache.get(DEFAULT_LOCALE, {})
    if locale not in SUPPORTED_LOCALES or locale == DEFAULT_LOCALE:
        return dict(en)

    merged = dict(en)
    merged.update(_cache.get(locale, {}))
    return merged


def translate(key: str, locale: str = DEFAULT_LOCALE) -> str:
    """Message for ``key``; the key itself when no catalog has it."""
    return get_translations(locale).get(key, key)


def locale_from_header(accept_language: str | None) -> str:
    """Pick the first supported locale from an ``Accept-Language`` header."""
    for part in (accept_language or "").split(","):
        tag = part.split(";")[0].strip().lower()
        primary = tag.split("-")[0]
        if primary in SUPPORTED_LOCALES:
            return primary
    return DEFAULT_LOCALE
