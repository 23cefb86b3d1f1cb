"""Localized strings loaded once at startup."""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from pathlib import Path
from types import MappingProxyType
from typing import Any

from telechat_bot.log import get_logger

logger = get_logger(__name__)

LOCALES_DIR = Path(__file__).parent / "locales"
FALLBACK_LANGUAGE = "en"
SUPPORTED_LANGUAGES = ("en", "id")

LANGUAGE_LABELS = {
    "en": "🇬🇧 English",
    "id": "🇮🇩 Indonesia",
}


class Localizer:
    """Read-only key -> string lookup per language, falling back to English."""

    def __init__(self, tables: Mapping[str, Mapping[str, str]]):
        self._tables = MappingProxyType(
            {lang: MappingProxyType(dict(table)) for lang, table in tables.items()}
        )

    @classmethod
    def load(
        cls, directory: str | Path = LOCALES_DIR, languages: Iterable[str] = SUPPORTED_LANGUAGES
    ) -> Localizer:
        tables: dict[str, dict[str, str]] = {}
        for lang in languages:
            path = Path(directory) / f"{lang}.json"
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as e:
                logger.error("locale_load_failed", language=lang, path=str(path), error=str(e))
                continue
            tables[lang] = {str(k): str(v) for k, v in data.items()}
            logger.debug("locale_loaded", language=lang, keys=len(data))
        return cls(tables)

    def languages(self) -> list[str]:
        return list(self._tables)

    def supports(self, lang: str) -> bool:
        return lang in self._tables

    def get(self, lang: str, key: str, **fmt: Any) -> str:
        """Look up ``key`` in ``lang``, then English, then return the key itself."""
        text = self._tables.get(lang, {}).get(key)
        if text is None:
            text = self._tables.get(FALLBACK_LANGUAGE, {}).get(key, key)
        if fmt:
            try:
                return text.format(**fmt)
            except (KeyError, IndexError, ValueError):
                logger.warning("locale_format_failed", language=lang, key=key)
        return text
