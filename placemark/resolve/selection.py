"""Pick one place among reverse-geocoding candidates, with a matching locale."""
from __future__ import annotations

import functools
import locale as _locale
import re
from typing import FrozenSet, Iterable, Optional, Sequence, Tuple

from placemark.models.place import PlaceRecord

DEFAULT_LANGUAGE = "en"
DEFAULT_LOCALE = "en_US"

_IDENTIFIER = re.compile(r"^([a-z]{2,3})_([A-Z]{2})$")


@functools.lru_cache(maxsize=1)
def available_locales() -> FrozenSet[str]:
    """``language_REGION`` identifiers known to the interpreter's locale tables."""
    identifiers = set()
    for value in _locale.locale_alias.values():
        base = value.split(".", 1)[0].split("@", 1)[0]
        if _IDENTIFIER.match(base):
            identifiers.add(base)
    return frozenset(identifiers)


def language_of(tag: Optional[str]) -> str:
    """Reduce ``"fr-CA"``/``"fr_CA.UTF-8"`` style tags to the bare language."""
    if not tag:
        return DEFAULT_LANGUAGE
    return re.split(r"[-_.@]", tag.strip(), maxsplit=1)[0].lower() or DEFAULT_LANGUAGE


def select_candidate(
    candidates: Sequence[PlaceRecord],
    *,
    language: Optional[str] = None,
    locales: Optional[Iterable[str]] = None,
    default_locale: str = DEFAULT_LOCALE,
) -> Tuple[PlaceRecord, str]:
    """Return the preferred candidate and the locale identifier to present it with.

    Precedence, first match wins over the candidates in the given order:

    1. a country whose ``<language>_<ISO>`` locale is available;
    2. a country whose ``en_<ISO>`` locale is available;
    3. the first candidate with any country code, with the first available
       identifier (sorted) ending in ``_<ISO>``, else ``default_locale``;
    4. the first candidate with ``default_locale``.
    """
    if not candidates:
        raise ValueError("select_candidate() needs at least one candidate")
    known = frozenset(locales) if locales is not None else available_locales()
    lang = language_of(language)

    for preferred in (lang, DEFAULT_LANGUAGE):
        for candidate in candidates:
            code = candidate.iso_country_code.upper()
            if code and f"{preferred}_{code}" in known:
                return candidate, f"{preferred}_{code}"

    for candidate in candidates:
        code = candidate.iso_country_code.upper()
        if code:
            suffix = f"_{code}"
            match = next((ident for ident in sorted(known) if ident.endswith(suffix)), None)
            return candidate, match or default_locale

    return candidates[0], default_locale
