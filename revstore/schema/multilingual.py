"""
Multilingual containers.

A multilingual value maps a language code to a string (or to a list of
strings for array fields such as aliases). Rich text fields wrap two such
containers under ``text`` and ``html`` keys.

Invariants:
    - Keys are members of VALID_LANGUAGES or the undetermined code "und"
    - Values are never coerced; wrong shapes are reported, not fixed
    - resolve() never returns an empty string

Example:
    >>> label = {"en": "The Hobbit", "de": "Der Hobbit"}
    >>> resolve("de", label)
    ResolvedString(text='Der Hobbit', language='de')
    >>> resolve("fr", label).language
    'en'
"""

from __future__ import annotations

import html
import re
from dataclasses import dataclass
from typing import Any

VALID_LANGUAGES: tuple[str, ...] = (
    "en",
    "ar",
    "bn",
    "de",
    "eo",
    "es",
    "fi",
    "fr",
    "hi",
    "hu",
    "it",
    "ja",
    "lt",
    "mk",
    "nl",
    "pt",
    "pt-PT",
    "sk",
    "sl",
    "sv",
    "tr",
    "uk",
    "zh",
    "zh-Hant",
)

UNDETERMINED = "und"

STORAGE_LANGUAGES: frozenset[str] = frozenset((*VALID_LANGUAGES, UNDETERMINED))

_TAG_RE = re.compile(r"<[^>]+>")


@dataclass(frozen=True)
class ResolvedString:
    """Best available string for a requested language.

    Attributes:
        text: The resolved string
        language: Language the string was actually found in
    """

    text: str
    language: str


def is_valid_language(code: str) -> bool:
    """Return True if code may be used as a storage key."""
    return code in STORAGE_LANGUAGES


def _base_language(code: str) -> str:
    return code.split("-", 1)[0].lower()


def get_fallbacks(language: str) -> list[str]:
    """Fallback chain for a language.

    Order: the language itself, "und", other variants of the same base
    language, English, then every remaining supported language.
    """
    chain: list[str] = []

    def append(code: str) -> None:
        if code not in chain:
            chain.append(code)

    append(language)
    append(UNDETERMINED)
    base = _base_language(language)
    for candidate in VALID_LANGUAGES:
        if _base_language(candidate) == base:
            append(candidate)
    append("en")
    for candidate in VALID_LANGUAGES:
        append(candidate)
    return chain


def validate_ml_value(
    value: Any,
    *,
    array: bool = False,
    max_length: int | None = None,
) -> list[str]:
    """Check the shape of a multilingual container.

    Args:
        value: Candidate container
        array: Whether each language maps to a list of strings
        max_length: Maximum length of each string

    Returns:
        List of problems (empty if valid)
    """
    if value is None:
        return []
    if not isinstance(value, dict):
        return ["must be an object mapping language codes to text"]

    problems: list[str] = []
    for lang, lang_value in value.items():
        if not is_valid_language(lang):
            problems.append(f"invalid language code '{lang}'")
            continue
        items = lang_value if array else [lang_value]
        if array and not isinstance(lang_value, list):
            problems.append(f"value for language '{lang}' must be a list")
            continue
        for item in items:
            if not isinstance(item, str):
                problems.append(f"value for language '{lang}' must be a string")
            elif max_length is not None and len(item) > max_length:
                problems.append(
                    f"value for language '{lang}' exceeds maximum length of {max_length} characters"
                )
    return problems


def resolve(language: str, container: dict[str, str] | None) -> ResolvedString | None:
    """Find the best fit for a language, following fallbacks.

    Args:
        language: Requested language code
        container: Multilingual string container

    Returns:
        ResolvedString, or None when nothing non-empty is available
    """
    if not container:
        return None
    for candidate in get_fallbacks(language):
        text = container.get(candidate)
        if isinstance(text, str) and text != "":
            return ResolvedString(text=text, language=candidate)
    return None


def strip_html(container: dict[str, Any] | None) -> dict[str, Any] | None:
    """Copy of a container with entities decoded and tags removed."""
    if not isinstance(container, dict):
        return container
    result: dict[str, Any] = {}
    for lang, text in container.items():
        if isinstance(text, str):
            result[lang] = _TAG_RE.sub("", html.unescape(text))
        else:
            result[lang] = text
    return result
