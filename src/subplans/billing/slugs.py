"""Slug generation for plans, features and subscriptions."""

import re
import unicodedata

_NON_WORD = re.compile(r"[^\w\s-]")
_SEPARATORS = re.compile(r"[-\s_]+")


def slugify(value: str, separator: str = "-") -> str:
    """Lowercase ASCII slug of ``value``.

    >>> slugify("Pro Plan (Yearly)")
    'pro-plan-yearly'
    """
    normalized = unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode("ascii")
    cleaned = _NON_WORD.sub("", normalized).strip().lower()
    return _SEPARATORS.sub(separator, cleaned).strip(separator)
