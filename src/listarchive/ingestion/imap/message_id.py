"""Message-ID normalization.

Message-IDs arrive in several shapes: bracketed (``<a@b>``), bare, wrapped in
comments or quoted names, or as a whole References header. Everything that
touches the archive goes through :func:`normalize_message_id` so the unique
``message_id`` column and the thread lookups compare like with like.
"""

from __future__ import annotations

import re
from typing import List, Optional


# Characters allowed in an addr-spec local/domain part plus ``@``.
_DISALLOWED = re.compile(r"[^A-Za-z0-9.!#$%&'*+/=?^_`{|}~@-]")
_BRACKETED = re.compile(r"<([^<>]*)>")


def normalize_message_id(ref: Optional[str]) -> str:
    """Return the canonical form of a Message-ID reference.

    When the token contains ``<``, the content of the last ``<...>`` group is
    used (the raw token if no group closes). Every character outside the
    addr-spec set is then stripped. Never raises; empty input gives ``""``.

    Example:
        >>> normalize_message_id("Foo <abc@x.org> <def@y.org>")
        'def@y.org'
    """
    if not ref:
        return ""
    token = str(ref)
    if "<" in token:
        groups = _BRACKETED.findall(token)
        if groups:
            token = groups[-1]
    return _DISALLOWED.sub("", token)


def extract_references(header: Optional[str]) -> List[str]:
    """Split a References header into normalized ids, oldest first.

    Bracketed ids are taken in order; headers without brackets fall back to
    whitespace splitting. Empty results are dropped.
    """
    if not header:
        return []
    text = str(header)
    tokens = _BRACKETED.findall(text) if "<" in text else text.split()
    references: List[str] = []
    for token in tokens:
        normalized = normalize_message_id(token)
        if normalized:
            references.append(normalized)
    return references


__all__ = ["extract_references", "normalize_message_id"]
