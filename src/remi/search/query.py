"""
Query sanitizing and snippet helpers.

User input never reaches FTS5 verbatim: every term is reduced to index-safe
characters and quoted, so operators and stray quotes cannot cause a syntax
error.
"""

import re
from typing import Optional

# Characters kept inside a term; matches the index tokenizer's tokenchars
TERM_PUNCTUATION = frozenset("_./:-")


def query_terms(raw: str) -> list[str]:
    """
    Split a raw query into sanitized terms.

    Example:
        >>> query_terms('cache "invalidation" (OR)')
        ['cache', 'invalidation', 'OR']
    """
    terms = []
    for word in raw.split():
        term = "".join(ch for ch in word if ch.isalnum() or ch in TERM_PUNCTUATION)
        if term:
            terms.append(term)
    return terms


def sanitize_query(raw: str) -> str:
    """
    Turn free text into an FTS5 MATCH expression.

    Each term is double-quoted (a phrase of one token) and terms are joined
    with ``OR``.

    Example:
        >>> sanitize_query("cache invalidation")
        '"cache" OR "invalidation"'

    Returns:
        MATCH expression, or "" when nothing searchable remains
    """
    return " OR ".join(f'"{term}"' for term in query_terms(raw))


def make_snippet(content: str, terms: list[str], width: int = 160) -> str:
    """
    Cut a single-line excerpt of ``content`` around the first matching term.

    Args:
        content: Message text
        terms: Sanitized query terms
        width: Maximum excerpt length (ellipses excluded)
    """
    flat = re.sub(r"\s+", " ", content).strip()
    if len(flat) <= width:
        return flat

    position: Optional[int] = None
    lowered = flat.lower()
    for term in terms:
        index = lowered.find(term.lower())
        if index >= 0 and (position is None or index < position):
            position = index

    start = 0 if position is None else max(0, position - width // 4)
    end = min(len(flat), start + width)
    start = max(0, end - width)
    excerpt = flat[start:end]
    if start > 0:
        excerpt = "…" + excerpt
    if end < len(flat):
        excerpt = excerpt + "…"
    return excerpt
