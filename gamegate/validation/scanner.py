"""A small lexical scanner over module source text.

It only knows enough Python lexing to tell comments apart from string literals. The
gate checks syntax presence, not semantics, and never executes the module.
"""

from __future__ import annotations

_STRING_PREFIX_CHARS = frozenset("rRbBuUfF")


def _string_start(text: str, i: int) -> tuple[int, str] | None:
    """If a string literal starts at i (prefix included), return (quote_index, quote)."""

    j = i
    # Up to two prefix characters (rb, Rb, fr, ...), only when not part of an identifier.
    if i > 0 and (text[i - 1].isalnum() or text[i - 1] == "_"):
        return None
    while j < len(text) and j - i < 2 and text[j] in _STRING_PREFIX_CHARS:
        j += 1
    if j >= len(text) or text[j] not in "'\"":
        return None
    q = text[j]
    if text.startswith(q * 3, j):
        return j, q * 3
    return j, q


def strip_comments(text: str) -> str:
    """Remove `#` comments while preserving strings and line structure.

    Unterminated strings run to end of line (single-quoted) or end of text (triple-quoted),
    which is what the interpreter would reject anyway; we just never crash on them.
    """

    out: list[str] = []
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]

        if ch == "#":
            nl = text.find("\n", i)
            if nl == -1:
                break
            i = nl
            continue

        start = _string_start(text, i) if ch in "'\"" or ch in _STRING_PREFIX_CHARS else None
        if start is not None:
            q_idx, quote = start
            end = _string_end(text, q_idx + len(quote), quote)
            out.append(text[i:end])
            i = end
            continue

        out.append(ch)
        i += 1

    return "".join(out)


def _string_end(text: str, i: int, quote: str) -> int:
    n = len(text)
    triple = len(quote) == 3
    while i < n:
        ch = text[i]
        if ch == "\\":
            i += 2
            continue
        if not triple and ch == "\n":
            return i
        if text.startswith(quote, i):
            return i + len(quote)
        i += 1
    return n


def line_of(text: str, offset: int) -> int:
    return text.count("\n", 0, offset) + 1
