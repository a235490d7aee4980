"""
evescope - Query mini-language

The backend accepts whitespace separated terms that are implicitly ANDed:

    field:value
    field:"quoted phrase"
    field:(a OR b OR c)

This module owns tokenizing and formatting of those terms. The filter state,
the query composer and cross-filter feedback all go through it so that any
value returned by an aggregation survives a trip through the query box.

INVARIANT: parse_fragment(format_fragment(field, value)) == (field, value)
for every string value.
"""
from __future__ import annotations

from enum import Enum
from typing import Iterable, Optional

_QUOTE = '"'
_ESCAPE = "\\"


class Severity(str, Enum):
    """Suricata alert severity. The backend indexes these as 1..3."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def code(self) -> int:
        return _SEVERITY_CODES[self]

    @classmethod
    def from_code(cls, code: int) -> "Severity":
        for sev, value in _SEVERITY_CODES.items():
            if value == int(code):
                return sev
        raise ValueError(f"unknown severity code: {code}")


_SEVERITY_CODES = {Severity.HIGH: 1, Severity.MEDIUM: 2, Severity.LOW: 3}


# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------


def split_query(text: Optional[str]) -> list[str]:
    """
    Split a query string into terms.

    Whitespace separates terms except inside a double-quoted phrase or a
    parenthesised group. Quote characters are kept in the token so that
    re-joining tokens reproduces an equivalent query. Inside quotes a
    backslash escapes the next character. An unterminated quote or group runs
    to the end of the input.
    """
    tokens: list[str] = []
    buf: list[str] = []
    in_quote = False
    escaped = False
    depth = 0

    for ch in text or "":
        if in_quote:
            buf.append(ch)
            if escaped:
                escaped = False
            elif ch == _ESCAPE:
                escaped = True
            elif ch == _QUOTE:
                in_quote = False
            continue
        if ch.isspace() and depth == 0:
            if buf:
                tokens.append("".join(buf))
                buf = []
            continue
        buf.append(ch)
        if ch == _QUOTE:
            in_quote = True
        elif ch == "(":
            depth += 1
        elif ch == ")" and depth > 0:
            depth -= 1

    tail = "".join(buf).rstrip()
    if tail:
        tokens.append(tail)
    return tokens


def unique_tokens(tokens: Iterable[str]) -> list[str]:
    """Drop blank and repeated tokens, keeping first-seen order."""
    seen: set[str] = set()
    out: list[str] = []
    for token in tokens:
        token = token.strip()
        if not token or token in seen:
            continue
        seen.add(token)
        out.append(token)
    return out


def join_tokens(tokens: Iterable[str]) -> str:
    return " ".join(t for t in tokens if t and t.strip()).strip()


# ---------------------------------------------------------------------------
# Values and fragments
# ---------------------------------------------------------------------------


def needs_quoting(value: str) -> bool:
    if value == "":
        return True
    return any(ch.isspace() or ch in '"()' for ch in value)


def quote_value(value: str, *, force: bool = False) -> str:
    value = str(value)
    if not force and not needs_quoting(value):
        return value
    escaped = value.replace(_ESCAPE, _ESCAPE * 2).replace(_QUOTE, _ESCAPE + _QUOTE)
    return f"{_QUOTE}{escaped}{_QUOTE}"


def unquote_value(raw: str) -> str:
    if not raw.startswith(_QUOTE):
        return raw
    out: list[str] = []
    escaped = False
    for ch in raw[1:]:
        if escaped:
            out.append(ch)
            escaped = False
        elif ch == _ESCAPE:
            escaped = True
        elif ch == _QUOTE:
            break
        else:
            out.append(ch)
    return "".join(out)


def format_fragment(field: str, value: object, *, force_quote: bool = False) -> str:
    field = str(field).strip()
    if not field:
        raise ValueError("filter field must be a non-empty string")
    return f"{field}:{quote_value(str(value), force=force_quote)}"


def parse_fragment(token: str) -> tuple[Optional[str], str]:
    """Return ``(field, value)`` for a single term; field is None for bare terms."""
    token = token.strip()
    if token.startswith(_QUOTE):
        return None, unquote_value(token)
    field, sep, raw = token.partition(":")
    if not sep or not field or _QUOTE in field or field.startswith("("):
        return None, token
    return field, unquote_value(raw)


# ---------------------------------------------------------------------------
# Structured filters
# ---------------------------------------------------------------------------


def severity_term(severities: Iterable[Severity | str]) -> Optional[str]:
    sevs = {Severity(s) for s in severities}
    if not sevs:
        return None
    codes = sorted(s.code for s in sevs)
    return f"alert.severity:({' OR '.join(str(c) for c in codes)})"


def structured_terms(
    *,
    severity: Iterable[Severity | str] = (),
    ip: Optional[str] = None,
    signature: Optional[str] = None,
    proto: Optional[str] = None,
    port: Optional[str] = None,
) -> list[str]:
    terms: list[str] = []
    sev = severity_term(severity)
    if sev:
        terms.append(sev)
    if ip:
        terms.append(format_fragment("ip", ip))
    if signature:
        terms.append(format_fragment("alert.signature", signature, force_quote=True))
    if proto:
        terms.append(format_fragment("proto", proto))
    if port:
        terms.append(format_fragment("port", port))
    return terms
