"""Fuzzy field-name matching and ``{{token}}`` substitution.

Rules:
- Supported token format is ``{{Field Name}}``; surrounding whitespace inside
  the braces is ignored.
- Field matching tries, in order: exact, case-insensitive, normalized
  (separators removed), substring containment either direction.
- Unmatched tokens are left untouched and reported, never raised.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from core.templates.models import (
    BarcodeElement,
    ImageElement,
    QrElement,
    Record,
    Template,
    TextElement,
)
from core.utils.log_events import log_event

logger = logging.getLogger("vdp.tokens")

TOKEN_RE = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")
_SEPARATORS_RE = re.compile(r"[\s_\-]+")

FieldMatcher = Callable[[str, list[str]], str | None]


@dataclass
class TokenSubstitution:
    """Result of substituting every token in one string."""

    text: str
    resolved: list[str] = field(default_factory=list)
    unresolved: list[str] = field(default_factory=list)


def normalize_field_name(name: str) -> str:
    return _SEPARATORS_RE.sub("", name).casefold()


def match_exact(name: str, keys: list[str]) -> str | None:
    return name if name in keys else None


def match_case_insensitive(name: str, keys: list[str]) -> str | None:
    folded = name.casefold()
    for key in keys:
        if key.casefold() == folded:
            return key
    return None


def match_normalized(name: str, keys: list[str]) -> str | None:
    normalized = normalize_field_name(name)
    if not normalized:
        return None
    for key in keys:
        if normalize_field_name(key) == normalized:
            return key
    return None


def match_substring(name: str, keys: list[str]) -> str | None:
    normalized = normalize_field_name(name)
    if not normalized:
        return None
    for key in keys:
        candidate = normalize_field_name(key)
        if candidate and (normalized in candidate or candidate in normalized):
            return key
    return None


FIELD_MATCHERS: tuple[FieldMatcher, ...] = (
    match_exact,
    match_case_insensitive,
    match_normalized,
    match_substring,
)


def match_field(name: str, keys: Iterable[str]) -> str | None:
    """Return the record key matching ``name``, or None."""

    key_list = list(keys)
    for matcher in FIELD_MATCHERS:
        matched = matcher(name, key_list)
        if matched is not None:
            return matched
    return None


def resolve_token(name: str, record: Record) -> str | None:
    """Resolve one field name against a record using fuzzy matching."""

    key = match_field(name.strip(), record.keys())
    if key is None:
        return None
    value = record[key]
    return "" if value is None else str(value)


def substitute_tokens(text: str, record: Record) -> TokenSubstitution:
    """Replace every ``{{token}}`` in text; unmatched tokens stay literal."""

    result = TokenSubstitution(text=text)

    def _replace(match: re.Match[str]) -> str:
        name = match.group(1)
        value = resolve_token(name, record)
        if value is None:
            result.unresolved.append(name)
            return match.group(0)
        result.resolved.append(name)
        return value

    result.text = TOKEN_RE.sub(_replace, text)
    if result.unresolved:
        log_event(
            logger,
            logging.WARNING,
            "unresolved_token",
            tokens=result.unresolved,
            available_fields=sorted(record.keys()),
        )
    return result


def has_tokens(text: str) -> bool:
    return TOKEN_RE.search(text) is not None


def token_for(field_name: str) -> str:
    return f"{{{{{field_name}}}}}"


def extract_used_fields(template: Template) -> list[str]:
    """List fields referenced by tokens and bindings, in first-seen order."""

    fields: list[str] = []
    seen: set[str] = set()

    def _add(name: str | None) -> None:
        if not name:
            return
        stripped = name.strip()
        if stripped and stripped not in seen:
            seen.add(stripped)
            fields.append(stripped)

    for element in template.iter_elements():
        match element:
            case TextElement():
                for token in TOKEN_RE.finditer(element.content):
                    _add(token.group(1))
                for name in element.combined_fields:
                    _add(name)
                if element.variable and not element.combined_fields:
                    for name in element.variable.split(","):
                        _add(name)
            case ImageElement():
                _add(element.variable)
            case BarcodeElement() | QrElement():
                if element.source.data_source == "field":
                    _add(element.source.variable_field)
            case _:
                pass

    return fields
