from __future__ import annotations

import logging

import pytest

from core.templates.models import (
    ImageElement,
    Page,
    QrElement,
    SequenceElement,
    SymbolSource,
    Template,
    TextElement,
)
from core.templates.token_resolver import (
    extract_used_fields,
    has_tokens,
    match_field,
    normalize_field_name,
    resolve_token,
    substitute_tokens,
    token_for,
)


@pytest.mark.parametrize("name", ["full_name", "Full Name", "FULL-NAME", "fullname"])
def test_resolve_token_matches_field_name_variants(name: str) -> None:
    assert resolve_token(name, {"full_name": "Ann"}) == "Ann"


def test_normalize_field_name_strips_separators_and_case() -> None:
    assert normalize_field_name(" First_Name - x ") == "firstnamex"


def test_match_field_prefers_exact_over_case_insensitive() -> None:
    assert match_field("Name", ["name", "Name"]) == "Name"


def test_match_field_prefers_case_insensitive_over_normalized() -> None:
    assert match_field("firstname", ["first_name", "FirstName"]) == "FirstName"


def test_match_field_falls_back_to_substring_containment() -> None:
    assert match_field("city", ["home_city"]) == "home_city"
    assert match_field("Home City Name", ["city"]) == "city"


def test_match_field_returns_none_without_candidates() -> None:
    assert match_field("zip", ["name", "city"]) is None
    assert match_field("___", ["name"]) is None


def test_resolve_token_returns_empty_string_for_none_value() -> None:
    assert resolve_token("Name", {"Name": None}) == ""  # type: ignore[dict-item]


def test_substitute_tokens_fails_open_and_reports_unresolved(
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.WARNING, logger="vdp.tokens")

    result = substitute_tokens("Hi {{ Name }}, {{unknown}}", {"name": "Ann"})

    assert result.text == "Hi Ann, {{unknown}}"
    assert result.resolved == ["Name"]
    assert result.unresolved == ["unknown"]
    messages = [record.message for record in caplog.records if record.name == "vdp.tokens"]
    assert any('"event":"unresolved_token"' in message for message in messages)


def test_substitute_tokens_leaves_plain_text_alone() -> None:
    result = substitute_tokens("no tokens here", {"a": "b"})

    assert result.text == "no tokens here"
    assert result.unresolved == []


def test_token_helpers() -> None:
    assert token_for("City") == "{{City}}"
    assert has_tokens("x {{City}} y")
    assert not has_tokens("x {City} y")


def test_extract_used_fields_collects_tokens_and_bindings_in_order() -> None:
    template = Template(
        pages=[
            Page(
                width=100,
                height=50,
                elements=[
                    TextElement(content="{{Name}} from {{City}}"),
                    TextElement(content="", variable="Title"),
                    TextElement(
                        content="{{Name}}\n{{Company}}",
                        variable="Name,Company",
                        combined_fields=["Name", "Company"],
                    ),
                    ImageElement(variable="Photo"),
                    QrElement(source=SymbolSource(data_source="field", variable_field="Url")),
                    QrElement(source=SymbolSource(data_source="static", static_value="x")),
                    SequenceElement(prefix="INV-"),
                ],
            )
        ]
    )

    assert extract_used_fields(template) == ["Name", "City", "Title", "Company", "Photo", "Url"]
