"""Per-record scene resolution for variable data printing."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from core.assets.cache import AssetCache
from core.assets.matcher import find_asset_url, looks_like_remote
from core.render.symbols import DefaultSymbolGenerator, SymbolGenerator
from core.templates.models import (
    AssetPool,
    BarcodeElement,
    Element,
    ImageElement,
    QrElement,
    Record,
    ResolvedScene,
    SequenceElement,
    SymbolSource,
    Template,
    TextElement,
)
from core.templates.token_resolver import TOKEN_RE, resolve_token, substitute_tokens
from core.utils.log_events import log_event

logger = logging.getLogger("vdp.resolver")

_DEFAULT_SYMBOLS = DefaultSymbolGenerator()


@dataclass
class _ResolveContext:
    record: Record
    record_index: int
    asset_pool: AssetPool | None
    cache: AssetCache | None
    symbols: SymbolGenerator
    unresolved: list[str] = field(default_factory=list)


def format_sequence(element: SequenceElement, record_index: int) -> str:
    """Render ``prefix + zero-padded (start + index) + suffix``."""

    number = element.start + record_index
    digits = str(number).zfill(element.padding) if element.padding > 0 else str(number)
    return f"{element.prefix}{digits}{element.suffix}"


def resolve_scene(
    template: Template,
    record: Record,
    record_index: int = 0,
    asset_pool: AssetPool | None = None,
    cache: AssetCache | None = None,
    *,
    symbols: SymbolGenerator | None = None,
) -> ResolvedScene:
    """Resolve a template against one record without mutating the template.

    A failure on one element is logged and that element is kept as copied
    from the template; the rest of the scene still resolves.
    """

    scene = ResolvedScene.model_validate(template.model_dump())
    scene.record_index = record_index
    scene.unresolved_tokens = []

    context = _ResolveContext(
        record=record,
        record_index=record_index,
        asset_pool=asset_pool,
        cache=cache,
        symbols=symbols or _DEFAULT_SYMBOLS,
    )

    failed = 0
    for page in scene.pages:
        for index, element in enumerate(page.elements):
            try:
                page.elements[index] = _resolve_element(element, context)
            except Exception as exc:  # noqa: BLE001
                failed += 1
                log_event(
                    logger,
                    logging.WARNING,
                    "element_resolve_failed",
                    element_id=element.id,
                    kind=element.kind,
                    record_index=record_index,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )

    scene.unresolved_tokens = sorted(set(context.unresolved))
    log_event(
        logger,
        logging.DEBUG,
        "scene_resolved",
        record_index=record_index,
        element_count=sum(len(page.elements) for page in scene.pages),
        failed_count=failed,
        unresolved_tokens=scene.unresolved_tokens,
    )
    return scene


def batch_resolve(
    template: Template,
    records: Sequence[Record],
    asset_pool: AssetPool | None = None,
    cache: AssetCache | None = None,
    *,
    symbols: SymbolGenerator | None = None,
) -> list[ResolvedScene]:
    """Resolve every record; record index equals position in the batch."""

    scenes: list[ResolvedScene] = []
    for index, record in enumerate(records):
        try:
            scenes.append(
                resolve_scene(template, record, index, asset_pool, cache, symbols=symbols)
            )
        except Exception as exc:  # noqa: BLE001
            log_event(
                logger,
                logging.ERROR,
                "record_resolve_failed",
                record_index=index,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            fallback = ResolvedScene.model_validate(template.model_dump())
            fallback.record_index = index
            scenes.append(fallback)
    return scenes


def _resolve_element(element: Element, context: _ResolveContext) -> Element:
    resolved = element.model_copy(deep=True)

    match resolved:
        case TextElement():
            _resolve_text(resolved, context)
        case SequenceElement():
            resolved.content = format_sequence(resolved, context.record_index)
        case BarcodeElement():
            value = _symbol_value(resolved.source, context)
            resolved.value = value
            if value:
                resolved.src = context.symbols.barcode(
                    value, resolved.format, width=resolved.width, height=resolved.height
                )
            resolved.render_kind = "image"
        case QrElement():
            value = _symbol_value(resolved.source, context)
            resolved.value = value
            if value:
                resolved.src = context.symbols.qr(
                    value, error_correction=resolved.error_correction
                )
            resolved.render_kind = "image"
        case ImageElement():
            if resolved.variable:
                resolved.src = _resolve_image_src(resolved.variable, context)

    return resolved


def _resolve_text(element: TextElement, context: _ResolveContext) -> None:
    substitution = substitute_tokens(element.content, context.record)
    context.unresolved.extend(substitution.unresolved)
    element.content = substitution.text

    if element.variable and not element.combined_fields and not element.content.strip():
        value = resolve_token(element.variable, context.record)
        if value is not None:
            element.content = value


def _symbol_value(source: SymbolSource, context: _ResolveContext) -> str:
    if source.data_source == "static":
        return source.static_value

    field_name = _strip_token(source.variable_field or "")
    if not field_name:
        raise ValueError("field-sourced symbol has no variable_field")

    value = resolve_token(field_name, context.record)
    if value is None:
        context.unresolved.append(field_name)
        log_event(
            logger,
            logging.WARNING,
            "unresolved_symbol_field",
            field=field_name,
            record_index=context.record_index,
        )
        return ""

    substitution = substitute_tokens(value, context.record)
    context.unresolved.extend(substitution.unresolved)
    return substitution.text


def _resolve_image_src(variable: str, context: _ResolveContext) -> str | None:
    field_name = _strip_token(variable)
    value = resolve_token(field_name, context.record)
    if not value:
        log_event(
            logger,
            logging.WARNING,
            "image_field_empty",
            field=field_name,
            record_index=context.record_index,
        )
        return None

    matched = find_asset_url(value, context.asset_pool)
    if matched is not None:
        return _cached_or(matched, context.cache)

    if looks_like_remote(value):
        return _cached_or(value.strip(), context.cache)

    log_event(
        logger,
        logging.WARNING,
        "asset_match_miss",
        field=field_name,
        value=value,
        record_index=context.record_index,
    )
    return None


def _cached_or(url: str, cache: AssetCache | None) -> str:
    if cache is None:
        return url
    return cache.lookup(url) or url


def _strip_token(name: str) -> str:
    match = TOKEN_RE.fullmatch(name.strip())
    return match.group(1) if match else name.strip()
