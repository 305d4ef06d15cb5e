"""Fold layout edits made on a resolved scene back into the base template.

Rules:
- Elements are matched by identifier across the whole scene, so an element
  moved to another page keeps its template form.
- Matched elements take geometry from the scene; text and sequence elements
  also take style; image elements take crop only.
- Resolved content, image sources and generated symbols are never copied.
- Base elements missing from the scene are dropped (user deleted them).
- Scene elements unknown to the base are appended as new static elements.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from core.templates.models import (
    Element,
    ImageElement,
    Page,
    SequenceElement,
    Template,
    TextElement,
    new_element_id,
)
from core.templates.token_resolver import has_tokens
from core.utils.log_events import log_event

logger = logging.getLogger("vdp.merge")

GEOMETRY_FIELDS: tuple[str, ...] = ("x", "y", "width", "height", "rotation", "opacity", "z_index")


@dataclass
class MergeReport:
    """What a merge kept, dropped and added, by element identifier."""

    kept_ids: list[str] = field(default_factory=list)
    dropped_ids: list[str] = field(default_factory=list)
    added_ids: list[str] = field(default_factory=list)
    reassigned_ids: dict[str, str] = field(default_factory=dict)
    background_changed_pages: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(
            self.dropped_ids
            or self.added_ids
            or self.reassigned_ids
            or self.background_changed_pages
        )


@dataclass
class _MergeState:
    base_by_id: dict[str, Element]
    report: MergeReport = field(default_factory=MergeReport)
    seen_ids: set[str] = field(default_factory=set)


def merge_layout(current_scene: Template, base_template: Template) -> Template:
    """Return a new template with the scene's layout edits applied."""

    merged, _ = merge_layout_with_report(current_scene, base_template)
    return merged


def merge_layout_with_report(
    current_scene: Template, base_template: Template
) -> tuple[Template, MergeReport]:
    base_by_id: dict[str, Element] = {}
    for element in base_template.iter_elements():
        base_by_id.setdefault(element.id, element)
    scene_ids = current_scene.element_ids()
    state = _MergeState(base_by_id=base_by_id)
    report = state.report

    base_page_ids = {page.id for page in base_template.pages}
    current_by_id = {page.id: page for page in current_scene.pages}
    pairs: list[tuple[Page, Page | None]] = []
    matched_current_pages: set[str] = set()
    for page_index, base_page in enumerate(base_template.pages):
        current_page = current_by_id.get(base_page.id)
        if current_page is None and page_index < len(current_scene.pages):
            candidate = current_scene.pages[page_index]
            if candidate.id not in base_page_ids and candidate.id not in matched_current_pages:
                current_page = candidate
        if current_page is not None:
            matched_current_pages.add(current_page.id)
        pairs.append((base_page, current_page))

    merged_pages: list[Page] = []
    for base_page, current_page in pairs:
        if current_page is None:
            log_event(logger, logging.WARNING, "page_missing_from_scene", page_id=base_page.id)
            merged_pages.append(_orphan_page(base_page, scene_ids, state))
            continue
        merged_pages.append(_merge_page(current_page, base_page, state))

    for current_page in current_scene.pages:
        if current_page.id in matched_current_pages or current_page.id in base_page_ids:
            continue
        merged_pages.append(
            Page(
                id=current_page.id,
                width=current_page.width,
                height=current_page.height,
                background=current_page.background,
                elements=[_place(element, state) for element in current_page.elements],
            )
        )

    report.dropped_ids.extend(
        element_id for element_id in base_by_id if element_id not in state.seen_ids
    )

    merged = Template(unit=base_template.unit, pages=merged_pages)
    log_event(
        logger,
        logging.INFO if report.changed else logging.DEBUG,
        "layout_merged",
        kept=len(report.kept_ids),
        dropped=report.dropped_ids,
        added=report.added_ids,
        reassigned=report.reassigned_ids,
        background_changed=report.background_changed_pages,
    )
    return merged, report


def _merge_page(current_page: Page, base_page: Page, state: _MergeState) -> Page:
    background = base_page.background
    if current_page.background != base_page.background:
        background = current_page.background
        state.report.background_changed_pages.append(base_page.id)

    return Page(
        id=base_page.id,
        width=base_page.width,
        height=base_page.height,
        background=background,
        elements=[_place(element, state) for element in current_page.elements],
    )


def _orphan_page(base_page: Page, scene_ids: set[str], state: _MergeState) -> Page:
    # Elements the scene holds elsewhere are placed where the scene put them.
    kept = [
        element.model_copy(deep=True)
        for element in base_page.elements
        if element.id not in scene_ids and element.id not in state.seen_ids
    ]
    state.seen_ids.update(element.id for element in kept)
    return base_page.model_copy(update={"elements": kept}, deep=True)


def _place(current: Element, state: _MergeState) -> Element:
    base = state.base_by_id.get(current.id)
    if base is None or current.id in state.seen_ids:
        return _as_new_element(current, state)
    state.seen_ids.add(current.id)
    state.report.kept_ids.append(current.id)
    return _merge_element(base, current)


def _merge_element(base: Element, current: Element) -> Element:
    merged = base.model_copy(deep=True)
    for name in GEOMETRY_FIELDS:
        setattr(merged, name, getattr(current, name))

    match merged, current:
        case TextElement(), TextElement():
            merged.style = current.style.model_copy(deep=True)
            if not merged.variable and not has_tokens(merged.content):
                merged.content = current.content
        case SequenceElement(), SequenceElement():
            merged.style = current.style.model_copy(deep=True)
        case ImageElement(), ImageElement():
            merged.crop = current.crop.model_copy(deep=True) if current.crop else None
        case _:
            pass

    return merged


def _as_new_element(current: Element, state: _MergeState) -> Element:
    element = current.model_copy(deep=True)
    if element.id in state.seen_ids:
        fresh_id = new_element_id()
        state.report.reassigned_ids[element.id] = fresh_id
        element.id = fresh_id
    state.seen_ids.add(element.id)
    state.report.added_ids.append(element.id)
    return element
