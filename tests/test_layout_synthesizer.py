from __future__ import annotations

import json

import httpx
import pytest

from core.config.settings_loader import load_settings
from core.layout.spec import LayoutSpec
from core.layout.suggestion_client import LayoutSuggestionClient
from core.layout.synthesizer import (
    detect_image_fields,
    effective_scale_tier,
    fit_image,
    generate_layout,
    infer_aspect_ratio,
    synthesize_layout,
)
from core.templates.models import ImageElement, Template, TextElement

SETTINGS = load_settings()
PAGE_W = 100.0
PAGE_H = 50.0


def _inside_page(template: Template) -> bool:
    page = template.pages[0]
    return all(
        element.x >= -1e-9
        and element.y >= -1e-9
        and element.x + element.width <= page.width + 1e-9
        and element.y + element.height <= page.height + 1e-9
        for element in page.elements
    )


def _spec(**payload: object) -> LayoutSpec:
    return LayoutSpec.model_validate(payload)


def test_detect_image_fields_by_name_and_sample_value() -> None:
    fields = ["Name", "Photo", "Headshot", "Website", "Badge Logo"]
    samples = [
        {"Name": "Ann", "Headshot": "ann.PNG?v=1", "Website": "https://ann.test"},
    ]

    assert detect_image_fields(fields, samples, SETTINGS.image_fields) == [
        "Photo",
        "Headshot",
        "Badge Logo",
    ]


def test_infer_aspect_ratio() -> None:
    assert infer_aspect_ratio("Company Logo", SETTINGS.image_fields) == (1.0, 1.0)
    assert infer_aspect_ratio("avatar", SETTINGS.image_fields) == (1.0, 1.0)
    assert infer_aspect_ratio("Photo", SETTINGS.image_fields) == (3.0, 2.0)


def test_fit_image_preserves_aspect_within_bounds() -> None:
    assert fit_image((3, 2), 30, 10) == pytest.approx((15, 10))
    assert fit_image((1, 1), 20, 40) == pytest.approx((20, 20))
    assert fit_image((3, 2), 0, 10) == (0, 10)


@pytest.mark.parametrize(
    ("requested", "count", "layout_type", "expected"),
    [
        ("fill", 2, None, "fill"),
        ("fill", 4, None, "large"),
        ("fill", 6, None, "medium"),
        ("large", 1, "name_badge", "medium"),
        ("bogus", 1, None, "medium"),
        (None, 1, None, "fill"),
        ("small", 10, "badge", "small"),
    ],
)
def test_effective_scale_tier(
    requested: str | None, count: int, layout_type: str | None, expected: str
) -> None:
    tier = effective_scale_tier(requested, count, layout_type=layout_type, settings=SETTINGS)

    assert tier == expected


def test_effective_scale_tier_reads_template_type() -> None:
    assert effective_scale_tier("fill", 1, template_type="Badge", settings=SETTINGS) == "large"


def test_fallback_stacks_few_text_fields_with_bold_primary() -> None:
    template = synthesize_layout(
        ["Name", "City"],
        [{"Name": "Ann", "City": "Rome"}],
        PAGE_W,
        PAGE_H,
        settings=SETTINGS,
        measure=None,
    )
    elements = template.pages[0].elements

    assert [element.content for element in elements] == ["{{Name}}", "{{City}}"]
    assert [element.variable for element in elements] == ["Name", "City"]
    assert elements[0].style.font_weight == "bold"
    assert elements[1].style.font_weight == "normal"
    assert elements[0].y + elements[0].height <= elements[1].y
    assert elements[0].width == pytest.approx(96)
    assert all(element.style.font_size <= 48 for element in elements)
    assert len({element.id for element in elements}) == 2
    assert _inside_page(template)


def test_fallback_combines_three_or_more_text_fields() -> None:
    fields = ["Name", "Street", "City"]
    template = synthesize_layout(
        fields,
        [{"Name": "Ann", "Street": "Via Roma 1", "City": "Rome"}],
        PAGE_W,
        PAGE_H,
        settings=SETTINGS,
        measure=None,
    )
    (element,) = template.pages[0].elements

    assert isinstance(element, TextElement)
    assert element.content == "{{Name}}\n{{Street}}\n{{City}}"
    assert element.variable == "Name,Street,City"
    assert element.combined_fields == fields
    assert SETTINGS.fit.fallback_min_pt <= element.style.font_size <= 60


def test_fallback_places_images_in_side_band_with_sample_src() -> None:
    template = synthesize_layout(
        ["Name", "Photo"],
        [{"Name": "Ann", "Photo": "ann.jpg"}],
        PAGE_W,
        PAGE_H,
        asset_pool={"Ann.jpg": "https://cdn.test/ann.jpg"},
        settings=SETTINGS,
        measure=None,
    )
    text, image = template.pages[0].elements

    assert isinstance(image, ImageElement)
    assert image.variable == "Photo"
    assert image.src == "https://cdn.test/ann.jpg"
    assert image.width / image.height == pytest.approx(1.5)
    assert text.width == pytest.approx(96 * 0.58)
    assert text.x + text.width <= image.x
    assert _inside_page(template)


def test_multiple_images_stack_without_overlap() -> None:
    template = synthesize_layout(
        ["Name", "Photo", "Logo"],
        [{"Name": "Ann", "Photo": "https://remote.test/ann.jpg", "Logo": "acme.png"}],
        PAGE_W,
        PAGE_H,
        settings=SETTINGS,
        measure=None,
    )
    images = [element for element in template.pages[0].elements if element.kind == "image"]

    assert [image.variable for image in images] == ["Photo", "Logo"]
    assert images[0].src == "https://remote.test/ann.jpg"
    assert images[1].src is None
    assert images[1].width == pytest.approx(images[1].height)
    assert images[0].y + images[0].height <= images[1].y
    assert _inside_page(template)


def test_spec_combined_block_respects_tier_cap_and_alignment() -> None:
    spec = _spec(
        useCombinedTextBlock=True,
        textArea={"x": 0.05, "y": 0.05, "width": 0.9, "height": 0.9},
        typography={"baseFontScale": "medium", "alignment": "center"},
    )

    template = synthesize_layout(
        ["Name", "City"],
        [{"Name": "Ann", "City": "Rome"}],
        PAGE_W,
        PAGE_H,
        spec,
        settings=SETTINGS,
        measure=None,
    )
    (element,) = template.pages[0].elements

    assert element.combined_fields == ["Name", "City"]
    assert element.style.align == "center"
    assert element.style.font_size <= 36
    assert element.x == pytest.approx(5)
    assert element.width == pytest.approx(90)


def test_spec_stacked_fields_follow_spec_order_and_primary_index() -> None:
    spec = _spec(
        useCombinedTextBlock=False,
        textArea={"x": 0, "y": 0, "width": 1, "height": 1},
        textFields=["City", "Name"],
        typography={"baseFontScale": "fill", "primaryFieldIndex": 1},
    )

    template = synthesize_layout(
        ["Name", "City"],
        [{"Name": "Ann", "City": "Rome"}],
        PAGE_W,
        PAGE_H,
        spec,
        settings=SETTINGS,
        measure=None,
    )
    elements = template.pages[0].elements

    assert [element.variable for element in elements] == ["City", "Name"]
    assert [element.style.font_weight for element in elements] == ["normal", "bold"]
    assert all(element.style.font_size <= 48 for element in elements)


def test_spec_without_images_is_widened() -> None:
    spec = _spec(
        useCombinedTextBlock=True,
        textArea={"x": 0.1, "y": 0.1, "width": 0.4, "height": 0.4},
    )

    template = synthesize_layout(
        ["Name"], [{"Name": "Ann"}], PAGE_W, PAGE_H, spec, settings=SETTINGS, measure=None
    )
    (element,) = template.pages[0].elements

    assert element.width == pytest.approx(90)
    assert element.height == pytest.approx(PAGE_H * 0.85)


def test_spec_images_use_image_area_and_slot_aspect() -> None:
    spec = _spec(
        textArea={"x": 0, "y": 0, "width": 0.5, "height": 1},
        imageArea={"x": 0.5, "y": 0, "width": 0.5, "height": 1},
        images=[{"fieldName": "Photo", "aspectRatio": {"width": 1, "height": 1}}],
    )

    template = synthesize_layout(
        ["Name", "Photo"],
        [{"Name": "Ann", "Photo": "ann.png"}],
        PAGE_W,
        PAGE_H,
        spec,
        settings=SETTINGS,
        measure=None,
    )
    image = template.pages[0].elements[-1]

    assert image.kind == "image"
    assert image.x >= 50
    assert image.width == pytest.approx(image.height)
    assert _inside_page(template)


def test_degenerate_spec_falls_back() -> None:
    spec = _spec(textArea={"x": 0.99, "y": 0, "width": 0.5, "height": 1})
    args = (["Name", "Photo"], [{"Name": "Ann", "Photo": "ann.png"}], PAGE_W, PAGE_H)

    from_spec = synthesize_layout(*args, spec, settings=SETTINGS, measure=None)
    fallback = synthesize_layout(*args, settings=SETTINGS, measure=None)

    def geometry(template: Template) -> list[tuple[float, ...]]:
        return [
            (element.x, element.y, element.width, element.height)
            for element in template.pages[0].elements
        ]

    assert geometry(from_spec) == geometry(fallback)


def test_every_synthesis_mints_fresh_identifiers() -> None:
    first = synthesize_layout(["Name"], [], PAGE_W, PAGE_H, settings=SETTINGS, measure=None)
    second = synthesize_layout(["Name"], [], PAGE_W, PAGE_H, settings=SETTINGS, measure=None)

    assert first.element_ids().isdisjoint(second.element_ids())
    assert first.pages[0].elements[0].content == "{{Name}}"


def test_invalid_page_size_raises() -> None:
    with pytest.raises(ValueError):
        synthesize_layout(["Name"], [], 0, 10, settings=SETTINGS, measure=None)


def _suggestion_client(handler) -> tuple[LayoutSuggestionClient, httpx.AsyncClient]:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return LayoutSuggestionClient("http://suggest.test/layout", client=http_client), http_client


@pytest.mark.anyio
async def test_generate_layout_uses_suggested_spec() -> None:
    seen: list[dict[str, object]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(
            200,
            json={
                "designStrategy": {
                    "layoutSpec": {
                        "useCombinedTextBlock": True,
                        "textArea": {"x": 0.05, "y": 0.05, "width": 0.9, "height": 0.9},
                        "typography": {"alignment": "right"},
                    }
                }
            },
        )

    client, http_client = _suggestion_client(handler)
    async with http_client:
        template = await generate_layout(
            ["Name", "City"],
            [{"Name": "Ann", "City": "Rome"}],
            PAGE_W,
            PAGE_H,
            client=client,
            settings=SETTINGS,
            measure=None,
        )

    (element,) = template.pages[0].elements
    assert element.style.align == "right"
    assert seen[0]["fieldNames"] == ["Name", "City"]
    assert seen[0]["templateType"] == "address_label"


@pytest.mark.anyio
async def test_generate_layout_falls_back_when_service_fails() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"error": "busy"})

    client, http_client = _suggestion_client(handler)
    async with http_client:
        template = await generate_layout(
            ["Name", "City"],
            [{"Name": "Ann", "City": "Rome"}],
            PAGE_W,
            PAGE_H,
            client=client,
            settings=SETTINGS,
            measure=None,
        )
    fallback = synthesize_layout(
        ["Name", "City"],
        [{"Name": "Ann", "City": "Rome"}],
        PAGE_W,
        PAGE_H,
        settings=SETTINGS,
        measure=None,
    )

    assert [element.content for element in template.pages[0].elements] == ["{{Name}}", "{{City}}"]
    assert [element.width for element in template.pages[0].elements] == [
        element.width for element in fallback.pages[0].elements
    ]


@pytest.mark.anyio
async def test_generate_layout_without_client_uses_fallback() -> None:
    template = await generate_layout(
        ["Name"], [{"Name": "Ann"}], PAGE_W, PAGE_H, settings=SETTINGS, measure=None
    )

    assert template.pages[0].elements[0].content == "{{Name}}"
