"""Tests for geometry analysis."""

import pytest

from region_capture.capture.errors import ElementNotFoundError
from region_capture.capture.geometry import (
    GeometryAnalyzer,
    apply_transform,
    max_shadow_extent,
    parse_transform,
    parse_z_index,
    resolve_transform_origin,
    shadow_extent,
    split_shadow_list,
)
from region_capture.capture.models import (
    AffineMatrix,
    BoundingBox,
    ElementMetrics,
    FrameOffset,
    ShadowExpansion,
)


def metrics(**overrides) -> ElementMetrics:
    values = dict(
        rect=BoundingBox(100, 100, 200, 100),
        viewport_width=1280,
        viewport_height=800,
        scroll_height=100,
        client_height=100,
    )
    values.update(overrides)
    return ElementMetrics(**values)


class TestShadowParsing:
    """Tests for shadow value parsing."""

    def test_split_ignores_commas_in_colors(self):
        value = "rgba(0, 0, 0, 0.5) 2px 2px 4px 0px, rgb(255, 0, 0) 0px 0px 10px 3px"
        assert split_shadow_list(value) == [
            "rgba(0, 0, 0, 0.5) 2px 2px 4px 0px",
            "rgb(255, 0, 0) 0px 0px 10px 3px",
        ]

    def test_extent_uses_max_offset_plus_blur_and_spread(self):
        assert shadow_extent("rgba(0, 0, 0, 0.5) 4px -6px 5px 2px") == 6 + 5 + 2

    def test_extent_offsets_only(self):
        assert shadow_extent("3px 1px") == 3

    def test_extent_ignores_named_color_and_inset(self):
        assert shadow_extent("inset 2px 2px 3px red") == 5

    def test_extent_rejects_malformed(self):
        with pytest.raises(ValueError):
            shadow_extent("red")

    def test_max_extent_over_list(self):
        value = "rgb(0, 0, 0) 1px 1px 1px 0px, rgb(0, 0, 0) 0px 10px 4px 1px"
        assert max_shadow_extent(value) == 15

    def test_none_and_empty(self):
        assert max_shadow_extent("none") == 0
        assert max_shadow_extent("") == 0
        assert max_shadow_extent(None) == 0

    def test_malformed_entries_contribute_zero(self):
        assert max_shadow_extent("garbage, 2px 2px 2px") == 4


class TestTransformParsing:
    """Tests for transform parsing and application."""

    def test_none_and_identity(self):
        assert parse_transform("none") is None
        assert parse_transform("matrix(1, 0, 0, 1, 0, 0)") is None

    def test_matrix(self):
        assert parse_transform("matrix(2, 0, 0, 2, 5, 6)") == AffineMatrix(2, 0, 0, 2, 5, 6)

    def test_matrix3d_reduces_to_2d(self):
        value = "matrix3d(2, 0, 0, 0, 0, 3, 0, 0, 0, 0, 1, 0, 7, 8, 0, 1)"
        assert parse_transform(value) == AffineMatrix(2, 0, 0, 3, 7, 8)

    def test_unsupported_values(self):
        assert parse_transform("rotate(45deg)") is None
        assert parse_transform("matrix(1, 2)") is None

    def test_origin_defaults_to_center(self):
        box = BoundingBox(0, 0, 100, 50)
        assert resolve_transform_origin(None, box) == (50, 25)

    def test_origin_pixels_and_percent(self):
        box = BoundingBox(10, 20, 100, 50)
        assert resolve_transform_origin("0px 0px", box) == (10, 20)
        assert resolve_transform_origin("100% 50%", box) == (110, 45)

    def test_scale_about_center(self):
        box = BoundingBox(0, 0, 100, 100)
        scaled = apply_transform(box, AffineMatrix(2, 0, 0, 2, 0, 0), (50, 50))
        assert scaled == BoundingBox(-50, -50, 200, 200)

    def test_rotation_90_swaps_dimensions(self):
        box = BoundingBox(0, 0, 200, 100)
        rotated = apply_transform(box, AffineMatrix(0, 1, -1, 0, 0, 0), (100, 50))
        assert rotated.width == pytest.approx(100)
        assert rotated.height == pytest.approx(200)
        assert rotated.x == pytest.approx(50)
        assert rotated.y == pytest.approx(-50)


class TestGeometryAnalyzer:
    """Tests for GeometryAnalyzer.analyze."""

    def test_base_box_is_page_absolute(self):
        geometry = GeometryAnalyzer().analyze(metrics(page_scroll_x=10, page_scroll_y=500), "#a")
        assert geometry.bounding_box == BoundingBox(110, 600, 200, 100)
        assert geometry.layout_box == geometry.bounding_box

    def test_shadow_example(self):
        """Box {100,100,200,100} with a 15px shadow becomes {85,85,230,130}."""
        geometry = GeometryAnalyzer().analyze(metrics(box_shadow="rgba(0, 0, 0, 0.3) 0px 0px 15px 0px"))
        assert geometry.bounding_box == BoundingBox(85, 85, 230, 130)
        assert geometry.shadow_expansion == ShadowExpansion.uniform(15)
        assert geometry.outset == ShadowExpansion.uniform(15)

    def test_box_and_text_shadow_take_max(self):
        geometry = GeometryAnalyzer().analyze(
            metrics(box_shadow="0px 0px 4px 0px black", text_shadow="rgb(0, 0, 0) 2px 2px 6px")
        )
        assert geometry.shadow_expansion == ShadowExpansion.uniform(8)

    def test_zero_shadow_is_noop(self):
        geometry = GeometryAnalyzer().analyze(metrics(box_shadow="rgb(0, 0, 0) 0px 0px 0px 0px"))
        assert geometry.bounding_box == BoundingBox(100, 100, 200, 100)
        assert geometry.shadow_expansion is None

    def test_transform_applied_after_shadow(self):
        geometry = GeometryAnalyzer().analyze(
            metrics(box_shadow="0px 0px 10px 0px black", transform="matrix(2, 0, 0, 2, 0, 0)")
        )
        # Shadow-expanded box (90, 90, 220, 120) scaled 2x about the layout center (200, 150).
        assert geometry.bounding_box == BoundingBox(-20, 30, 440, 240)
        assert geometry.transform_matrix == AffineMatrix(2, 0, 0, 2, 0, 0)

    def test_same_origin_frame_offset(self):
        geometry = GeometryAnalyzer().analyze(metrics(frame=FrameOffset(30, 40)))
        assert geometry.bounding_box == BoundingBox(130, 140, 200, 100)
        assert geometry.frame_offset == FrameOffset(30, 40)

    def test_cross_origin_frame_keeps_embedding_box(self):
        geometry = GeometryAnalyzer().analyze(metrics(frame=FrameOffset(30, 40, cross_origin=True)))
        assert geometry.bounding_box == BoundingBox(100, 100, 200, 100)
        assert geometry.frame_offset.cross_origin is True

    def test_internal_scroller(self):
        geometry = GeometryAnalyzer().analyze(
            metrics(overflow_y="auto", scroll_height=2400, client_height=600, rect=BoundingBox(0, 0, 300, 600))
        )
        assert geometry.is_scrollable
        assert geometry.scrolls_internally
        assert geometry.visible_height == 600
        assert geometry.scrollable_total_height == 2400

    def test_overflow_without_excess_content(self):
        geometry = GeometryAnalyzer().analyze(metrics(overflow="scroll", scroll_height=100, client_height=100))
        assert not geometry.is_scrollable

    def test_long_content_heuristic(self):
        geometry = GeometryAnalyzer().analyze(
            metrics(rect=BoundingBox(0, 0, 300, 2000), scroll_height=2000, client_height=2000)
        )
        assert geometry.is_scrollable
        assert not geometry.scrolls_internally
        assert geometry.visible_height == 800
        assert geometry.scrollable_total_height == 2000

    def test_position_and_stack_order(self):
        geometry = GeometryAnalyzer().analyze(metrics(position="sticky", z_index="12"))
        assert geometry.is_fixed_or_sticky
        assert geometry.stack_order == 12
        assert parse_z_index("auto") == 0
        assert parse_z_index("bogus") == 0

    @pytest.mark.asyncio
    async def test_analyze_element(self, element_host):
        geometry = await GeometryAnalyzer().analyze_element(element_host, "#feed")
        assert geometry.selector == "#feed"
        assert geometry.scrollable_total_height == 700
        assert geometry.visible_height == 200

    @pytest.mark.asyncio
    async def test_analyze_element_missing(self, element_host):
        element_host.missing = True
        with pytest.raises(ElementNotFoundError):
            await GeometryAnalyzer().analyze_element(element_host, "#gone")
