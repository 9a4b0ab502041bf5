from __future__ import annotations

import pytest

from esglabel.overlay import DEFAULT_SCALE, OverlayRect, ViewerState, project_bbox


class TestProjectBbox:
    def test_flips_and_scales(self):
        rect = project_bbox([0, 0, 10, 10], scale=2, page_height=20)
        assert rect == OverlayRect(left=0, top=20, width=20, height=20)

    def test_offset_box(self):
        rect = project_bbox([100, 700, 300, 742], scale=1.5, page_height=842)
        assert rect.as_dict() == {"left": 150.0, "top": 150.0, "width": 300.0, "height": 63.0}

    @pytest.mark.parametrize("bbox", [None, [], [1, 2, 3], "0,0,1,1", [0, 0, "a", 1], [5, 5, 5, 9], [0, 9, 4, 2]])
    def test_nothing_to_draw(self, bbox):
        assert project_bbox(bbox, scale=1.5, page_height=842) is None


class TestViewerState:
    def test_opens_on_displayed_page(self):
        state = ViewerState.open(page_count=10, displayed_page=5)
        assert state.page == 5
        assert state.scale == DEFAULT_SCALE

    @pytest.mark.parametrize("displayed", [None, 0, 11, -2])
    def test_out_of_range_opens_first_page(self, displayed):
        assert ViewerState.open(page_count=10, displayed_page=displayed).page == 1

    def test_page_changes_are_clamped(self):
        state = ViewerState.open(page_count=3, displayed_page=3)
        assert state.change_page(1).page == 3
        assert state.change_page(-1).page == 2
        assert state.change_page(-1).change_page(-1).change_page(-1).page == 1

    def test_zoom_steps(self):
        state = ViewerState.open(page_count=1, displayed_page=1)
        assert state.zoom_in().scale == pytest.approx(1.7)
        assert state.zoom_out().scale == pytest.approx(1.3)

    def test_zoom_stays_inside_bounds(self):
        state = ViewerState(page_count=1, scale=0.7)
        assert state.zoom_out().scale == pytest.approx(0.7)
        state = ViewerState(page_count=1, scale=2.9)
        assert state.zoom_in().scale == pytest.approx(2.9)

    def test_overlay_follows_zoom(self):
        state = ViewerState(page_count=1, scale=1.0).zoom_in()
        rect = state.overlay([0, 0, 10, 10], page_height=20)
        assert rect.width == pytest.approx(12.0)
        assert rect.top == pytest.approx(12.0)

    def test_page_info(self):
        assert ViewerState.open(page_count=4, displayed_page=2).page_info == "Page 2 / 4"
