"""Bounding-box overlays and page viewer state.

Stored boxes use PDF page space: origin bottom-left, y grows upward, unscaled
points. Rendered viewports put the origin top-left with y growing downward and
multiply everything by the zoom factor.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any

from esglabel.utils import coerce_bbox

DEFAULT_SCALE = 1.5
ZOOM_STEP = 0.2
MIN_SCALE = 0.5
MAX_SCALE = 3.0


@dataclass(frozen=True)
class OverlayRect:
    left: float
    top: float
    width: float
    height: float

    def as_dict(self) -> dict[str, float]:
        return {"left": self.left, "top": self.top, "width": self.width, "height": self.height}


def project_bbox(bbox: Any, scale: float, page_height: float) -> OverlayRect | None:
    """Map ``[x0, y0, x1, y1]`` onto a viewport rendered at *scale*.

    Returns None when there is nothing to draw (no box, wrong shape, or a box
    with no area).
    """
    box = coerce_bbox(bbox)
    if box is None:
        return None
    x0, y0, x1, y1 = box
    if x1 <= x0 or y1 <= y0:
        return None
    return OverlayRect(
        left=x0 * scale,
        top=(page_height - y1) * scale,
        width=(x1 - x0) * scale,
        height=(y1 - y0) * scale,
    )


@dataclass(frozen=True)
class ViewerState:
    """Page and zoom state of a document viewer for one task.

    The renderer reports ``page_count`` and each page's unscaled height; the
    overlay is recomputed from those on every page or zoom change.
    """

    page_count: int
    page: int = 1
    scale: float = DEFAULT_SCALE

    @classmethod
    def open(cls, page_count: int, displayed_page: int | None, scale: float = DEFAULT_SCALE) -> ViewerState:
        if displayed_page is not None and 0 < displayed_page <= page_count:
            return cls(page_count=page_count, page=displayed_page, scale=scale)
        return cls(page_count=page_count, page=1, scale=scale)

    def change_page(self, delta: int) -> ViewerState:
        target = self.page + delta
        if 0 < target <= self.page_count:
            return replace(self, page=target)
        return self

    def change_zoom(self, delta: float) -> ViewerState:
        target = round(self.scale + delta, 4)
        if MIN_SCALE < target < MAX_SCALE:
            return replace(self, scale=target)
        return self

    def zoom_in(self) -> ViewerState:
        return self.change_zoom(ZOOM_STEP)

    def zoom_out(self) -> ViewerState:
        return self.change_zoom(-ZOOM_STEP)

    def overlay(self, bbox: Any, page_height: float) -> OverlayRect | None:
        return project_bbox(bbox, self.scale, page_height)

    @property
    def page_info(self) -> str:
        return f"Page {self.page} / {self.page_count}"
