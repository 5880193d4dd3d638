"""
pan_zoom.py - user pan/zoom state for the background image

The compositor only reads an ImageTransform; gesture handlers own a
PanZoomController and replace its transform between render passes.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional

MIN_SCALE = 1.0
MAX_SCALE = 3.0
WHEEL_STEP = 0.1


def clamp_scale(value: float) -> float:
    return max(MIN_SCALE, min(MAX_SCALE, float(value)))


@dataclass(frozen=True)
class ImageTransform:
    offset_x: float = 0.0
    offset_y: float = 0.0
    scale: float = 1.0

    def __post_init__(self):
        object.__setattr__(self, "scale", clamp_scale(self.scale))

    @classmethod
    def reset(cls) -> "ImageTransform":
        return cls(0.0, 0.0, 1.0)

    def dragged(self, dx: float, dy: float, display_ratio: float = 1.0) -> "ImageTransform":
        """Pan by a pointer delta measured on a preview shown at display_ratio of canvas size."""
        ratio = display_ratio if display_ratio > 0 else 1.0
        return replace(self, offset_x=self.offset_x + dx / ratio, offset_y=self.offset_y + dy / ratio)

    def zoomed(self, delta: float) -> "ImageTransform":
        return replace(self, scale=self.scale + delta)

    def pinched(self, factor: float) -> "ImageTransform":
        if factor <= 0:
            return self
        return replace(self, scale=self.scale * factor)


class PanZoomController:
    """Single owner of the pan/zoom value; resets on new image or aspect change."""

    def __init__(self, aspect_ratio: str = "1:1"):
        self.aspect_ratio = aspect_ratio
        self.image_id: Optional[str] = None
        self.transform = ImageTransform.reset()

    def set_aspect_ratio(self, aspect_ratio: str) -> ImageTransform:
        if aspect_ratio != self.aspect_ratio:
            self.aspect_ratio = aspect_ratio
            self.transform = ImageTransform.reset()
        return self.transform

    def load_image(self, image_id: str) -> ImageTransform:
        self.image_id = image_id
        self.transform = ImageTransform.reset()
        return self.transform

    def drag(self, dx: float, dy: float, display_ratio: float = 1.0) -> ImageTransform:
        self.transform = self.transform.dragged(dx, dy, display_ratio)
        return self.transform

    def wheel(self, notches: float) -> ImageTransform:
        # positive notches zoom in
        self.transform = self.transform.zoomed(notches * WHEEL_STEP)
        return self.transform

    def pinch(self, factor: float) -> ImageTransform:
        self.transform = self.transform.pinched(factor)
        return self.transform
