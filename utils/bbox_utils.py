"""
Bounding box utilities for region detection.

Handles pixel rectangle geometry, normalization and visualization.
"""
from typing import Iterable, List, Tuple

import numpy as np
from PIL import Image, ImageDraw, ImageFont

from core.models import Bbox, Rect


def edge_gaps(a: Rect, b: Rect) -> Tuple[int, int]:
    """
    Horizontal and vertical separation between the closest edges of two rects.

    Overlapping extents give a gap of 0.

    Args:
        a: First rectangle
        b: Second rectangle

    Returns:
        Tuple of (horizontal_gap, vertical_gap)
    """
    horizontal = max(0, max(a.x, b.x) - min(a.x2, b.x2))
    vertical = max(0, max(a.y, b.y) - min(a.y2, b.y2))
    return horizontal, vertical


def rects_are_close(a: Rect, b: Rect, gap_threshold: float) -> bool:
    """True when both edge gaps are strictly below `gap_threshold`."""
    horizontal, vertical = edge_gaps(a, b)
    return horizontal < gap_threshold and vertical < gap_threshold


def union_rect(rects: Iterable[Rect]) -> Rect:
    """
    Smallest rectangle containing all given rectangles.

    Raises:
        ValueError: If `rects` is empty
    """
    rects = list(rects)
    if not rects:
        raise ValueError("union_rect() requires at least one rectangle")

    x1 = min(r.x for r in rects)
    y1 = min(r.y for r in rects)
    x2 = max(r.x2 for r in rects)
    y2 = max(r.y2 for r in rects)
    return Rect(x=x1, y=y1, width=x2 - x1, height=y2 - y1)


def aspect_ratio(rect: Rect) -> float:
    """max(w/h, h/w); degenerate rectangles have infinite aspect ratio."""
    if rect.width <= 0 or rect.height <= 0:
        return float('inf')
    return max(rect.width / rect.height, rect.height / rect.width)


def rect_to_bbox(rect: Rect, img_width: int, img_height: int) -> Bbox:
    """
    Normalize a pixel rectangle to [0, 1] coordinates.

    Args:
        rect: Pixel rectangle
        img_width: Image width
        img_height: Image height

    Returns:
        Normalized Bbox
    """
    return clamp_bbox(Bbox(
        x_min=rect.x / img_width,
        y_min=rect.y / img_height,
        x_max=rect.x2 / img_width,
        y_max=rect.y2 / img_height
    ))


def bbox_to_rect(bbox: Bbox, img_width: int, img_height: int) -> Rect:
    """
    Convert a normalized Bbox back to pixel coordinates.

    Args:
        bbox: Normalized Bbox
        img_width: Image width
        img_height: Image height

    Returns:
        Pixel Rect
    """
    x1 = int(round(bbox.x_min * img_width))
    y1 = int(round(bbox.y_min * img_height))
    x2 = int(round(bbox.x_max * img_width))
    y2 = int(round(bbox.y_max * img_height))
    return Rect(x=x1, y=y1, width=x2 - x1, height=y2 - y1)


def clamp_bbox(bbox: Bbox) -> Bbox:
    """Clamp every coordinate into [0, 1]."""
    def clamp(value: float) -> float:
        return max(0.0, min(1.0, value))

    return Bbox(
        x_min=clamp(bbox.x_min),
        y_min=clamp(bbox.y_min),
        x_max=clamp(bbox.x_max),
        y_max=clamp(bbox.y_max)
    )


def sort_top_to_bottom(bboxes: Iterable[Bbox]) -> List[Bbox]:
    """Sort boxes by y_min, then x_min for boxes on the same line."""
    return sorted(bboxes, key=lambda b: (b.y_min, b.x_min))


def draw_bounding_boxes(image: Image.Image, bboxes: List[Bbox]) -> Image.Image:
    """
    Draw numbered region boxes on a copy of the page.

    Args:
        image: PIL Image to draw on
        bboxes: Normalized boxes in display order

    Returns:
        Annotated image
    """
    img_draw = image.convert('RGB')
    draw = ImageDraw.Draw(img_draw)
    overlay = Image.new('RGBA', img_draw.size, (0, 0, 0, 0))
    draw2 = ImageDraw.Draw(overlay)
    font = ImageFont.load_default()

    width, height = img_draw.size
    rng = np.random.default_rng(42)

    for number, bbox in enumerate(bboxes, start=1):
        color = tuple(int(c) for c in rng.integers(50, 255, size=3))
        rect = bbox_to_rect(bbox, width, height)

        draw.rectangle([rect.x, rect.y, rect.x2, rect.y2], outline=color, width=3)
        draw2.rectangle([rect.x, rect.y, rect.x2, rect.y2], fill=color + (60,))

        label = str(number)
        ty = max(0, rect.y - 18)
        draw.rectangle([rect.x, ty, rect.x + 8 * len(label) + 8, ty + 16], fill=color)
        draw.text((rect.x + 4, ty + 2), label, font=font, fill=(255, 255, 255))

    img_draw = img_draw.convert('RGBA')
    img_draw.alpha_composite(overlay)
    return img_draw.convert('RGB')
