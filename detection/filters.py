"""
Noise filtering for contour bounding rectangles.

Contour extraction over-produces fragments: glyph strokes, punctuation, specks
and ruled lines. Rectangles are kept only when they are large enough and not
line-shaped.
"""
from typing import Iterable, List

from core.constants import DEFAULT_DETECTION_PARAMS
from core.models import Rect
from utils.bbox_utils import aspect_ratio


def is_text_fragment(
    rect: Rect,
    min_area: int = DEFAULT_DETECTION_PARAMS['min_area'],
    max_aspect_ratio: float = DEFAULT_DETECTION_PARAMS['max_aspect_ratio']
) -> bool:
    """
    Check whether a rectangle is a plausible text fragment.

    Args:
        rect: Candidate rectangle
        min_area: Rectangles with area <= min_area are noise
        max_aspect_ratio: Rectangles with max(w/h, h/w) >= this are rule lines

    Returns:
        True if the rectangle survives the filter
    """
    return rect.area > min_area and aspect_ratio(rect) < max_aspect_ratio


def filter_rects(
    rects: Iterable[Rect],
    min_area: int = DEFAULT_DETECTION_PARAMS['min_area'],
    max_aspect_ratio: float = DEFAULT_DETECTION_PARAMS['max_aspect_ratio']
) -> List[Rect]:
    """
    Drop noise specks and thin lines, preserving input order.

    Args:
        rects: Raw contour bounding rectangles
        min_area: Minimum exclusive area
        max_aspect_ratio: Maximum exclusive aspect ratio

    Returns:
        Surviving rectangles
    """
    return [
        rect for rect in rects
        if is_text_fragment(rect, min_area, max_aspect_ratio)
    ]
