"""Detection package - Contour-based problem region detection."""

from .filters import is_text_fragment, filter_rects
from .merging import UnionFind, merge_pass, merge_nearby_rects
from .detector import RegionDetector, detect_regions

__all__ = [
    'is_text_fragment',
    'filter_rects',
    'UnionFind',
    'merge_pass',
    'merge_nearby_rects',
    'RegionDetector',
    'detect_regions',
]
