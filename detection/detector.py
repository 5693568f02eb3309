"""
Region Detector

Finds candidate problem regions on a rasterized page:
1. Grayscale + Gaussian adaptive threshold (inverted) for uneven lighting
2. Full-hierarchy contour extraction and bounding rectangles
3. Noise / rule-line filtering
4. Fixed-point merging of nearby fragments
5. Normalization to [0, 1] and top-to-bottom ordering
"""
import logging
from typing import List, Optional

import cv2
import numpy as np

from core.constants import DEFAULT_DETECTION_PARAMS
from core.exceptions import ImageDecodeError
from core.models import Bbox, Rect
from utils.bbox_utils import rect_to_bbox, sort_top_to_bottom
from utils.image_utils import decode_image
from .filters import filter_rects
from .merging import merge_nearby_rects

logger = logging.getLogger(__name__)


class RegionDetector:
    """Contour-based problem region detector."""

    def __init__(
        self,
        min_area: int = DEFAULT_DETECTION_PARAMS['min_area'],
        max_aspect_ratio: float = DEFAULT_DETECTION_PARAMS['max_aspect_ratio'],
        gap_ratio: float = DEFAULT_DETECTION_PARAMS['gap_ratio'],
        block_size: int = DEFAULT_DETECTION_PARAMS['block_size'],
        c: int = DEFAULT_DETECTION_PARAMS['c']
    ):
        """
        Initialize detector.

        Args:
            min_area: Rectangles with area <= min_area are dropped
            max_aspect_ratio: Rectangles with aspect ratio >= this are dropped
            gap_ratio: Merge gap threshold as a fraction of image width
            block_size: Adaptive threshold neighbourhood size (odd, > 1)
            c: Constant subtracted from the weighted local mean
        """
        if block_size < 3 or block_size % 2 == 0:
            raise ValueError(f"block_size must be an odd number >= 3, got {block_size}")

        self.min_area = min_area
        self.max_aspect_ratio = max_aspect_ratio
        self.gap_ratio = gap_ratio
        self.block_size = block_size
        self.c = c

    @classmethod
    def from_settings(cls, settings) -> "RegionDetector":
        """Build a detector from application settings."""
        return cls(**settings.get_detection_params())

    def threshold(self, image: np.ndarray) -> np.ndarray:
        """Foreground mask: text pixels white on black."""
        if image.ndim == 3:
            channels = image.shape[2]
            code = cv2.COLOR_BGRA2GRAY if channels == 4 else cv2.COLOR_BGR2GRAY
            gray = cv2.cvtColor(image, code)
        else:
            gray = image

        return cv2.adaptiveThreshold(
            gray, 255,
            cv2.ADAPTIVE_THRESH_GAUSSIAN_C,
            cv2.THRESH_BINARY_INV,
            self.block_size,
            self.c
        )

    def find_fragment_rects(self, image: np.ndarray) -> List[Rect]:
        """Bounding rectangles of every contour (outer and inner)."""
        mask = self.threshold(image)
        contours, _ = cv2.findContours(mask, cv2.RETR_TREE, cv2.CHAIN_APPROX_SIMPLE)

        rects = []
        for contour in contours:
            x, y, w, h = cv2.boundingRect(contour)
            rects.append(Rect(x=int(x), y=int(y), width=int(w), height=int(h)))
        return rects

    def gap_threshold(self, image_width: int) -> float:
        """Merge gap in pixels for an image of the given width."""
        return image_width * self.gap_ratio

    def detect_rects(self, image: np.ndarray) -> List[Rect]:
        """
        Detect merged regions in pixel coordinates.

        Args:
            image: Decoded page image (BGR, BGRA or grayscale)

        Returns:
            Merged rectangles (unordered)
        """
        height, width = image.shape[:2]
        if width == 0 or height == 0:
            return []

        raw = self.find_fragment_rects(image)
        fragments = filter_rects(raw, self.min_area, self.max_aspect_ratio)
        merged = merge_nearby_rects(fragments, self.gap_threshold(width))

        logger.debug(
            f"Detection: {len(raw)} contours, {len(fragments)} fragments, "
            f"{len(merged)} regions ({width}x{height})"
        )
        return merged

    def detect(self, image: np.ndarray) -> List[Bbox]:
        """
        Detect candidate problem regions.

        An empty list means nothing was detected; it is not an error.

        Args:
            image: Decoded page image

        Returns:
            Normalized boxes sorted top-to-bottom
        """
        if image is None or getattr(image, 'size', 0) == 0:
            raise ImageDecodeError("Image is empty.")

        height, width = image.shape[:2]
        rects = self.detect_rects(image)
        return sort_top_to_bottom(rect_to_bbox(r, width, height) for r in rects)

    def detect_bytes(self, data: bytes) -> List[Bbox]:
        """
        Decode encoded image bytes and detect regions.

        Raises:
            ImageDecodeError: If the bytes cannot be decoded
        """
        return self.detect(decode_image(data))


_default_detector: Optional[RegionDetector] = None


def detect_regions(image: np.ndarray) -> List[Bbox]:
    """Detect regions with default thresholds."""
    global _default_detector
    if _default_detector is None:
        _default_detector = RegionDetector()
    return _default_detector.detect(image)
