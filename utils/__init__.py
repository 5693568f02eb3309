"""Utilities package - Helper functions for image, bbox, and text processing."""

from .image_utils import (
    decode_image,
    decode_base64_image,
    image_to_base64,
    crop_bbox,
    preprocess_for_ai,
    render_pdf_pages,
    load_pages,
    get_image_dimensions
)

from .bbox_utils import (
    edge_gaps,
    rects_are_close,
    union_rect,
    aspect_ratio,
    rect_to_bbox,
    bbox_to_rect,
    clamp_bbox,
    sort_top_to_bottom,
    draw_bounding_boxes
)

from .text_utils import (
    fill_template,
    strip_code_fences,
    extract_json,
    parse_explanation_payload
)

from .logger import setup_logging

__all__ = [
    # Image utils
    'decode_image',
    'decode_base64_image',
    'image_to_base64',
    'crop_bbox',
    'preprocess_for_ai',
    'render_pdf_pages',
    'load_pages',
    'get_image_dimensions',

    # BBox utils
    'edge_gaps',
    'rects_are_close',
    'union_rect',
    'aspect_ratio',
    'rect_to_bbox',
    'bbox_to_rect',
    'clamp_bbox',
    'sort_top_to_bottom',
    'draw_bounding_boxes',

    # Text utils
    'fill_template',
    'strip_code_fences',
    'extract_json',
    'parse_explanation_payload',

    'setup_logging'
]
