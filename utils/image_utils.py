"""
Image utilities for the detection workflow.

Handles image decoding, PDF rendering, cropping and base64 conversion.
"""
import base64
from io import BytesIO
from typing import List

import cv2
import fitz  # PyMuPDF
import numpy as np
from PIL import Image, ImageEnhance, ImageOps

from core.exceptions import ImageDecodeError
from core.models import Bbox, PageImage

PDF_MAGIC = b'%PDF'


def strip_data_url(b64_string: str) -> str:
    """Drop a `data:image/...;base64,` prefix if present."""
    if b64_string.startswith('data:') and ',' in b64_string:
        return b64_string.split(',', 1)[1]
    return b64_string


def decode_image(data: bytes) -> np.ndarray:
    """
    Decode encoded image bytes (PNG, JPEG, ...) into a BGR array.

    Args:
        data: Encoded image bytes

    Returns:
        Decoded image as numpy array (H x W x 3)

    Raises:
        ImageDecodeError: If the bytes are empty or not a decodable image
    """
    if not data:
        raise ImageDecodeError("Image data is empty.")

    img_array = np.frombuffer(data, dtype=np.uint8)
    image = cv2.imdecode(img_array, cv2.IMREAD_COLOR)

    if image is None:
        raise ImageDecodeError("Image could not be decoded.")
    return image


def decode_base64_image(b64_string: str) -> np.ndarray:
    """
    Decode base64 string (optionally a data URL) to a BGR array.

    Args:
        b64_string: Base64-encoded image string

    Returns:
        Decoded image as numpy array
    """
    try:
        data = base64.b64decode(strip_data_url(b64_string), validate=True)
    except ValueError as e:
        raise ImageDecodeError(f"Invalid base64 image data: {e}")
    return decode_image(data)


def to_pil(image: np.ndarray) -> Image.Image:
    """Convert a BGR (or grayscale) array to an RGB PIL image."""
    if image.ndim == 2:
        return Image.fromarray(image)
    return Image.fromarray(cv2.cvtColor(image, cv2.COLOR_BGR2RGB))


def image_to_base64(image: np.ndarray, fmt: str = 'JPEG', quality: int = 90) -> str:
    """
    Encode a BGR array to a base64 string.

    Args:
        image: Image array
        fmt: PIL format name ('JPEG' or 'PNG')
        quality: JPEG quality

    Returns:
        Base64-encoded image string (no data URL prefix)
    """
    img = to_pil(image)
    buf = BytesIO()
    if fmt.upper() == 'JPEG':
        img.convert('RGB').save(buf, format='JPEG', quality=quality)
    else:
        img.save(buf, format=fmt)
    return base64.b64encode(buf.getvalue()).decode()


def crop_bbox(image: np.ndarray, bbox: Bbox) -> np.ndarray:
    """
    Crop a normalized bbox out of an image.

    Args:
        image: Page image array
        bbox: Normalized bounding box

    Returns:
        Cropped image array

    Raises:
        ValueError: If the crop has zero width or height
    """
    height, width = image.shape[:2]
    x1 = max(0, int(round(bbox.x_min * width)))
    y1 = max(0, int(round(bbox.y_min * height)))
    x2 = min(width, int(round(bbox.x_max * width)))
    y2 = min(height, int(round(bbox.y_max * height)))

    if x2 <= x1 or y2 <= y1:
        raise ValueError("Crop dimensions must be greater than zero.")

    return image[y1:y2, x1:x2].copy()


def preprocess_for_ai(image: np.ndarray, max_width: int = 1500) -> Image.Image:
    """
    Prepare an image for AI analysis.

    Downscales to `max_width` and converts to high-contrast grayscale.

    Args:
        image: Image array
        max_width: Maximum output width

    Returns:
        Preprocessed PIL image
    """
    img = to_pil(image)
    img = ImageOps.grayscale(img)

    if img.width > max_width:
        scale = max_width / img.width
        img = img.resize((max_width, max(1, int(img.height * scale))), Image.Resampling.LANCZOS)

    img = ImageEnhance.Contrast(img).enhance(1.5)
    img = ImageEnhance.Brightness(img).enhance(1.1)
    return img


def pil_to_base64(img: Image.Image, quality: int = 90) -> str:
    """Encode a PIL image as base64 JPEG."""
    buf = BytesIO()
    img.convert('RGB').save(buf, format='JPEG', quality=quality)
    return base64.b64encode(buf.getvalue()).decode()


def is_pdf(data: bytes, filename: str = "") -> bool:
    """Check whether uploaded bytes are a PDF file."""
    return data[:4] == PDF_MAGIC or filename.lower().endswith('.pdf')


def render_pdf_pages(data: bytes, target_dpi: int = 216) -> List[np.ndarray]:
    """
    Render every page of a PDF to a BGR array.

    Args:
        data: PDF file bytes
        target_dpi: Target DPI for rendering

    Returns:
        List of page images in page order
    """
    try:
        doc = fitz.open(stream=data, filetype='pdf')
    except (RuntimeError, ValueError) as e:
        raise ImageDecodeError(f"PDF could not be opened: {e}")

    pages = []
    try:
        mat = fitz.Matrix(target_dpi / 72, target_dpi / 72)
        for page in doc:
            pix = page.get_pixmap(matrix=mat, alpha=False)
            pages.append(decode_image(pix.tobytes("png")))
    finally:
        doc.close()
    return pages


def load_pages(files: List[tuple], target_dpi: int = 216) -> List[PageImage]:
    """
    Turn uploaded files into page images.

    Pages are numbered consecutively across all files, so a page number
    identifies exactly one page of the upload.

    Args:
        files: List of (filename, bytes) tuples
        target_dpi: DPI used for PDF rendering

    Returns:
        List of PageImage in upload order
    """
    pages: List[PageImage] = []
    for filename, data in files:
        if is_pdf(data, filename):
            images = render_pdf_pages(data, target_dpi)
        else:
            images = [decode_image(data)]

        for image in images:
            pages.append(PageImage(page_number=len(pages) + 1, image=image, source_name=filename))
    return pages


def get_image_dimensions(image: np.ndarray):
    """
    Get image dimensions (width, height).

    Args:
        image: Image array

    Returns:
        Tuple of (width, height)
    """
    height, width = image.shape[:2]
    return width, height
