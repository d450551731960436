"""
Image helpers shared by the OCR strategies: decoding, cropping and the
grayscale -> upscale -> blur -> threshold pipeline
"""

import io
from typing import Optional, Tuple, Union

import cv2
import numpy as np
from PIL import Image

from ..utils.exceptions import ImageRecognitionError

# (x1, y1, x2, y2) as fractions of the frame
FractionBox = Tuple[float, float, float, float]
# (x, y, w, h) in pixels
PixelRegion = Tuple[int, int, int, int]


def decode_screenshot(screenshot: Union[bytes, np.ndarray]) -> np.ndarray:
    """
    Decode a raw screencap into a BGR ndarray

    Args:
        screenshot: PNG bytes as returned by the device, or an already decoded BGR frame

    Raises:
        ImageRecognitionError: bytes could not be decoded
    """
    if isinstance(screenshot, np.ndarray):
        return screenshot
    if not screenshot:
        raise ImageRecognitionError("Empty screenshot buffer")
    try:
        pil_image = Image.open(io.BytesIO(screenshot)).convert('RGB')
    except (OSError, ValueError) as e:
        raise ImageRecognitionError(f"Could not decode screenshot: {e}") from e
    return cv2.cvtColor(np.array(pil_image), cv2.COLOR_RGB2BGR)


def crop_fraction(image: np.ndarray, box: FractionBox) -> np.ndarray:
    """Crop by fractional box, clamped to the frame"""
    h, w = image.shape[:2]
    x1, y1, x2, y2 = box
    left = max(0, min(w, int(w * x1)))
    top = max(0, min(h, int(h * y1)))
    right = max(0, min(w, int(w * x2)))
    bottom = max(0, min(h, int(h * y2)))
    return image[top:bottom, left:right]


def crop_pixels(image: np.ndarray, region: PixelRegion) -> np.ndarray:
    """Crop by (x, y, w, h) pixel region, clamped to the frame"""
    h, w = image.shape[:2]
    x, y, rw, rh = region
    left = max(0, min(w, int(x)))
    top = max(0, min(h, int(y)))
    right = max(0, min(w, int(x + rw)))
    bottom = max(0, min(h, int(y + rh)))
    return image[top:bottom, left:right]


def crop_band(image: np.ndarray, y_from: float, y_to: float) -> np.ndarray:
    """Horizontal band of an image, full width"""
    h = image.shape[0]
    return image[int(h * y_from):int(h * y_to), :]


def to_gray(image: np.ndarray) -> np.ndarray:
    if image.ndim == 2:
        return image
    if image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
    return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)


def preprocess(image: np.ndarray, scale: float = 2.0, invert: bool = False,
               adaptive: bool = False) -> Optional[np.ndarray]:
    """
    Grayscale, upscale (cubic), Gaussian blur, then binarise

    Args:
        image: BGR or grayscale crop
        scale: Upscale factor
        invert: Use inverse binary thresholding (light text on dark background)
        adaptive: Use adaptive Gaussian thresholding instead of Otsu

    Returns:
        Binary image, or None for an empty crop
    """
    if image is None or image.size == 0:
        return None
    gray = to_gray(image)
    gray = cv2.resize(gray, None, fx=scale, fy=scale, interpolation=cv2.INTER_CUBIC)
    gray = cv2.GaussianBlur(gray, (3, 3), 0)
    if adaptive:
        return cv2.adaptiveThreshold(gray, 255, cv2.ADAPTIVE_THRESH_GAUSSIAN_C,
                                     cv2.THRESH_BINARY, 31, 2)
    thresh_type = cv2.THRESH_BINARY_INV if invert else cv2.THRESH_BINARY
    _, binary = cv2.threshold(gray, 0, 255, thresh_type + cv2.THRESH_OTSU)
    return binary
