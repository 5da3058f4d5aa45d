"""Image measurements used by the quality checker.

Sharpness, contrast, brightness and skew are computed on the grayscale
page with OpenCV; each function is pure and works on RGB or grayscale
numpy arrays.
"""

import cv2
import numpy as np

from src.utils.logger import get_logger

logger = get_logger(__name__)


def to_gray(image: np.ndarray) -> np.ndarray:
    """Return a single-channel uint8 view of an RGB or grayscale image."""
    if len(image.shape) == 3:
        if image.shape[2] == 4:
            return cv2.cvtColor(image, cv2.COLOR_RGBA2GRAY)
        return cv2.cvtColor(image, cv2.COLOR_RGB2GRAY)
    return image


def calculate_sharpness(image: np.ndarray) -> float:
    """Calculate image sharpness using Laplacian variance.

    Args:
        image: Input image (RGB or grayscale).

    Returns:
        Sharpness score (higher means sharper).
    """
    return float(cv2.Laplacian(to_gray(image), cv2.CV_64F).var())


def calculate_contrast(image: np.ndarray) -> float:
    """Calculate contrast as the standard deviation of pixel intensities."""
    return float(to_gray(image).std())


def calculate_brightness(image: np.ndarray) -> float:
    """Calculate mean pixel intensity on a 0-255 scale."""
    return float(to_gray(image).mean())


def detect_skew_angle(image: np.ndarray) -> float:
    """Detect the skew angle of a document image.

    Uses Hough line transform on the edge-detected page and returns the
    median angle of the detected lines, folded into ``[-45, 45]`` so
    vertical rules and horizontal text lines agree.

    Args:
        image: Input image as a numpy array (RGB or grayscale).

    Returns:
        Estimated skew angle in degrees, ``0.0`` when no lines are found.
    """
    edges = cv2.Canny(to_gray(image), 50, 150, apertureSize=3)
    lines = cv2.HoughLinesP(
        edges, 1, np.pi / 180, 100, minLineLength=100, maxLineGap=10
    )

    if lines is None:
        logger.debug("No lines detected for skew estimation")
        return 0.0

    angles = []
    for x1, y1, x2, y2 in lines.reshape(-1, 4):
        angle = float(np.degrees(np.arctan2(y2 - y1, x2 - x1)))
        angles.append((angle + 45.0) % 90.0 - 45.0)

    median_angle = float(np.median(angles))
    logger.debug("Detected skew angle: %.2f degrees", median_angle)
    return median_angle


def text_density(text: str, image: np.ndarray) -> float:
    """Recognized non-whitespace characters per megapixel."""
    h, w = image.shape[:2]
    megapixels = (h * w) / 1_000_000
    if megapixels == 0:
        return 0.0
    return len("".join(text.split())) / megapixels
