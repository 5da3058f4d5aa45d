"""Decoding of uploaded document bytes into page images.

Supports PDFs (rasterized with pdf2image) and common image formats
(PNG, JPEG, TIFF, WEBP). Anything that cannot be decoded raises
:class:`ImageDecodeError`, which the pipeline treats as a hard failure.
"""

import io

import numpy as np
from pdf2image import convert_from_bytes
from pdf2image.exceptions import PDFInfoNotInstalledError, PDFPageCountError, PDFSyntaxError
from PIL import Image, UnidentifiedImageError

from src.errors import ImageDecodeError
from src.utils.logger import get_logger

logger = get_logger(__name__)


class ImageLoader:
    """Turns raw upload bytes into a list of RGB page images.

    Args:
        dpi: Resolution for PDF rendering.
        max_pages: Upper bound on rasterized PDF pages.
    """

    def __init__(self, dpi: int = 300, max_pages: int = 10) -> None:
        self.dpi = dpi
        self.max_pages = max_pages

    def load(self, source: bytes, filename: str = "document") -> list[np.ndarray]:
        """Decode document bytes.

        Args:
            source: Raw file bytes.
            filename: Display name used in log and error messages.

        Returns:
            Page images as numpy arrays (RGB).

        Raises:
            ImageDecodeError: The bytes are empty, corrupt, or not a
                supported format.
        """
        if not source:
            raise ImageDecodeError(f"Empty file: {filename}")

        if source[:4] == b"%PDF":
            return self._load_pdf(source, filename)
        return [self._load_image(source, filename)]

    def _load_pdf(self, source: bytes, filename: str) -> list[np.ndarray]:
        try:
            pil_images = convert_from_bytes(
                source, dpi=self.dpi, first_page=1, last_page=self.max_pages
            )
        except (PDFPageCountError, PDFSyntaxError, PDFInfoNotInstalledError) as exc:
            raise ImageDecodeError(f"Could not decode PDF {filename}: {exc}") from exc

        if not pil_images:
            raise ImageDecodeError(f"PDF {filename} has no pages")

        images = [np.array(img.convert("RGB")) for img in pil_images]
        logger.info("Converted PDF %s to %d images at %d DPI", filename, len(images), self.dpi)
        return images

    def _load_image(self, source: bytes, filename: str) -> np.ndarray:
        try:
            with Image.open(io.BytesIO(source)) as img:
                img.load()
                return np.array(img.convert("RGB"))
        except (UnidentifiedImageError, OSError, ValueError) as exc:
            raise ImageDecodeError(f"Could not decode image {filename}: {exc}") from exc
