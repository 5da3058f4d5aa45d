"""OCR engine strategy interface and shared result types.

Every engine turns a decoded page image into an :class:`OCRResult` with
line-level confidences. The concrete engine is chosen once at start-up
by :func:`build_engine` and injected into the pipeline.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import numpy as np

from src.errors import OCREngineError
from src.utils.config import OCRConfig
from src.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class BoundingBox:
    """Axis-aligned bounding box for a detected element."""

    x: int
    y: int
    width: int
    height: int


@dataclass
class OCRWord:
    """A single word extracted by OCR with position and confidence."""

    text: str
    bbox: BoundingBox
    confidence: float
    block_num: int
    line_num: int
    word_num: int


@dataclass
class OCRLine:
    """One line of recognized text with the engine's confidence for it."""

    text: str
    confidence: float


@dataclass
class OCRResult:
    """Complete OCR result for a document page."""

    text: str
    lines: list[OCRLine]
    confidence: float
    engine: str
    language: str = "eng"
    words: list[OCRWord] = field(default_factory=list)

    def line_confidence(self, offset: int) -> float:
        """Return the confidence of the line containing a text offset.

        Falls back to the page confidence when the offset cannot be
        attributed to a recognized line.
        """
        if offset < 0 or not self.lines:
            return self.confidence
        text_lines = self.text.split("\n")
        line_index = self.text.count("\n", 0, offset)
        if line_index >= len(text_lines):
            return self.confidence
        target = text_lines[line_index].strip()
        for line in self.lines:
            if line.text.strip() == target:
                return line.confidence
        return self.confidence


class OcrEngine(ABC):
    """Strategy interface for text recognition backends."""

    name: str = "base"

    @abstractmethod
    def recognize(self, image: np.ndarray) -> OCRResult:
        """Recognize text in a page image.

        Raises:
            OCREngineError: The engine failed.
            EngineTimeoutError: The engine exceeded its time budget.
        """


def build_engine(config: OCRConfig) -> OcrEngine:
    """Create the configured OCR engine.

    Args:
        config: OCR configuration; ``config.engine`` selects the backend.

    Returns:
        An engine instance ready to be shared by pipeline workers.
    """
    engine = config.engine.lower()
    if engine == "tesseract":
        from .tesseract_engine import TesseractEngine

        return TesseractEngine(
            tesseract_cmd=config.tesseract_cmd,
            default_lang=config.default_lang,
            psm=config.psm,
            timeout_seconds=config.timeout_seconds,
        )
    if engine == "azure":
        from .azure_engine import AzureDocumentIntelligenceEngine

        if not (config.azure_endpoint and config.azure_api_key):
            raise OCREngineError(
                "Azure engine selected but azure_endpoint/azure_api_key are not set"
            )
        return AzureDocumentIntelligenceEngine(
            endpoint=config.azure_endpoint,
            api_key=config.azure_api_key,
            model_id=config.azure_model,
            timeout_seconds=config.timeout_seconds,
        )
    raise ValueError(f"Unknown OCR engine: {config.engine}")
