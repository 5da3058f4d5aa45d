"""Tesseract OCR engine wrapper with line-level confidence.

Runs Tesseract under a bounded timeout and groups word detections into
lines so downstream field extraction can weight each match by the
engine's certainty for the line it came from.
"""

import numpy as np
import pytesseract
from PIL import Image

from src.errors import EngineTimeoutError, OCREngineError
from src.utils.logger import get_logger

from .engine import BoundingBox, OCRLine, OCRResult, OCRWord, OcrEngine

logger = get_logger(__name__)


class TesseractEngine(OcrEngine):
    """Local Tesseract backend.

    Args:
        tesseract_cmd: Path to the Tesseract executable.
            If ``None``, uses the system default.
        default_lang: OCR language code.
        psm: Tesseract page segmentation mode.
        timeout_seconds: Upper bound for a single Tesseract call.
    """

    name = "tesseract"

    def __init__(
        self,
        tesseract_cmd: str | None = None,
        default_lang: str = "eng",
        psm: int = 3,
        timeout_seconds: float = 30.0,
    ) -> None:
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd
        self.default_lang = default_lang
        self.psm = psm
        self.timeout_seconds = timeout_seconds

    def recognize(self, image: np.ndarray) -> OCRResult:
        """Extract text from an image with word and line detail.

        Args:
            image: Input image as a numpy array.

        Returns:
            OCRResult with full text, lines, words, and page confidence.
        """
        config = f"--psm {self.psm}"
        pil_image = Image.fromarray(image)

        try:
            data = pytesseract.image_to_data(
                pil_image,
                lang=self.default_lang,
                config=config,
                output_type=pytesseract.Output.DICT,
                timeout=self.timeout_seconds,
            )
        except pytesseract.TesseractError as exc:
            raise OCREngineError(f"Tesseract failed: {exc.message}") from exc
        except RuntimeError as exc:
            # pytesseract signals its timeout with a bare RuntimeError
            if "timeout" in str(exc).lower():
                raise EngineTimeoutError(
                    f"Tesseract exceeded {self.timeout_seconds:.0f}s timeout"
                ) from exc
            raise OCREngineError(f"Tesseract failed: {exc}") from exc
        except pytesseract.TesseractNotFoundError as exc:
            raise OCREngineError("Tesseract is not installed or not on PATH") from exc

        words = self._collect_words(data)
        lines = self._group_lines(words)
        text = "\n".join(line.text for line in lines)
        avg_conf = (
            sum(w.confidence for w in words) / len(words) if words else 0.0
        )

        logger.info(
            "OCR extracted %d words on %d lines with average confidence %.2f",
            len(words),
            len(lines),
            avg_conf,
        )
        return OCRResult(
            text=text,
            lines=lines,
            confidence=avg_conf,
            engine=self.name,
            language=self.default_lang,
            words=words,
        )

    def _collect_words(self, data: dict) -> list[OCRWord]:
        words: list[OCRWord] = []
        for i in range(len(data["text"])):
            conf = float(data["conf"][i])
            word_text = str(data["text"][i]).strip()

            if conf > 0 and word_text:
                words.append(
                    OCRWord(
                        text=word_text,
                        bbox=BoundingBox(
                            x=data["left"][i],
                            y=data["top"][i],
                            width=data["width"][i],
                            height=data["height"][i],
                        ),
                        confidence=conf / 100.0,
                        block_num=data["block_num"][i],
                        line_num=data["line_num"][i],
                        word_num=data["word_num"][i],
                    )
                )
        return words

    def _group_lines(self, words: list[OCRWord]) -> list[OCRLine]:
        """Join words sharing a (block, line) pair, preserving reading order."""
        grouped: dict[tuple[int, int], list[OCRWord]] = {}
        for word in words:
            grouped.setdefault((word.block_num, word.line_num), []).append(word)

        lines: list[OCRLine] = []
        for line_words in grouped.values():
            line_words.sort(key=lambda w: w.word_num)
            lines.append(
                OCRLine(
                    text=" ".join(w.text for w in line_words),
                    confidence=sum(w.confidence for w in line_words) / len(line_words),
                )
            )
        return lines
