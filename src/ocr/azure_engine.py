"""Azure Document Intelligence backend for cloud OCR.

Sends the page as PNG to the configured read model and converts the
returned lines and word confidences into an :class:`OCRResult`.
"""

import io

import numpy as np
from azure.ai.documentintelligence import DocumentIntelligenceClient
from azure.core.credentials import AzureKeyCredential
from azure.core.exceptions import AzureError
from PIL import Image

from src.errors import EngineTimeoutError, OCREngineError
from src.utils.logger import get_logger

from .engine import OCRLine, OCRResult, OcrEngine

logger = get_logger(__name__)


class AzureDocumentIntelligenceEngine(OcrEngine):
    """Cloud OCR via Azure Document Intelligence.

    Args:
        endpoint: Resource endpoint URL.
        api_key: Resource key.
        model_id: Analysis model, ``prebuilt-read`` by default.
        timeout_seconds: Maximum time to wait for the analysis poller.
        client: Pre-built client, mainly for tests.
    """

    name = "azure"

    def __init__(
        self,
        endpoint: str,
        api_key: str,
        model_id: str = "prebuilt-read",
        timeout_seconds: float = 30.0,
        client: DocumentIntelligenceClient | None = None,
    ) -> None:
        self.model_id = model_id
        self.timeout_seconds = timeout_seconds
        self.client = client or DocumentIntelligenceClient(
            endpoint=endpoint, credential=AzureKeyCredential(api_key)
        )

    def recognize(self, image: np.ndarray) -> OCRResult:
        buffer = io.BytesIO()
        Image.fromarray(image).save(buffer, format="PNG")
        payload = buffer.getvalue()
        logger.info("Analyzing %d bytes with Azure model %s", len(payload), self.model_id)

        try:
            poller = self.client.begin_analyze_document(
                self.model_id,
                body=payload,
                content_type="application/octet-stream",
            )
            result = poller.result(timeout=self.timeout_seconds)
        except AzureError as exc:
            raise OCREngineError(f"Azure analysis failed: {exc}") from exc

        if not poller.done() or result is None:
            raise EngineTimeoutError(
                f"Azure analysis exceeded {self.timeout_seconds:.0f}s timeout"
            )

        lines: list[OCRLine] = []
        confidences: list[float] = []
        for page in result.pages or []:
            words = page.words or []
            confidences.extend(w.confidence for w in words)
            for line in page.lines or []:
                lines.append(OCRLine(line.content, self._line_confidence(line, words)))

        avg_conf = sum(confidences) / len(confidences) if confidences else 0.0
        text = result.content or "\n".join(line.text for line in lines)
        logger.info(
            "Azure OCR returned %d lines with average confidence %.2f",
            len(lines),
            avg_conf,
        )
        return OCRResult(text=text, lines=lines, confidence=avg_conf, engine=self.name)

    @staticmethod
    def _line_confidence(line, words) -> float:
        """Average the confidence of words whose span lies inside the line."""
        spans = line.spans or []
        inside = [
            w.confidence
            for w in words
            if any(
                s.offset <= w.span.offset < s.offset + s.length for s in spans
            )
        ]
        return sum(inside) / len(inside) if inside else 0.0
