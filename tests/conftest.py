"""Shared test fixtures for the document review test suite."""

import io
from collections.abc import Callable, Iterator
from datetime import date, timedelta
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from src.events.notifier import InMemorySink
from src.ocr.engine import OCRLine, OCRResult, OcrEngine
from src.records.ledger import InMemoryLedger
from src.utils.config import AppConfig
from src.workflow.service import ReviewService, build_service

USER = "user-1"
PARTY = "Sharma Traders"
PARTY_GST = "27AAPFU0939F1ZV"
CUSTOMER = "Priya Mehta"


class ScriptedEngine(OcrEngine):
    """OCR engine returning preset text with a uniform line confidence."""

    name = "scripted"

    def __init__(self, text: str = "", confidence: float = 0.98) -> None:
        self.text = text
        self.confidence = confidence
        self.error: Exception | None = None
        self.calls = 0

    def recognize(self, image: np.ndarray) -> OCRResult:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return make_ocr_result(self.text, self.confidence, engine=self.name)


def make_ocr_result(text: str, confidence: float = 0.98, engine: str = "scripted") -> OCRResult:
    """Build an OCRResult with one line per non-empty text line."""
    lines = [OCRLine(line.strip(), confidence) for line in text.split("\n") if line.strip()]
    return OCRResult(text=text, lines=lines, confidence=confidence, engine=engine)


def recent_date(days_ago: int = 2) -> date:
    return date.today() - timedelta(days=days_ago)


def invoice_text(
    number: str = "INV-2024-001",
    amount: str = "12,500.00",
    party: str = PARTY,
    when: date | None = None,
) -> str:
    when = when or recent_date()
    return "\n".join(
        [
            party,
            f"Invoice No: {number}",
            f"Date: {when.strftime('%d/%m/%Y')}",
            f"GSTIN: {PARTY_GST}",
            f"Grand Total: Rs. {amount}",
        ]
    )


def _png_bytes(image: np.ndarray) -> bytes:
    buf = io.BytesIO()
    Image.fromarray(image).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def sample_image() -> np.ndarray:
    """Create a simple synthetic grayscale test image."""
    image = np.zeros((200, 300), dtype=np.uint8)
    image[50:150, 50:250] = 255
    return image


@pytest.fixture
def sample_color_image() -> np.ndarray:
    """Create a simple synthetic RGB test image."""
    image = np.zeros((200, 300, 3), dtype=np.uint8)
    image[50:150, 50:250] = (255, 255, 255)
    return image


@pytest.fixture
def clean_page() -> np.ndarray:
    """A 1000x1000 page of horizontal text-like rules on white paper.

    Large enough, contrasted, sharp and level, so it passes every
    quality check.
    """
    image = np.full((1000, 1000, 3), 255, dtype=np.uint8)
    for top in range(20, 1000, 40):
        image[top : top + 8, :] = 0
    return image


@pytest.fixture
def clean_page_png(clean_page: np.ndarray) -> bytes:
    return _png_bytes(clean_page)


@pytest.fixture
def poor_page_png() -> bytes:
    """A tiny, flat grey image that fails resolution and blur checks."""
    return _png_bytes(np.full((100, 100, 3), 128, dtype=np.uint8))


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def config_dir(project_root: Path) -> Path:
    """Return the configs directory path."""
    return project_root / "configs"


@pytest.fixture
def app_config(tmp_path: Path, config_dir: Path) -> AppConfig:
    config = AppConfig()
    config.storage.upload_dir = str(tmp_path / "uploads")
    config.validation.rules_path = str(config_dir / "validation_rules.yaml")
    config.workers.max_workers = 2
    return config


@pytest.fixture
def ledger() -> InMemoryLedger:
    ledger = InMemoryLedger()
    ledger.add_party(USER, PARTY, PARTY_GST)
    ledger.add_customer(USER, CUSTOMER)
    return ledger


@pytest.fixture
def sink() -> InMemorySink:
    return InMemorySink()


@pytest.fixture
def engine() -> ScriptedEngine:
    return ScriptedEngine(invoice_text())


@pytest.fixture
def service(
    app_config: AppConfig,
    ledger: InMemoryLedger,
    sink: InMemorySink,
    engine: ScriptedEngine,
) -> Iterator[ReviewService]:
    svc = build_service(app_config, ledger=ledger, sink=sink, engine=engine)
    yield svc
    svc.close()


@pytest.fixture
def process(service: ReviewService, clean_page_png: bytes) -> Callable[..., str]:
    """Upload a document, wait for the pipeline and return its id."""

    def _process(
        data: bytes | None = None,
        document_type: str = "invoice",
        user_id: str = USER,
        name: str = "invoice.png",
    ) -> str:
        record = service.upload(
            clean_page_png if data is None else data,
            document_type,
            user_id,
            name,
            content_type="image/png",
        )
        service.worker.wait_all()
        return record.id

    return _process
