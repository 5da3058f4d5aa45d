"""Configuration management for the document review pipeline.

Loads and validates YAML configuration with sensible defaults for the
OCR engine, quality checks, extraction, duplicate detection, storage,
and background workers.
"""

import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class OCRConfig(BaseModel):
    """Configuration for the OCR engine adapter."""

    engine: str = "tesseract"
    tesseract_cmd: str | None = None
    default_lang: str = "eng"
    psm: int = 3
    pdf_dpi: int = 300
    timeout_seconds: float = 30.0
    azure_endpoint: str | None = None
    azure_api_key: str | None = None
    azure_model: str = "prebuilt-read"


class QualityConfig(BaseModel):
    """Thresholds for the image quality checker."""

    min_pixels: int = 500_000
    warn_pixels: int = 1_000_000
    blur_std_issue: float = 20.0
    blur_std_warning: float = 35.0
    dark_mean: float = 50.0
    bright_mean: float = 220.0
    min_sharpness: float = 50.0
    max_skew_degrees: float = 10.0
    min_text_density: float = 20.0
    min_score: int = 60


class ExtractionConfig(BaseModel):
    """Configuration for field extraction and confidence scoring."""

    review_threshold: float = 0.75
    high_confidence_threshold: float = 0.9
    fuzzy_match_threshold: float = 0.7
    max_document_age_years: int = 3


class ValidationConfig(BaseModel):
    """Configuration for validation rules engine."""

    rules_path: str = "configs/validation_rules.yaml"


class DuplicateConfig(BaseModel):
    """Configuration for duplicate detection."""

    threshold: float = 0.85
    lookback_days: int = 30
    max_candidates: int = 50
    amount_tolerance: float = 10.0


class StorageConfig(BaseModel):
    """Configuration for record persistence and uploaded files."""

    backend: str = "memory"
    db_path: str = "ocr_data.db"
    upload_dir: str = "uploads"
    max_file_size: int = 10 * 1024 * 1024
    allowed_content_types: list[str] = Field(
        default_factory=lambda: [
            "image/jpeg",
            "image/jpg",
            "image/png",
            "image/webp",
            "image/tiff",
            "application/pdf",
            "application/octet-stream",
        ]
    )


class WorkerConfig(BaseModel):
    """Configuration for the background processing pool."""

    max_workers: int = 4


class AppConfig(BaseModel):
    """Top-level application configuration."""

    ocr: OCRConfig = Field(default_factory=OCRConfig)
    quality: QualityConfig = Field(default_factory=QualityConfig)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    duplicates: DuplicateConfig = Field(default_factory=DuplicateConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    workers: WorkerConfig = Field(default_factory=WorkerConfig)
    log_level: str = "INFO"


def load_config(path: Path | None = None) -> AppConfig:
    """Load configuration from a YAML file.

    Args:
        path: Path to the YAML configuration file.
            Defaults to configs/config.yaml.

    Returns:
        Validated application configuration.
    """
    if path is None:
        path = Path("configs/config.yaml")

    if path.exists():
        logger.info("Loading configuration from %s", path)
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
        return AppConfig(**raw)

    logger.info("No config file found at %s, using defaults", path)
    return AppConfig()
