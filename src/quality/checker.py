"""Image usability checks run before and after OCR.

The checker scores a decoded page from 100 downwards and itemizes what
it found. ``issues`` make the document unfit for automatic approval;
``warnings`` are informational. Nothing here raises for a poor image:
the report is data that drives routing.
"""

from dataclasses import asdict, dataclass, field

import numpy as np

from src.utils.config import QualityConfig
from src.utils.logger import get_logger

from .metrics import (
    calculate_brightness,
    calculate_contrast,
    calculate_sharpness,
    detect_skew_angle,
    text_density,
)

logger = get_logger(__name__)


@dataclass
class QualityReport:
    """Outcome of a quality check."""

    is_good_quality: bool
    score: int
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    metrics: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = asdict(self)
        return {
            "isGoodQuality": data["is_good_quality"],
            "score": data["score"],
            "issues": data["issues"],
            "warnings": data["warnings"],
            "recommendations": data["recommendations"],
            "metrics": data["metrics"],
        }


class QualityChecker:
    """Scores page images for OCR suitability.

    Args:
        config: Thresholds for resolution, blur, exposure, skew and text
            density.
    """

    def __init__(self, config: QualityConfig | None = None) -> None:
        self.config = config or QualityConfig()

    def check(self, image: np.ndarray, text: str | None = None) -> QualityReport:
        """Evaluate a page image, optionally with its recognized text.

        Args:
            image: Decoded page (RGB or grayscale).
            text: OCR text for the page; enables the text density check.

        Returns:
            Quality report with score, issues, warnings and raw metrics.
        """
        cfg = self.config
        issues: list[str] = []
        warnings: list[str] = []
        recommendations: list[str] = []
        score = 100

        h, w = image.shape[:2]
        pixels = h * w
        contrast = calculate_contrast(image)
        brightness = calculate_brightness(image)
        sharpness = calculate_sharpness(image)
        skew = detect_skew_angle(image)
        metrics = {
            "width": float(w),
            "height": float(h),
            "contrast": contrast,
            "brightness": brightness,
            "sharpness": sharpness,
            "skew": skew,
        }

        if pixels < cfg.min_pixels:
            issues.append("Resolution too low")
            recommendations.append("Use higher resolution image (min 1000x700)")
            score -= 40
        elif pixels < cfg.warn_pixels:
            warnings.append("Resolution is low, may affect accuracy")
            score -= 15

        if contrast < cfg.blur_std_issue:
            issues.append("Image is too blurry")
            recommendations.append("Ensure camera is focused and stable")
            score -= 35
        elif contrast < cfg.blur_std_warning:
            warnings.append("Image may be slightly blurry")
            score -= 10

        if sharpness < cfg.min_sharpness:
            warnings.append("Image lacks sharp edges")
            score -= 5

        if brightness < cfg.dark_mean:
            warnings.append("Image is too dark")
            recommendations.append("Increase lighting or adjust camera settings")
            score -= 15
        elif brightness > cfg.bright_mean:
            warnings.append("Image is overexposed")
            recommendations.append("Reduce lighting or adjust camera settings")
            score -= 15

        if abs(skew) > cfg.max_skew_degrees:
            issues.append(f"Excessive skew ({skew:.1f} degrees)")
            recommendations.append("Align the document with the camera frame")
            score -= 20

        if text is not None:
            density = text_density(text, image)
            metrics["text_density"] = density
            if density < cfg.min_text_density:
                issues.append("Low text density")
                recommendations.append("Make sure the document fills the frame")
                score -= 20

        score = max(score, 0)
        is_good = score >= cfg.min_score and not issues

        if is_good:
            logger.info("Quality check passed with score %d", score)
        else:
            logger.warning("Quality check failed with score %d: %s", score, issues)

        return QualityReport(
            is_good_quality=is_good,
            score=score,
            issues=issues,
            warnings=warnings,
            recommendations=recommendations,
            metrics=metrics,
        )
