# brain/fusion.py
# -*- coding: utf-8 -*-
"""
Merges the text estimate and the image estimate into one classification.

Role
----
- fuse(text, image_outcome) -> ClassificationResult
    image_outcome is None (no image / oracle not configured),
    an ImageClassification, or the ClassificationFailure the oracle raised.
- classify_issue(...): text classifier + oracle call + fuse, never raises
  on oracle problems.

ClassificationResult is a tagged union:
    TextOnly         -> ai_processing_status "text_only"
    TextPlusImage    -> ai_processing_status "completed"
    FallbackFailure  -> ai_processing_status "partial_failure"
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, ClassVar, Dict, Optional, Sequence, Union

from core.clock import utcnow
from core.config import MAX_CONFIDENCE, REVIEW_CONFIDENCE_THRESHOLD
from core.errors import ClassificationFailure
from core.logging import logger
from .classifier import TextEstimate, classify_text
from .llm_client import ImageClassification, ImagePayload, OracleClient

# citizen categories that never count as "reclassified"
_NON_COMMITTAL = ("other", "unknown")


@dataclass(frozen=True)
class _Fused:
    original_category: str
    category: str
    confidence: float
    severity_level: str
    priority: str
    needs_review: bool
    was_reclassified: bool
    explanation: str
    details: Dict[str, Any]

    ai_processing_status: ClassVar[str] = ""


@dataclass(frozen=True)
class TextOnly(_Fused):
    ai_processing_status: ClassVar[str] = "text_only"


@dataclass(frozen=True)
class TextPlusImage(_Fused):
    image: ImageClassification

    ai_processing_status: ClassVar[str] = "completed"

    def reclassification_event(self, at: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        if not self.was_reclassified:
            return None
        return {
            "from": self.original_category,
            "to": self.category,
            "confidence": self.confidence,
            "timestamp": (at or utcnow()).isoformat(),
            "reason": "AI_VISION_ANALYSIS",
        }


@dataclass(frozen=True)
class FallbackFailure(_Fused):
    error: str = ""

    ai_processing_status: ClassVar[str] = "partial_failure"


ClassificationResult = Union[TextOnly, TextPlusImage, FallbackFailure]

ImageOutcome = Union[None, ImageClassification, ClassificationFailure]


def _text_details(text: TextEstimate) -> Dict[str, Any]:
    return {
        "text_analysis": {
            "category": text.category,
            "confidence": text.confidence,
            "severity_level": text.severity_level,
            "priority_level": text.priority_level,
            **text.details,
        },
    }


def fuse(text: TextEstimate, image_outcome: ImageOutcome = None) -> ClassificationResult:
    details = _text_details(text)

    if isinstance(image_outcome, ClassificationFailure):
        error = f"{type(image_outcome).__name__}: {image_outcome}"
        details["image_analysis"] = {"used_vision": False, "error": error}
        details["final_decision"] = {"method": "text_fallback", "final_confidence": text.confidence}
        logger.warning(f"[Fusion] image analysis failed, using text estimate ({error})")
        return FallbackFailure(
            original_category=text.original_category,
            category=text.category,
            confidence=text.confidence,
            severity_level=text.severity_level,
            priority=text.priority_level,
            needs_review=True,
            was_reclassified=False,
            explanation="Image analysis failed - using description and keywords",
            details=details,
            error=error,
        )

    if image_outcome is None:
        details["final_decision"] = {"method": "text_only", "final_confidence": text.confidence}
        return TextOnly(
            original_category=text.original_category,
            category=text.category,
            confidence=text.confidence,
            severity_level=text.severity_level,
            priority=text.priority_level,
            needs_review=text.confidence < REVIEW_CONFIDENCE_THRESHOLD,
            was_reclassified=False,
            explanation="Classification based on description and keywords only",
            details=details,
        )

    image = image_outcome
    confidence = min(MAX_CONFIDENCE, max(text.confidence, image.confidence))
    was_reclassified = (
        image.category != text.original_category
        and text.original_category not in _NON_COMMITTAL
    )

    details["image_analysis"] = {
        "used_vision": True,
        "image_category": image.category,
        "image_confidence": image.confidence,
        "explanation": image.explanation,
    }
    details["final_decision"] = {"method": "image_priority", "final_confidence": confidence}

    if was_reclassified:
        logger.info(
            f"[Fusion] category reclassified: {text.original_category} -> {image.category} "
            f"({round(confidence * 100)}% confidence)"
        )

    explanation = f"Image Analysis: {image.explanation}" if image.explanation else "Image analysis completed"

    return TextPlusImage(
        original_category=text.original_category,
        category=image.category,
        confidence=confidence,
        severity_level=text.severity_level,
        priority=text.priority_level,
        needs_review=confidence < REVIEW_CONFIDENCE_THRESHOLD,
        was_reclassified=was_reclassified,
        explanation=explanation,
        details=details,
        image=image,
    )


def classify_issue(
    category: Optional[str],
    description: str,
    address: Optional[str],
    images: Sequence[ImagePayload],
    oracle: Optional[OracleClient],
) -> ClassificationResult:
    """
    Text estimate, then (first image only) the oracle, then fuse.
    Oracle failures end up as FallbackFailure, never as an exception.
    """
    text = classify_text(category, description, address, image_count=len(images))

    if not images or oracle is None:
        if images:
            logger.info("[Fusion] images attached but no oracle configured - text only")
        return fuse(text, None)

    try:
        outcome: ImageOutcome = oracle.classify_image(images[0])
    except ClassificationFailure as e:
        outcome = e
    except Exception as e:
        logger.error(f"[Fusion] unexpected oracle error: {type(e).__name__}: {e}")
        outcome = ClassificationFailure(f"{type(e).__name__}: {e}")

    return fuse(text, outcome)
