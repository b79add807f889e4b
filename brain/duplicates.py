# brain/duplicates.py
# -*- coding: utf-8 -*-
"""
Duplicate report detection.

Role
----
- DuplicateDetector.check(...): is a new report the same physical problem as
  a recently reported open issue nearby?

Flow
----
1) geo filter      : candidates within DUPLICATE_RADIUS_METERS (both paths)
2) text path       : Jaccard over description tokens >= DUPLICATE_MIN_SIMILARITY
3) image path      : first image vs. each candidate's first image, through the
                     oracle, for at most DUPLICATE_MAX_IMAGE_COMPARISONS
                     candidates; a "same issue" verdict needs
                     DUPLICATE_IMAGE_CONFIDENCE
4) verdict         : either path fires -> duplicate; if both fire, the higher
                     confidence decides which issue we point at

Candidate selection (same category, last 24h, not closed/rejected) is done by
the caller (IssueRepository.duplicate_candidates).
Nothing in here ever blocks issue creation: any failure means "no duplicate".
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from core.config import (
    DUPLICATE_RADIUS_METERS,
    DUPLICATE_MIN_SIMILARITY,
    DUPLICATE_MAX_IMAGE_COMPARISONS,
    DUPLICATE_IMAGE_CONFIDENCE,
)
from core.errors import ClassificationFailure, PermissionDenied, QuotaExceeded
from core.logging import logger
from .llm_client import ImagePayload, OracleClient
from .similarity import haversine_m, text_similarity


@dataclass(frozen=True)
class DuplicateCandidate:
    issue_id: str
    description: str
    latitude: Optional[float]
    longitude: Optional[float]
    image_ref: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class DuplicateVerdict:
    is_duplicate: bool
    duplicate_of_issue_id: Optional[str] = None
    confidence: float = 0.0
    method: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


def no_duplicate(**details: Any) -> DuplicateVerdict:
    return DuplicateVerdict(is_duplicate=False, details=dict(details))


class DuplicateDetector:
    def __init__(
        self,
        oracle: Optional[OracleClient] = None,
        load_image: Optional[Callable[[str], Optional[ImagePayload]]] = None,
        radius_m: float = DUPLICATE_RADIUS_METERS,
        min_similarity: float = DUPLICATE_MIN_SIMILARITY,
        max_image_comparisons: int = DUPLICATE_MAX_IMAGE_COMPARISONS,
        image_confidence: float = DUPLICATE_IMAGE_CONFIDENCE,
    ):
        self.oracle = oracle
        self.load_image = load_image
        self.radius_m = radius_m
        self.min_similarity = min_similarity
        self.max_image_comparisons = max_image_comparisons
        self.image_confidence = image_confidence

    # ------------------------------------------------------------
    # public
    # ------------------------------------------------------------

    def check(
        self,
        description: str,
        latitude: Optional[float],
        longitude: Optional[float],
        images: Sequence[ImagePayload],
        candidates: Sequence[DuplicateCandidate],
    ) -> DuplicateVerdict:
        try:
            return self._check(description, latitude, longitude, images, candidates)
        except Exception as e:
            logger.error(f"[Duplicates] check failed, treating as not duplicate: {e}")
            return no_duplicate(error=str(e))

    # ------------------------------------------------------------
    # steps
    # ------------------------------------------------------------

    def nearby(
        self,
        latitude: Optional[float],
        longitude: Optional[float],
        candidates: Sequence[DuplicateCandidate],
    ) -> List[Tuple[DuplicateCandidate, float]]:
        """Candidates inside the radius, closest first."""
        if latitude is None or longitude is None:
            return []

        found = []
        for cand in candidates:
            if cand.latitude is None or cand.longitude is None:
                continue
            dist = haversine_m(latitude, longitude, cand.latitude, cand.longitude)
            if dist <= self.radius_m:
                found.append((cand, dist))

        found.sort(key=lambda pair: pair[1])
        return found

    def text_match(
        self, description: str, nearby: Sequence[Tuple[DuplicateCandidate, float]]
    ) -> Optional[Tuple[DuplicateCandidate, float]]:
        best: Optional[Tuple[DuplicateCandidate, float]] = None
        for cand, _dist in nearby:
            sim = text_similarity(description, cand.description)
            if sim >= self.min_similarity and (best is None or sim > best[1]):
                best = (cand, sim)
        return best

    def image_match(
        self, image: ImagePayload, nearby: Sequence[Tuple[DuplicateCandidate, float]]
    ) -> Optional[Tuple[DuplicateCandidate, float, str]]:
        if self.oracle is None or self.load_image is None:
            return None

        with_images = [cand for cand, _ in nearby if cand.image_ref][: self.max_image_comparisons]
        best: Optional[Tuple[DuplicateCandidate, float, str]] = None

        for cand in with_images:
            try:
                other = self.load_image(cand.image_ref)
            except OSError as e:
                logger.warning(f"[Duplicates] cannot load image of {cand.issue_id}: {e}")
                continue
            if other is None:
                continue

            try:
                cmp = self.oracle.compare_images(image, other)
            except (PermissionDenied, QuotaExceeded) as e:
                logger.error(f"[Duplicates] image comparison disabled: {type(e).__name__}: {e}")
                break
            except ClassificationFailure as e:
                logger.warning(f"[Duplicates] comparison with {cand.issue_id} failed: {e}")
                continue

            if not cmp.is_same_issue or cmp.confidence < self.image_confidence:
                continue
            if best is None or cmp.confidence > best[1]:
                best = (cand, cmp.confidence, cmp.reason)

        return best

    def _check(
        self,
        description: str,
        latitude: Optional[float],
        longitude: Optional[float],
        images: Sequence[ImagePayload],
        candidates: Sequence[DuplicateCandidate],
    ) -> DuplicateVerdict:
        nearby = self.nearby(latitude, longitude, candidates)
        if not nearby:
            return no_duplicate(candidates=len(candidates), nearby=0)

        distances = {cand.issue_id: round(dist, 1) for cand, dist in nearby}
        text_hit = self.text_match(description, nearby)
        image_hit = self.image_match(images[0], nearby) if images else None

        details: Dict[str, Any] = {"candidates": len(candidates), "nearby": len(nearby)}
        if text_hit:
            details["text_match"] = {"issue_id": text_hit[0].issue_id, "similarity": round(text_hit[1], 3)}
        if image_hit:
            details["image_match"] = {
                "issue_id": image_hit[0].issue_id,
                "confidence": image_hit[1],
                "reason": image_hit[2],
            }

        if text_hit is None and image_hit is None:
            return DuplicateVerdict(is_duplicate=False, details=details)

        if image_hit is not None and (text_hit is None or image_hit[1] >= text_hit[1]):
            cand, confidence, method = image_hit[0], image_hit[1], "image"
        else:
            cand, confidence, method = text_hit[0], text_hit[1], "text"

        details["distance_m"] = distances[cand.issue_id]
        logger.info(
            f"[Duplicates] duplicate of {cand.issue_id} via {method} "
            f"({confidence:.2f}, {details['distance_m']}m)"
        )
        return DuplicateVerdict(
            is_duplicate=True,
            duplicate_of_issue_id=cand.issue_id,
            confidence=round(confidence, 3),
            method=method,
            details=details,
        )
