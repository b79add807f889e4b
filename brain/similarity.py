# -*- coding: utf-8 -*-
"""
brain.similarity

Pure similarity functions used by duplicate detection.

- haversine_m(lat1, lng1, lat2, lng2): great-circle distance in meters
- jaccard(a, b): |a & b| / |a | b| over token sets
- text_similarity(desc1, desc2): jaccard over significant description tokens
"""

from __future__ import annotations

import math
from typing import AbstractSet

from .utils_text import significant_tokens

EARTH_RADIUS_M = 6371e3


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """
    Great-circle distance between two lat/lng points in meters.
    Uses the Haversine formula.
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlmb = math.radians(lng2 - lng1)

    a = (math.sin(dphi / 2) ** 2 +
         math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_M * c


def jaccard(a: AbstractSet[str], b: AbstractSet[str]) -> float:
    """Jaccard index. Two empty sets are identical (1.0)."""
    if not a and not b:
        return 1.0
    union = len(a | b)
    return len(a & b) / union


def text_similarity(desc1: str, desc2: str) -> float:
    """
    Similarity of two descriptions in [0, 1].

    A missing description or one without significant tokens never
    counts as similar.
    """
    if not desc1 or not desc2:
        return 0.0

    tokens1 = significant_tokens(desc1)
    tokens2 = significant_tokens(desc2)
    if not tokens1 or not tokens2:
        return 0.0

    return jaccard(tokens1, tokens2)
