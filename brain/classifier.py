# brain/classifier.py
# -*- coding: utf-8 -*-
"""
Keyword-based (text) issue classification.

Role
----
- classify_text(category, description, address, image_count):
    verifies the citizen-chosen category against description keywords,
    estimates severity from indicator words and derives a priority from
    severity + location importance.

Notes
-----
- This is the text signal only. The image signal comes from the vision
  oracle (brain.llm_client) and both are merged in brain.fusion.
- The description only overrides the citizen category when the keyword
  evidence is strong (confidence > 0.7, i.e. two or more hits).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

from core.config import MAX_CONFIDENCE
from .utils_text import normalize, matching_keywords

Severity = Literal["low", "medium", "high", "critical"]

CATEGORIES = (
    "pothole",
    "garbage",
    "water",
    "streetlight",
    "traffic",
    "sidewalk",
    "graffiti",
    "other",
)

SEVERITY_LEVELS = ("low", "medium", "high", "critical")

# ------------------------------------------------------------
# 1. Category keywords
# ------------------------------------------------------------

CATEGORY_KEYWORDS: Dict[str, List[str]] = {
    "pothole": ["pothole", "road", "street", "asphalt", "pavement", "hole", "crack", "broken road"],
    "garbage": ["garbage", "trash", "waste", "litter", "dumping", "refuse", "rubbish", "overflowing bin"],
    "water": ["water", "leak", "pipe", "burst", "flooding", "sewage", "drain", "plumbing", "overflow"],
    "streetlight": ["streetlight", "lamp", "lighting", "bulb", "dark", "light post", "illumination"],
    "traffic": ["traffic", "signal", "sign", "intersection", "road sign", "traffic light", "crossing"],
    "graffiti": ["graffiti", "vandalism", "spray paint", "defacement", "tagging"],
    "sidewalk": ["sidewalk", "footpath", "walkway", "pavement", "curb", "pedestrian"],
}

# ------------------------------------------------------------
# 2. Severity indicators
# ------------------------------------------------------------

SEVERITY_INDICATORS: Dict[str, List[str]] = {
    "critical": ["emergency", "danger", "urgent", "immediate", "safety", "hazard", "risk", "accident"],
    "high": ["major", "serious", "significant", "large", "multiple", "blocking", "impassable"],
    "medium": ["moderate", "noticeable", "concerning", "regular", "typical"],
    "low": ["minor", "small", "cosmetic", "slight", "minimal"],
}

# ------------------------------------------------------------
# 3. Location importance (address phrases)
# ------------------------------------------------------------

LOCATION_IMPORTANCE: Dict[str, str] = {
    "main road": "high",
    "highway": "critical",
    "school zone": "high",
    "hospital area": "critical",
    "commercial district": "high",
    "residential area": "medium",
    "park": "low",
}

_LEVEL_WEIGHT = {"low": 1, "medium": 2, "high": 3, "critical": 4}

DESCRIPTION_OVERRIDE_CONFIDENCE = 0.7
IMAGE_PRESENCE_BOOST = 0.1


@dataclass(frozen=True)
class TextEstimate:
    """Result of the keyword classifier."""

    original_category: str
    category: str
    confidence: float
    severity_level: Severity = "medium"
    priority_level: Severity = "medium"
    severity_indicators: List[Dict[str, Any]] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)


def normalize_category(category: Optional[str]) -> str:
    c = (category or "").strip().lower()
    return c if c in CATEGORIES else "other"


def severity_order(level: str) -> int:
    return _LEVEL_WEIGHT.get(level, 2)


# ------------------------------------------------------------
# 4. Analysis steps
# ------------------------------------------------------------

def analyze_description(description: str, category: str) -> Dict[str, Any]:
    """Keyword hits per category, suggested category and severity indicators."""
    analysis: Dict[str, Any] = {
        "keyword_matches": {},
        "severity_indicators": [],
        "suggested_category": category,
        "confidence": 0.5,
    }

    norm = normalize(description)
    if not norm:
        return analysis

    max_matches = 0
    best_category = category
    for cat, keywords in CATEGORY_KEYWORDS.items():
        hits = len(matching_keywords(norm, keywords))
        analysis["keyword_matches"][cat] = hits
        if hits > max_matches:
            max_matches = hits
            best_category = cat

    if max_matches > 0:
        analysis["confidence"] = min(0.9, 0.5 + max_matches * 0.2)
        analysis["suggested_category"] = best_category

    for level, indicators in SEVERITY_INDICATORS.items():
        found = matching_keywords(norm, indicators)
        if found:
            analysis["severity_indicators"].append({"level": level, "indicators": found})

    return analysis


def analyze_location(address: Optional[str]) -> Dict[str, Any]:
    analysis = {
        "importance": "medium",
        "area_type": "unknown",
        "priority_boost": False,
    }

    addr = (address or "").lower()
    for area_type, importance in LOCATION_IMPORTANCE.items():
        if area_type in addr:
            analysis["area_type"] = area_type
            analysis["importance"] = importance
            if importance in ("high", "critical"):
                analysis["priority_boost"] = True

    return analysis


def calculate_priority(severity: str, location_importance: str, priority_boost: bool) -> Severity:
    """severity weight + location weight (+1 boost) -> priority band."""
    score = _LEVEL_WEIGHT[severity] + _LEVEL_WEIGHT[location_importance]
    if priority_boost:
        score += 1

    if score <= 2:
        return "low"
    if score <= 4:
        return "medium"
    if score <= 6:
        return "high"
    return "critical"


# ------------------------------------------------------------
# 5. Main entry point
# ------------------------------------------------------------

def classify_text(
    category: Optional[str],
    description: str,
    address: Optional[str] = None,
    image_count: int = 0,
) -> TextEstimate:
    """
    Text-only estimate of category / confidence / severity / priority.

    Steps
    -----
    1) keyword hits decide a suggested category
    2) the suggestion replaces the citizen category only above 0.7
    3) attached images add a small confidence boost
    4) highest severity indicator wins (default medium)
    5) priority = severity + location importance
    """
    original = normalize_category(category)
    desc = analyze_description(description, original)
    loc = analyze_location(address)

    final_category = original
    confidence = 0.5

    # strong keyword evidence either confirms or replaces the citizen choice
    if desc["confidence"] > DESCRIPTION_OVERRIDE_CONFIDENCE:
        final_category = desc["suggested_category"]
        confidence = desc["confidence"]

    if image_count > 0:
        confidence += IMAGE_PRESENCE_BOOST

    severity: Severity = "medium"
    if desc["severity_indicators"]:
        top = max(desc["severity_indicators"], key=lambda s: severity_order(s["level"]))
        severity = top["level"]

    priority = calculate_priority(severity, loc["importance"], loc["priority_boost"])
    confidence = round(min(MAX_CONFIDENCE, confidence), 2)

    return TextEstimate(
        original_category=original,
        category=final_category,
        confidence=confidence,
        severity_level=severity,
        priority_level=priority,
        severity_indicators=desc["severity_indicators"],
        details={
            "description_analysis": desc,
            "location_analysis": loc,
            "image_count": image_count,
        },
    )
