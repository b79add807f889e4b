# -*- coding: utf-8 -*-
"""
brain.llm_client

Classification oracle client: the single choke point for every call to the
external vision classifier ("what is in this picture?" and "do these two
pictures show the same issue?").

- ImagePayload: image bytes + declared MIME type
- VisionOracle: transport protocol, classify(images, prompt) -> raw text
- OpenAIVisionOracle: default transport on the OpenAI Chat API (vision input)
- SlidingWindowRateLimiter: process-wide request cap per 60s window;
  blocks the caller until there is room instead of failing
- RetryPolicy: max attempts, exponential backoff, retryable-error predicate
- OracleClient: rate limit + retry around a transport, parses the answer
  into ImageClassification / ImageComparison

The pipeline builds exactly one rate limiter per application and passes it
into every OracleClient it creates.
"""

from __future__ import annotations

import base64
import json
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Optional, Protocol, Sequence

import openai
from openai import OpenAI

from core.config import (
    OPENAI_API_KEY,
    ORACLE_MODEL,
    ORACLE_TEMPERATURE,
    ORACLE_RPM_LIMIT,
    ORACLE_WINDOW_SECONDS,
    ORACLE_TIMEOUT_SECONDS,
    ORACLE_MAX_RETRIES,
    ORACLE_BASE_DELAY,
)
from core.errors import (
    ClassificationFailure,
    RateLimited,
    OracleTimeout,
    ServiceUnavailable,
    InternalOracleError,
    PermissionDenied,
    QuotaExceeded,
    OracleParseError,
)
from core.logging import logger
from .classifier import CATEGORIES


# -------------------- Prompts --------------------

CLASSIFICATION_PROMPT = """You are an expert system that analyzes civic infrastructure problems from images.

TASK: Classify this civic issue image into one of these exact categories:
- pothole: Road damage, holes in asphalt/concrete
- garbage: Waste, litter, overflowing bins, illegal dumping
- water: Leaks, flooding, broken pipes, drainage issues
- streetlight: Broken lights, missing bulbs, electrical issues
- traffic: Traffic signals, road signs, traffic-related problems
- sidewalk: Sidewalk damage, cracks, accessibility issues
- graffiti: Vandalism, spray paint, unauthorized markings

RESPONSE FORMAT (JSON only):
{"category": "exact_category_name", "confidence": 0.XX, "explanation": "What you see in 10-15 words"}

Confidence: 0.9+ very clear, 0.7-0.8 clear, 0.5-0.6 somewhat clear, <0.5 unclear.
If unclear, choose the closest match with lower confidence."""

COMPARISON_PROMPT = """You are analyzing civic issue images.

Compare Image A (first image) and Image B (second image).
Determine if they show the SAME physical real-world issue (the same garbage pile,
the same pothole, the same damaged object), even from different angles or lighting.

Respond ONLY with JSON:
{"is_same_issue": true or false, "confidence": 0.0 to 1.0, "reason": "short one-line explanation"}"""

# Common names the model uses instead of ours
CATEGORY_SYNONYMS = {
    "trash": "garbage",
    "waste": "garbage",
    "litter": "garbage",
    "rubbish": "garbage",
    "road": "pothole",
    "hole": "pothole",
    "crack": "pothole",
    "light": "streetlight",
    "lamp": "streetlight",
    "signal": "traffic",
    "sign": "traffic",
    "leak": "water",
    "flood": "water",
    "pipe": "water",
    "walkway": "sidewalk",
    "path": "sidewalk",
    "pavement": "sidewalk",
    "vandalism": "graffiti",
    "paint": "graffiti",
}

MAX_EXPLANATION_CHARS = 200


# -------------------- Value types --------------------

@dataclass(frozen=True)
class ImagePayload:
    data: bytes
    mime_type: str

    def as_data_url(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"


@dataclass(frozen=True)
class ImageClassification:
    category: str
    confidence: float
    explanation: str = ""


@dataclass(frozen=True)
class ImageComparison:
    is_same_issue: bool
    confidence: float
    reason: str = ""


class VisionOracle(Protocol):
    def classify(self, images: Sequence[ImagePayload], prompt: str) -> str:
        ...


# -------------------- OpenAI transport --------------------

def _is_quota_error(exc: openai.APIStatusError) -> bool:
    code = getattr(exc, "code", None) or ""
    return code == "insufficient_quota" or "quota" in str(exc).lower()


class OpenAIVisionOracle:
    """VisionOracle on the OpenAI Chat API. SDK errors become our taxonomy."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = ORACLE_MODEL,
        timeout: float = ORACLE_TIMEOUT_SECONDS,
        temperature: float = ORACLE_TEMPERATURE,
        client: Optional[OpenAI] = None,
    ):
        if client is None:
            key = api_key or OPENAI_API_KEY
            if not key:
                raise PermissionDenied("OPENAI_API_KEY is not configured")
            # retries are owned by OracleClient
            client = OpenAI(api_key=key, max_retries=0)
        self.client = client
        self.model = model
        self.timeout = timeout
        self.temperature = temperature

    def classify(self, images: Sequence[ImagePayload], prompt: str) -> str:
        content = [{"type": "text", "text": prompt}]
        for image in images:
            content.append({"type": "image_url", "image_url": {"url": image.as_data_url()}})

        try:
            resp = self.client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": content}],
                temperature=self.temperature,
                max_tokens=256,
                timeout=self.timeout,
            )
        except openai.APITimeoutError as e:
            raise OracleTimeout(f"oracle timeout after {self.timeout}s") from e
        except openai.APIConnectionError as e:
            raise ServiceUnavailable(f"oracle unreachable: {e}") from e
        except openai.RateLimitError as e:
            if _is_quota_error(e):
                raise QuotaExceeded(str(e)) from e
            raise RateLimited(str(e)) from e
        except (openai.PermissionDeniedError, openai.AuthenticationError) as e:
            raise PermissionDenied(str(e)) from e
        except openai.InternalServerError as e:
            if e.status_code in (502, 503, 504):
                raise ServiceUnavailable(str(e)) from e
            raise InternalOracleError(str(e)) from e
        except openai.APIStatusError as e:
            raise ClassificationFailure(f"oracle rejected request ({e.status_code}): {e}") from e
        except openai.OpenAIError as e:
            raise ClassificationFailure(f"oracle call failed: {type(e).__name__}: {e}") from e

        text = resp.choices[0].message.content if resp.choices else None
        if not text:
            raise OracleParseError("Empty response from oracle")
        return text


# -------------------- Rate limiting --------------------

class SlidingWindowRateLimiter:
    """
    At most max_calls acquisitions in any window of `period` seconds.

    acquire() blocks (sleeps) until the oldest call in the window ages out.
    Thread-safe; clock and sleep are injectable for tests.
    """

    def __init__(
        self,
        max_calls: int = ORACLE_RPM_LIMIT,
        period: float = ORACLE_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_calls < 1:
            raise ValueError("max_calls must be >= 1")
        self.max_calls = max_calls
        self.period = period
        self._clock = clock
        self._sleep = sleep
        self._calls: Deque[float] = deque()
        self._lock = threading.Lock()

    def _purge(self, now: float) -> None:
        while self._calls and self._calls[0] <= now - self.period:
            self._calls.popleft()

    def acquire(self) -> float:
        """Take one slot. Returns the total seconds spent waiting."""
        waited = 0.0
        while True:
            with self._lock:
                now = self._clock()
                self._purge(now)
                if len(self._calls) < self.max_calls:
                    self._calls.append(now)
                    return waited
                wait = self.period - (now - self._calls[0])

            # sleep outside the lock so other threads can still purge/count
            logger.info(f"[Oracle] rate limit reached, waiting {wait:.1f}s")
            self._sleep(wait)
            waited += wait

    def in_window(self) -> int:
        with self._lock:
            self._purge(self._clock())
            return len(self._calls)


# -------------------- Retry policy --------------------

def is_retryable_failure(exc: BaseException) -> bool:
    return isinstance(exc, ClassificationFailure) and exc.retryable


@dataclass(frozen=True)
class RetryPolicy:
    """
    max_retries retries after the first attempt (max_retries + 1 attempts),
    waiting base_delay * multiplier**n after the n-th failed attempt.
    """

    max_retries: int = ORACLE_MAX_RETRIES
    base_delay: float = ORACLE_BASE_DELAY
    multiplier: float = 2.0
    is_retryable: Callable[[BaseException], bool] = is_retryable_failure

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay(self, attempt: int) -> float:
        return self.base_delay * (self.multiplier ** attempt)

    def should_retry(self, exc: BaseException, attempt: int) -> bool:
        return attempt < self.max_retries and self.is_retryable(exc)


# -------------------- Response parsing --------------------

def extract_json_object(text: Optional[str]) -> Dict[str, Any]:
    """
    First JSON object in a model answer.

    Tolerates ```json fences and prose before/after the object.
    """
    if not text or not text.strip():
        raise OracleParseError("Empty response from oracle")

    decoder = json.JSONDecoder()
    start = text.find("{")
    while start != -1:
        try:
            obj, _ = decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            start = text.find("{", start + 1)
            continue
        if isinstance(obj, dict):
            return obj
        start = text.find("{", start + 1)

    raise OracleParseError(f"No JSON object in oracle response: {text[:100]!r}")


def _clamp_confidence(value: Any, default: float = 0.5) -> float:
    try:
        conf = float(value)
    except (TypeError, ValueError):
        return default
    if conf != conf:  # NaN
        return default
    return max(0.0, min(1.0, conf))


def find_closest_category(name: str) -> Optional[str]:
    name = name.lower()
    for category in CATEGORIES:
        if category == "other":
            continue
        if category in name or (name and name in category):
            return category
    for keyword, category in CATEGORY_SYNONYMS.items():
        if keyword in name:
            return category
    return None


def parse_classification(text: str) -> ImageClassification:
    data = extract_json_object(text)

    raw_category = data.get("category")
    if not raw_category or data.get("confidence") is None:
        raise OracleParseError("Missing category/confidence in oracle response")

    category = str(raw_category).strip().lower()
    confidence = _clamp_confidence(data.get("confidence"))

    if category not in CATEGORIES:
        closest = find_closest_category(category)
        logger.warning(f"[Oracle] unknown category {raw_category!r} -> {closest or 'other'}")
        category = closest or "other"
        confidence = max(0.3, confidence - 0.2)

    explanation = str(data.get("explanation") or "").strip()[:MAX_EXPLANATION_CHARS]
    return ImageClassification(category=category, confidence=confidence, explanation=explanation)


def parse_comparison(text: str) -> ImageComparison:
    data = extract_json_object(text)

    same = data.get("is_same_issue", data.get("isSameIssue"))
    if same is None:
        raise OracleParseError("Missing is_same_issue in oracle response")
    if isinstance(same, str):
        same = same.strip().lower() == "true"

    return ImageComparison(
        is_same_issue=bool(same),
        confidence=_clamp_confidence(data.get("confidence"), default=0.0),
        reason=str(data.get("reason") or "").strip()[:MAX_EXPLANATION_CHARS],
    )


# -------------------- Client --------------------

class OracleClient:
    """Rate-limited, retrying front for a VisionOracle transport."""

    def __init__(
        self,
        oracle: VisionOracle,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.oracle = oracle
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter()
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    def _call(self, images: Sequence[ImagePayload], prompt: str, purpose: str) -> str:
        attempt = 0
        while True:
            self.rate_limiter.acquire()
            logger.debug(
                f"[Oracle] {purpose} attempt {attempt + 1}/{self.retry_policy.max_attempts}"
            )
            try:
                return self.oracle.classify(images, prompt)
            except ClassificationFailure as exc:
                if not self.retry_policy.should_retry(exc, attempt):
                    logger.error(
                        f"[Oracle] {purpose} failed permanently after {attempt + 1} attempt(s): "
                        f"{type(exc).__name__}: {exc}"
                    )
                    raise
                delay = self.retry_policy.delay(attempt)
                logger.warning(
                    f"[Oracle] {purpose} attempt {attempt + 1} failed "
                    f"({type(exc).__name__}), retrying in {delay:.1f}s"
                )
                self._sleep(delay)
                attempt += 1

    def classify_image(self, image: ImagePayload) -> ImageClassification:
        raw = self._call([image], CLASSIFICATION_PROMPT, "classify")
        return parse_classification(raw)

    def compare_images(self, image_a: ImagePayload, image_b: ImagePayload) -> ImageComparison:
        raw = self._call([image_a, image_b], COMPARISON_PROMPT, "compare")
        return parse_comparison(raw)


def build_oracle_client(
    rate_limiter: Optional[SlidingWindowRateLimiter] = None,
) -> Optional[OracleClient]:
    """
    OracleClient on the OpenAI transport, or None when no API key is set
    (the pipeline then runs text-only).
    """
    if not OPENAI_API_KEY:
        logger.warning("OPENAI_API_KEY not set - image classification runs in fallback mode")
        return None

    return OracleClient(
        OpenAIVisionOracle(),
        rate_limiter=rate_limiter or SlidingWindowRateLimiter(),
    )
