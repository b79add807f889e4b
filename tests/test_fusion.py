import pytest

from brain.classifier import classify_text
from brain.fusion import FallbackFailure, TextOnly, TextPlusImage, classify_issue, fuse
from brain.llm_client import ImageClassification
from core.errors import QuotaExceeded

from conftest import make_oracle_client


def test_no_image_gives_text_only():
    text = classify_text("garbage", "something smells here")
    result = fuse(text, None)

    assert isinstance(result, TextOnly)
    assert result.ai_processing_status == "text_only"
    assert result.category == "garbage"
    assert result.needs_review is True  # 0.5 < 0.6
    assert result.was_reclassified is False
    assert "text_analysis" in result.details


def test_image_category_wins_and_marks_reclassified():
    text = classify_text("garbage", "something smells here", image_count=1)
    image = ImageClassification("pothole", 0.92, "Large hole in asphalt")
    result = fuse(text, image)

    assert isinstance(result, TextPlusImage)
    assert result.ai_processing_status == "completed"
    assert result.category == "pothole"
    assert result.original_category == "garbage"
    assert result.was_reclassified is True
    assert result.confidence == pytest.approx(0.92)
    assert result.needs_review is False
    assert result.details["image_analysis"]["image_category"] == "pothole"

    event = result.reclassification_event()
    assert event["from"] == "garbage" and event["to"] == "pothole"


def test_confidence_is_clamped():
    text = classify_text("pothole", "deep pothole in the asphalt, a real hole")
    result = fuse(text, ImageClassification("pothole", 1.0, ""))
    assert result.confidence == 0.95
    assert result.was_reclassified is False


def test_other_category_is_never_reclassified():
    text = classify_text("other", "not sure what this is")
    result = fuse(text, ImageClassification("water", 0.8, "puddle"))
    assert result.category == "water"
    assert result.was_reclassified is False
    assert result.reclassification_event() is None


def test_low_image_confidence_needs_review():
    text = classify_text("water", "hmm")
    result = fuse(text, ImageClassification("water", 0.4, "blurry"))
    assert result.confidence == 0.5
    assert result.needs_review is True


def test_oracle_failure_falls_back_to_text():
    text = classify_text("water", "burst pipe leak")
    result = fuse(text, QuotaExceeded("billing"))

    assert isinstance(result, FallbackFailure)
    assert result.ai_processing_status == "partial_failure"
    assert result.needs_review is True
    assert result.category == "water"
    assert "QuotaExceeded" in result.error
    assert result.details["image_analysis"]["used_vision"] is False


def test_classify_issue_never_raises_on_oracle_failure(jpeg_payload):
    client, oracle, _ = make_oracle_client([QuotaExceeded("billing")])
    result = classify_issue("garbage", "bags everywhere", None, [jpeg_payload], client)
    assert isinstance(result, FallbackFailure)
    assert len(oracle.calls) == 1


def test_classify_issue_without_oracle_is_text_only(jpeg_payload):
    result = classify_issue("garbage", "bags everywhere", None, [jpeg_payload], None)
    assert isinstance(result, TextOnly)
