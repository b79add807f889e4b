from brain.classifier import calculate_priority, classify_text, normalize_category


def test_citizen_category_kept_without_strong_evidence():
    est = classify_text("garbage", "something is wrong here")
    assert est.original_category == "garbage"
    assert est.category == "garbage"
    assert est.confidence == 0.5
    assert est.severity_level == "medium"
    assert est.priority_level == "medium"


def test_strong_keyword_evidence_replaces_category():
    # pothole, asphalt, hole -> 3 hits -> 0.9 confidence
    est = classify_text("graffiti", "deep pothole in the asphalt, a real hole")
    assert est.category == "pothole"
    assert est.confidence == 0.9


def test_image_presence_boost_is_capped():
    est = classify_text("pothole", "deep pothole in the asphalt, a real hole", image_count=2)
    assert est.confidence == 0.95


def test_unknown_category_normalized_to_other():
    assert normalize_category("spaceship") == "other"
    assert normalize_category(None) == "other"
    assert normalize_category(" Water ") == "water"


def test_severity_and_location_drive_priority():
    est = classify_text("water", "burst pipe, this is an emergency", address="Hospital area, 5th Ave")
    assert est.severity_level == "critical"
    assert est.priority_level == "critical"
    assert est.details["location_analysis"]["area_type"] == "hospital area"


def test_calculate_priority_bands():
    assert calculate_priority("low", "low", False) == "low"
    assert calculate_priority("medium", "medium", False) == "medium"
    assert calculate_priority("high", "medium", True) == "high"
    assert calculate_priority("critical", "high", True) == "critical"
