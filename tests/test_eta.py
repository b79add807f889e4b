from datetime import timedelta

import pytest

from brain.eta import estimate_hours, estimate_resolution_time, mean_resolution_hours
from db.repository import IssueRepository
from services.eta_service import EtaService

from conftest import T0


@pytest.mark.parametrize("base", [12, 24, 48, 72, 168])
@pytest.mark.parametrize("open_count", [0, 1, 10, 500])
@pytest.mark.parametrize("hist", [None, 0.0, 0.1, 5.0, 100.0, 10000.0])
def test_eta_always_within_bounds(base, open_count, hist):
    hours = estimate_hours(base, open_count, hist)
    assert 1.0 <= hours <= 2 * base


def test_eta_without_history_is_base_plus_load():
    assert estimate_hours(24, 3, None) == 27.0


def test_eta_blends_history():
    # 0.6 * 10 + 0.4 * (24 + 2)
    assert estimate_hours(24, 2, 10.0) == pytest.approx(16.4)


def test_zero_history_ignored():
    assert estimate_hours(24, 0, 0.0) == 24.0


def test_mean_resolution_hours_skips_incomplete_rows():
    rows = [
        (T0, T0 + timedelta(hours=10)),
        (T0, T0 + timedelta(hours=20)),
        (T0, None),
    ]
    assert mean_resolution_hours(rows) == 15.0
    assert mean_resolution_hours([]) is None


def test_estimate_resolution_time_uses_category_sla():
    assert estimate_resolution_time("water", 0, None, T0) == T0 + timedelta(hours=12)
    assert estimate_resolution_time("water", 100, None, T0) == T0 + timedelta(hours=24)


def test_eta_service_reads_load_and_history(pipeline, db, wall_clock):
    from services.issue_service import IssueSubmission

    issue = pipeline.create_issue(IssueSubmission(
        description="big pothole on the street",
        category="pothole",
        latitude=40.75,
        longitude=-74.01,
    ))
    service = EtaService(IssueRepository(db))
    eta = service.estimate("pothole", issue.assigned_department_id, wall_clock.now)

    # one open ROADS issue, no resolved history: 48 + 1
    assert eta == wall_clock.now + timedelta(hours=49)
