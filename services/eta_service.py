# services/eta_service.py
# -*- coding: utf-8 -*-
"""
ETA estimator: department load + resolution history from storage,
formula in brain.eta.
"""

from datetime import datetime
from typing import Optional

from brain.eta import estimate_resolution_time, mean_resolution_hours
from brain.lifecycle import OPEN_STATUSES
from core.config import ETA_HISTORY_LIMIT
from core.logging import logger
from db.repository import IssueRepository


class EtaService:
    def __init__(self, issues: IssueRepository, history_limit: int = ETA_HISTORY_LIMIT):
        self.issues = issues
        self.history_limit = history_limit

    def estimate(self, category: Optional[str], department_id: Optional[int], now: datetime) -> datetime:
        open_count = 0
        historical = None

        if department_id is not None:
            open_count = self.issues.count_open_by_department(department_id, OPEN_STATUSES)
            historical = mean_resolution_hours(
                self.issues.recent_resolutions(department_id, self.history_limit)
            )

        eta = estimate_resolution_time(category, open_count, historical, now)
        logger.debug(
            f"[ETA] {category} dept={department_id} open={open_count} "
            f"hist={historical if historical is None else round(historical, 1)}h -> {eta.isoformat()}"
        )
        return eta
