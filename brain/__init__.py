# -*- coding: utf-8 -*-
"""
brain package

Decision logic of the civic issue pipeline. Nothing in here talks to the
database directly; storage goes through db.repository and is wired together
in services.issue_service.

- utils_text  : normalization / token helpers
- similarity  : haversine distance, Jaccard, description similarity
- classifier  : keyword-based category / severity / priority estimate
- llm_client  : vision oracle client (rate limit, retry, response parsing)
- fusion      : text estimate + image estimate -> ClassificationResult
- duplicates  : nearby duplicate detection (text + image)
- routing     : category -> department, ward, assignee, SLA deadline
- lifecycle   : status state machine
- escalation  : SLA escalation rules
- eta         : resolution time estimate
"""

from .classifier import classify_text
from .fusion import classify_issue, fuse
from .lifecycle import plan_transition, can_transition

__all__ = ["classify_text", "classify_issue", "fuse", "plan_transition", "can_transition"]
