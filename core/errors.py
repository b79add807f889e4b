# core/errors.py
# -*- coding: utf-8 -*-
"""
Error taxonomy of the issue pipeline.

Propagation
-----------
- ClassificationFailure / DuplicateCheckFailure:
    raised by the oracle client and the duplicate candidate lookup, always
    caught inside the pipeline and turned into a degraded-but-valid result.
- InvalidTransition / MissingResolutionProof / ConcurrencyConflict:
    surfaced to the caller unchanged; the issue is left as it was.
- AssignmentFailure:
    the issue is still created, but unassigned and with a priority bump.
"""

from typing import Optional


class CivicPipelineError(Exception):
    """Base class for every error raised by the pipeline."""


class ValidationError(CivicPipelineError):
    """Malformed input, rejected before entering the pipeline."""


# ------------------------------------------------------------
# Classification oracle
# ------------------------------------------------------------

class ClassificationFailure(CivicPipelineError):
    """The vision oracle could not produce a usable answer."""

    retryable = False


class RateLimited(ClassificationFailure):
    """Provider answered with resource-exhausted / 429."""

    retryable = True


class OracleTimeout(ClassificationFailure):
    retryable = True


class ServiceUnavailable(ClassificationFailure):
    retryable = True


class InternalOracleError(ClassificationFailure):
    retryable = True


class PermissionDenied(ClassificationFailure):
    """Invalid key or insufficient permissions. Never retried."""


class QuotaExceeded(ClassificationFailure):
    """Billing quota used up. Never retried."""


class OracleParseError(ClassificationFailure):
    """Response contained no parseable JSON object."""


class DuplicateCheckFailure(CivicPipelineError):
    """Duplicate candidates could not be loaded; treated as "no duplicate"."""


# ------------------------------------------------------------
# Lifecycle / storage
# ------------------------------------------------------------

class InvalidTransition(CivicPipelineError):
    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Invalid status transition from {current} to {target}")


class MissingResolutionProof(CivicPipelineError):
    def __init__(self, issue_id: Optional[str] = None):
        self.issue_id = issue_id
        super().__init__(
            "Resolution proof image is required to mark an issue as resolved"
        )


class AssignmentFailure(CivicPipelineError):
    """No active department exists for the category."""


class ConcurrencyConflict(CivicPipelineError):
    """Optimistic precondition failed; caller must re-fetch and retry."""

    def __init__(self, issue_id: str, expected_status: Optional[str] = None):
        self.issue_id = issue_id
        self.expected_status = expected_status
        detail = f" (expected status {expected_status})" if expected_status else ""
        super().__init__(f"Issue {issue_id} was modified concurrently{detail}")


class IssueNotFound(CivicPipelineError):
    def __init__(self, issue_id: str):
        self.issue_id = issue_id
        super().__init__(f"Issue {issue_id} not found")


class FeedbackNotAllowed(CivicPipelineError):
    pass
