# routers/issues.py
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from core.errors import (
    AssignmentFailure,
    CivicPipelineError,
    ConcurrencyConflict,
    FeedbackNotAllowed,
    InvalidTransition,
    IssueNotFound,
    MissingResolutionProof,
    ValidationError,
)
from core.logging import logger
from db.session import get_db
from services.image_store import ImageStore
from services.issue_service import IssuePipeline, IssueSubmission, serialize_issue


class IssueCreate(BaseModel):
    description: str = Field(..., min_length=1, examples=["Huge pothole in front of the school"])
    category: Optional[str] = Field(default=None, examples=["pothole"])
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    address: Optional[str] = None
    ward: Optional[str] = None
    images: List[str] = Field(default_factory=list, description="references returned by /issues/uploads")
    citizen_name: Optional[str] = None
    citizen_email: Optional[str] = None
    citizen_phone: Optional[str] = None


Status = Literal["submitted", "assigned", "in_progress", "resolved", "closed", "rejected"]


class StatusUpdate(BaseModel):
    status: Status
    actor: Optional[str] = None
    notes: Optional[str] = None
    resolution_images: List[str] = Field(default_factory=list)
    resolved_by_user_id: Optional[int] = None


class ReassignRequest(BaseModel):
    department_id: int
    user_id: Optional[int] = None
    actor: Optional[str] = None
    reason: Optional[str] = None


class FeedbackRequest(BaseModel):
    citizen_email: str
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None


router = APIRouter(prefix="/issues", tags=["issues"])


def get_image_store(request: Request) -> ImageStore:
    store = getattr(request.app.state, "image_store", None)
    return store or ImageStore()


def get_pipeline(request: Request, db: Session = Depends(get_db)) -> IssuePipeline:
    return IssuePipeline(
        db,
        oracle=getattr(request.app.state, "oracle_client", None),
        image_store=get_image_store(request),
    )


def to_http_error(exc: CivicPipelineError) -> HTTPException:
    if isinstance(exc, IssueNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ConcurrencyConflict):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, FeedbackNotAllowed):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, (InvalidTransition, MissingResolutionProof, ValidationError, AssignmentFailure)):
        return HTTPException(status_code=400, detail=str(exc))

    logger.error(f"[API] unexpected pipeline error: {exc}")
    return HTTPException(status_code=500, detail=str(exc))


@router.post("", status_code=201, summary="Report a civic issue")
def create_issue(payload: IssueCreate, pipeline: IssuePipeline = Depends(get_pipeline)):
    try:
        issue = pipeline.create_issue(IssueSubmission(**payload.model_dump()))
    except CivicPipelineError as e:
        raise to_http_error(e)
    return serialize_issue(issue)


@router.post("/uploads", status_code=201, summary="Upload an issue / resolution image")
async def upload_image(request: Request):
    try:
        form = await request.form()
    except Exception as e:
        raise HTTPException(status_code=400, detail=f"Invalid form data: {e}")

    upload = form.get("image") or form.get("file")
    if upload is None or not hasattr(upload, "read"):
        raise HTTPException(status_code=400, detail="No image file in request")

    data = await upload.read()
    try:
        ref = get_image_store(request).save(data, getattr(upload, "filename", None) or "")
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"ref": ref}


@router.get("", summary="Filtered issue list (newest first)")
def list_issues(
    status: Optional[Status] = None,
    category: Optional[str] = None,
    priority: Optional[Literal["low", "medium", "high", "critical"]] = None,
    department_id: Optional[int] = None,
    assigned_to_user_id: Optional[int] = None,
    citizen_email: Optional[str] = None,
    is_duplicate: Optional[bool] = None,
    auto_escalated: Optional[bool] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    pipeline: IssuePipeline = Depends(get_pipeline),
):
    try:
        return pipeline.list_issues(
            page=page,
            limit=limit,
            status=status,
            category=category,
            priority=priority,
            department_id=department_id,
            assigned_to_user_id=assigned_to_user_id,
            citizen_email=citizen_email,
            is_duplicate=is_duplicate,
            auto_escalated=auto_escalated,
        )
    except CivicPipelineError as e:
        raise to_http_error(e)


@router.get("/stats", summary="Dashboard statistics (status, SLA, resolution times, departments)")
def issue_stats(
    timeframe: Optional[Literal["24h", "7d", "30d", "90d"]] = None,
    pipeline: IssuePipeline = Depends(get_pipeline),
):
    try:
        return pipeline.statistics(timeframe)
    except CivicPipelineError as e:
        raise to_http_error(e)


@router.get("/{issue_id}", summary="Issue snapshot with audit trail")
def read_issue(issue_id: str, pipeline: IssuePipeline = Depends(get_pipeline)):
    try:
        return pipeline.get_issue(issue_id)
    except CivicPipelineError as e:
        raise to_http_error(e)


@router.patch("/{issue_id}/status", summary="Move an issue through its lifecycle")
def update_status(
    issue_id: str,
    payload: StatusUpdate,
    pipeline: IssuePipeline = Depends(get_pipeline),
):
    try:
        issue = pipeline.update_status(
            issue_id,
            payload.status,
            actor=payload.actor,
            notes=payload.notes,
            resolution_images=payload.resolution_images,
            resolved_by_user_id=payload.resolved_by_user_id,
        )
    except CivicPipelineError as e:
        raise to_http_error(e)
    return serialize_issue(issue)


@router.post("/{issue_id}/reassign", summary="Manually (re)assign an issue")
def reassign_issue(
    issue_id: str,
    payload: ReassignRequest,
    pipeline: IssuePipeline = Depends(get_pipeline),
):
    try:
        issue = pipeline.reassign_issue(
            issue_id,
            payload.department_id,
            user_id=payload.user_id,
            actor=payload.actor,
            reason=payload.reason,
        )
    except CivicPipelineError as e:
        raise to_http_error(e)
    return serialize_issue(issue)


@router.post("/{issue_id}/feedback", summary="Citizen rating of a resolved issue")
def submit_feedback(
    issue_id: str,
    payload: FeedbackRequest,
    pipeline: IssuePipeline = Depends(get_pipeline),
):
    try:
        issue = pipeline.submit_feedback(
            issue_id,
            payload.citizen_email,
            payload.rating,
            payload.comment,
        )
    except CivicPipelineError as e:
        raise to_http_error(e)
    return serialize_issue(issue)
