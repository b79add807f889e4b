# routers/health.py
from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/", summary="Health check", tags=["health"])
def root(request: Request):
    return {
        "message": "Civic issue pipeline is running",
        "oracle": "enabled" if getattr(request.app.state, "oracle_client", None) else "fallback",
    }
