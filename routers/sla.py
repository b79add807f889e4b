# routers/sla.py
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from db.session import get_db
from services.sla_service import run_sla_sweep

router = APIRouter(prefix="/sla", tags=["sla"])


@router.post("/sweep", summary="Escalate overdue issues (idempotent)")
def sweep(db: Session = Depends(get_db)):
    return run_sla_sweep(db).as_dict()
