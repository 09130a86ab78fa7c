# clinic_scheduler/routers/directory.py
from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .. import crud, schemas
from ..context import RequestContext
from ..database import get_db
from ..exceptions import SchedulingError
from ..security import get_request_context
from .common import to_http_exception

router = APIRouter(
    prefix="/patients",
    tags=["Patients"],
    responses={404: {"description": "Not found"}},
)


@router.get("/", response_model=List[schemas.PatientResponse])
def search_patients(
    q: Optional[str] = None,
    skip: int = 0,
    limit: int = 50,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
):
    """Search patients of the tenant by name or phone number."""
    return crud.search_patients(db, ctx, query=q, skip=skip, limit=limit)


@router.get("/{patient_id}", response_model=schemas.PatientResponse)
def read_patient(
    patient_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
):
    try:
        return crud.get_patient(db, ctx, patient_id)
    except SchedulingError as e:
        raise to_http_exception(e)


doctors_router = APIRouter(
    prefix="/doctors",
    tags=["Doctors"],
)


@doctors_router.get("/", response_model=List[schemas.UserResponse])
def read_doctors(
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
):
    return crud.list_doctors(db, ctx)
