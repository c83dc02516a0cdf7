"""
API Dependencies
Common dependencies for FastAPI endpoints
"""

from typing import Generator
from fastapi import Depends
from sqlalchemy.orm import Session

from database import SessionLocal
from exceptions import PatientNotFoundError
from services.container import ServiceContainer, get_container


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency
    Yields a SQLAlchemy session and ensures cleanup
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_services() -> ServiceContainer:
    """
    Service container dependency
    Override with app.dependency_overrides to inject a test container
    """
    return get_container()


async def get_current_patient_id(
    patient_id: int,
    db: Session = Depends(get_db)
) -> int:
    """
    Validate patient exists and return patient ID
    """
    from models import Patient

    patient = db.query(Patient).filter(Patient.id == patient_id).first()
    if not patient:
        raise PatientNotFoundError(patient_id)

    return patient_id
