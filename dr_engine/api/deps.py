from fastapi import Depends
from sqlalchemy.orm import Session

from dr_engine.db import SessionLocal


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_dr_service(db: Session = Depends(get_db)):
    from dr_engine.services.dr_service import DisasterRecoveryService

    return DisasterRecoveryService(db)
