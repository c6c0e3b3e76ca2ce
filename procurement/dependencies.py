from fastapi import Depends
from sqlalchemy.orm import Session

from procurement.db import get_db
from procurement.services.fulfillment_repository import CachedFulfillmentRepository, get_fulfillment_repository


def get_repository(db: Session = Depends(get_db)) -> CachedFulfillmentRepository:
    return get_fulfillment_repository(db)
