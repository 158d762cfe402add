from typing import Optional

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from api.database import get_db
from api.services.classifier import get_classifier
from api.services.ledger import SqlLedger
from api.services.normalizer import Classifier


async def get_ledger(db: AsyncSession = Depends(get_db)) -> SqlLedger:
    """FastAPI dependency: ledger bound to the request's DB session."""
    return SqlLedger(db)


def get_import_classifier() -> Optional[Classifier]:
    """FastAPI dependency: column classifier, or None when not configured."""
    return get_classifier()
