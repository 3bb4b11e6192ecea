# carecenter/routers/health.py
from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
import logging

from ..config import get_settings
from ..database import get_db
from ..timeutils import utcnow

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/health",
    tags=["Health Checks"],
)


@router.get("")
def health_check(db: Session = Depends(get_db)):
    """Liveness plus a database round trip."""
    settings = get_settings()
    body = {
        "status": "ok",
        "version": settings.app_version,
        "environment": settings.environment,
        "timestamp": utcnow().isoformat(),
        "database": "ok",
    }
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error(f"Health check database ping failed: {e}")
        body.update({"status": "degraded", "database": "unreachable"})
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=body)
    return body
