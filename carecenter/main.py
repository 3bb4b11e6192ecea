import logging

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from carecenter.config import get_settings
from carecenter.core.logging import setup_logging
from carecenter.database import create_tables
from carecenter.exceptions import register_exception_handlers
from carecenter.routers import billing, calendar, health

settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    debug=settings.debug,
)


@app.on_event("startup")
def on_startup():
    create_tables()
    logger.info(f"{settings.app_name} started ({settings.environment})")


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "HEAD"],
    allow_headers=["*"],
)

register_exception_handlers(app)

app.include_router(billing.router, prefix="/api/v1")
app.include_router(calendar.router, prefix="/api/v1")
app.include_router(health.router, prefix="/api/v1")


if __name__ == "__main__":
    uvicorn.run("carecenter.main:app", host="0.0.0.0", port=8000, reload=settings.is_development)
