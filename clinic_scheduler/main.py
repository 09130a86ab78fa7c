import logging

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from clinic_scheduler.config import get_settings
from clinic_scheduler.core.logging import setup_logging
from clinic_scheduler.database import create_tables
from clinic_scheduler.limiter import limiter
from clinic_scheduler.routers import availability, calendar, directory, health, slots, visits

settings = get_settings()
setup_logging(json_logs=settings.json_logs, level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name, version=settings.app_version, debug=settings.debug)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.on_event("startup")
def on_startup():
    if settings.auto_create_tables:
        create_tables()
    logger.info(f"{settings.app_name} started ({settings.environment})")


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"],
    allow_headers=["*"],
)

app.include_router(availability.router, prefix="/api/v1")
app.include_router(slots.router, prefix="/api/v1")
app.include_router(visits.router, prefix="/api/v1")
app.include_router(calendar.router, prefix="/api/v1")
app.include_router(directory.router, prefix="/api/v1")
app.include_router(directory.doctors_router, prefix="/api/v1")
app.include_router(health.router, prefix="/api/v1")


if __name__ == "__main__":
    uvicorn.run("clinic_scheduler.main:app", host="0.0.0.0", port=8000, reload=settings.is_development)
