import logging

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from protocol_scheduler.config import get_settings
from protocol_scheduler.core.logging import setup_logging
from protocol_scheduler.database import create_tables
from protocol_scheduler.routers import health, instances, occurrences, templates, timeline

settings = get_settings()

# --- Logging Configuration ---
setup_logging(settings)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name, version=settings.app_version, debug=settings.debug)


# Startup events
@app.on_event("startup")
def on_startup():
    create_tables()
    logger.info(f"{settings.app_name} started in {settings.environment} mode")


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"],
    allow_headers=["*"],
)

app.include_router(templates.router, prefix="/api/v1")
app.include_router(instances.router, prefix="/api/v1")
app.include_router(occurrences.router, prefix="/api/v1")
app.include_router(timeline.router, prefix="/api/v1")
app.include_router(health.router, prefix="/api/v1")


@app.get("/")
def read_root():
    return {"message": f"{settings.app_name} API", "docs": "/docs"}


if __name__ == "__main__":
    uvicorn.run("protocol_scheduler.main:app", host="0.0.0.0", port=8000, reload=settings.is_development)
