import logging

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from medreminder.config import get_settings
from medreminder.core.logging import setup_logging
from medreminder.database import create_tables
from medreminder.routers import cron, health, reminders, verification, volunteers, webhooks

logger = logging.getLogger(__name__)

settings = get_settings()

app = FastAPI(title=settings.app_name, version=settings.app_version)


# Lifespan for startup events
@app.on_event("startup")
def on_startup():
    setup_logging()
    create_tables()
    logger.info("MedReminder started (environment=%s)", settings.environment)


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(cron.router, prefix="/api/v1")
app.include_router(webhooks.router, prefix="/api/v1")
app.include_router(reminders.router, prefix="/api/v1")
app.include_router(verification.router, prefix="/api/v1")
app.include_router(volunteers.router, prefix="/api/v1")
app.include_router(health.router, prefix="/api/v1")


if __name__ == "__main__":
    uvicorn.run("medreminder.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
