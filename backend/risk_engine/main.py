from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from risk_engine.core.config import settings
from risk_engine.core.logging_config import configure_logging
from risk_engine.database.db import init_db
from risk_engine.routes import alerts, analysis, health
from risk_engine.services.background_worker import get_worker, start_worker

configure_logging(settings.LOG_LEVEL)

app = FastAPI(
    title=settings.APP_NAME,
    description="User activity risk analytics and alert review backend",
    version="1.0.0"
)

init_db()

# CORS Configuration - Allow all origins for development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# V1 API Routes
app.include_router(health.router, prefix="/api/v1", tags=["health"])
app.include_router(analysis.router, prefix="/api/v1", tags=["analysis"])
app.include_router(alerts.router, prefix="/api/v1", tags=["alerts"])


@app.on_event("startup")
def start_background_tasks():
    start_worker()


@app.on_event("shutdown")
def stop_background_tasks():
    get_worker().stop()


if __name__ == "__main__":
    import uvicorn
    # run from backend/: uvicorn risk_engine.main:app --reload --port 8000
    uvicorn.run("risk_engine.main:app", host="0.0.0.0", port=settings.PORT, reload=settings.DEBUG)
