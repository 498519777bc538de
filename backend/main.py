from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv
import logging
import os

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)

app = FastAPI(
    title="Parlay Resolution & Streak Engine",
    description="Background parlay resolution, streak ledger and insurance state",
    version="1.0.0"
)

# Read CORS configuration from environment
cors_origins = os.getenv("CORS_ALLOW_ORIGINS", "*")
if cors_origins.strip() == "*":
    allow_origins = ["*"]
else:
    allow_origins = [o.strip() for o in cors_origins.split(",") if o.strip()]

# Only allow credentials when explicit origins are configured
allow_credentials = False
if allow_origins != ["*"]:
    allow_credentials = os.getenv("CORS_ALLOW_CREDENTIALS", "false").lower() in ("1", "true", "yes")

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Import routers
from routes.resolution_routes import router as resolution_router

app.include_router(resolution_router)


@app.on_event("startup")
async def startup_event():
    """Initialize database indexes and start the periodic jobs"""
    from db.indexes import ensure_indexes
    from services.resolution_services import get_components

    components = get_components()
    ensure_indexes(components.store.db)
    logging.getLogger(__name__).info("Database indexes initialized")

    if os.getenv("RESOLUTION_SCHEDULER_ENABLED", "true").lower() in ("1", "true", "yes"):
        from services.scheduler import start_scheduler
        start_scheduler(components)


@app.on_event("shutdown")
async def shutdown_event():
    """Clean shutdown"""
    from services.resolution_services import shutdown_components
    from services.scheduler import stop_scheduler
    stop_scheduler()
    shutdown_components()


@app.get("/")
def root():
    return {
        "status": "ok",
        "service": "Parlay Resolution & Streak Engine",
        "version": "1.0.0",
    }


@app.get("/health")
def health_check():
    """Health check for load balancers"""
    from db.mongo import db
    try:
        db.command("ping")
        return {"status": "healthy", "database": "connected"}
    except Exception as e:
        return {"status": "unhealthy", "database": "disconnected", "error": str(e)}
