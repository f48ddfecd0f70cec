from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from intake.config.database import Database
from intake.config.settings import settings
from intake.api.intake import router as intake_router
from intake.middleware.jwt_auth import JWTAuthMiddleware
import logging

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    logger.info("Starting Intake Orchestrator Service...")
    logger.info(f"Environment: {settings.environment}")

    try:
        await Database.connect_db()
        logger.info("MongoDB connected successfully")
    except Exception as e:
        logger.error(f"Failed to connect to MongoDB: {e}")
        raise

    yield

    logger.info("Shutting down Intake Orchestrator Service...")
    await Database.close_db()
    logger.info("MongoDB connection closed")


app = FastAPI(
    title="Patient Intake Orchestrator",
    description="Guides patients through a multi-agent intake conversation: vitals triage, symptoms, records, history and clinical handover.",
    version="1.0.0",
    lifespan=lifespan,
)

# add_middleware stacks LIFO: CORS (added last) runs first, so 401s carry CORS headers
app.add_middleware(JWTAuthMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(intake_router)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    try:
        db = Database.get_database()
        await db.command("ping")
        mongodb_status = "connected"
    except Exception as e:
        logger.error(f"MongoDB health check failed: {e}")
        mongodb_status = f"error: {str(e)}"

    return {
        "status": "ok",
        "service": settings.service_name,
        "version": "1.0.0",
        "dependencies": {
            "mongodb": mongodb_status,
            "github_models": (
                "configured" if settings.github_token else "not configured"
            ),
        },
    }


@app.get("/")
async def root():
    return {
        "message": "Patient Intake Orchestrator Service",
        "version": "1.0.0",
        "docs": "/docs",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.intake_port,
        reload=settings.environment == "development",
    )
