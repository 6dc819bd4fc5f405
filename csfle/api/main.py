"""
CSFLE Engine - Main API
Client-side field level encryption for document stores
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import structlog

from csfle.api.routes import encrypt, keys, query
from csfle.utils.config import settings

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    logger.info("Starting CSFLE Engine", environment=settings.ENVIRONMENT)
    yield
    logger.info("Shutting down CSFLE Engine")


app = FastAPI(
    title="CSFLE Engine",
    description="Client-side field level encryption with envelope key management",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(keys.router, prefix="/keys", tags=["Data Keys"])
app.include_router(encrypt.router, prefix="/encrypt", tags=["Encryption"])
app.include_router(query.router, prefix="/query", tags=["Queries"])


@app.get("/")
async def root():
    return {
        "service": "CSFLE Engine",
        "version": "1.0.0",
        "status": "operational"
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy"}
