import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from .database import SessionLocal, init_db
from .models import Shipment, Email  # Import all models before init_db()
from .routes import classification_router, emails_router, shipments_router
from .services.classification import AI_FALLBACK_ENABLED, MANUAL_REVIEW_THRESHOLD

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    print("🚀 Starting up FreightFlow API...")
    init_db()
    print(f"✅ Database initialized (review threshold {MANUAL_REVIEW_THRESHOLD}, AI fallback {'on' if AI_FALLBACK_ENABLED else 'off'})")

    yield

    print("👋 Shutting down FreightFlow API...")


# Create FastAPI app
app = FastAPI(
    title="FreightFlow API",
    description="Freight email classification and shipment workflow tracking",
    version="1.0.0",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(classification_router)
app.include_router(emails_router)
app.include_router(shipments_router)


@app.get("/api/health")
async def health_check():
    """Health check endpoint with shipment and email counts."""
    db = SessionLocal()
    try:
        return {
            "status": "ok",
            "shipments": db.query(Shipment).count(),
            "emails": db.query(Email).count(),
        }
    finally:
        db.close()


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "FreightFlow API",
        "version": "1.0.0",
        "docs": "/docs"
    }
