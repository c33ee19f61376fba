"""FreightLink - Marketplace Transaction Core API"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from freightlink.core.config import get_settings
from freightlink.core.logging import configure_logging, logger
from freightlink.routers import bids, compliance, events, loads, otp, shipments
from freightlink.services.event_bus import HttpEventForwarder, event_bus


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    settings = get_settings()
    configure_logging(settings.log_level)

    forwarder = None
    unsubscribe = None
    if settings.event_webhook_url:
        forwarder = HttpEventForwarder(settings.event_webhook_url, settings.event_webhook_timeout_seconds)
        unsubscribe = event_bus.subscribe(forwarder)

    logger.info(
        "FreightLink API starting",
        version="0.1.0",
        db_path=settings.marketplace_db_path,
        auth_enabled=settings.auth_enabled,
        event_forwarding=bool(forwarder),
    )
    yield
    # Shutdown
    if unsubscribe:
        unsubscribe()
    if forwarder:
        forwarder.close()
    logger.info("FreightLink API shutting down")


app = FastAPI(
    title="FreightLink API",
    description="Freight marketplace transaction core - load lifecycle, bidding, trip OTPs and compliance gate",
    version="0.1.0",
    lifespan=lifespan
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(loads.router)
app.include_router(bids.router)
app.include_router(otp.router)
app.include_router(shipments.router)
app.include_router(compliance.router)
app.include_router(events.router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "FreightLink API",
        "version": "0.1.0",
        "description": "Freight marketplace transaction core",
        "endpoints": {
            "loads": "/loads",
            "bids": "/bids",
            "otp_requests": "/otp-requests",
            "shipments": "/shipments",
            "carriers": "/carriers",
            "documents": "/documents",
            "events": "/events",
        }
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
