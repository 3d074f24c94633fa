"""
TTN Sensor Relay - Backend API
==============================
FastAPI application relaying The Things Network uplinks to the reef
monitoring dashboard.

ARCHITECTURE:
    The sensors (buoy, weather station) talk LoRaWAN to TTN. This backend
    holds one MQTT subscription to TTN and re-broadcasts every uplink to the
    dashboards connected over WebSocket. When a dashboard first loads, it
    asks for the latest stored uplinks over REST.

    [Buoy / Weather Station] --LoRaWAN--> [TTN]
                                            |  MQTT (live)     REST (storage)
                                            v                    |
                                      [This Backend] <-----------+
                                            |
                                            v  WebSocket + REST
                                      [Dashboard(s)]

HOW TO RUN:
    # Install
    pip install -e .

    # Configure (or create a .env file with the same keys)
    export TTN_REGION=au1
    export TTN_APP_ID=reef-monitor@ttn
    export TTN_API_KEY=NNSXS.XXXX
    export TTN_DEVICE_BUOY_ID=reef-buoy-1
    export TTN_DEVICE_WS_ID=weather-station-1

    # Run the server
    uvicorn ttn_relay.main:app --port 3000

    # Watch the live feed from a terminal
    python -m ttn_relay.watch --url http://localhost:3000

API DOCUMENTATION:
    After starting the server, visit:
    - Swagger UI: http://localhost:3000/docs
    - ReDoc: http://localhost:3000/redoc
"""

import logging
import os
import sys
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ttn_relay import __version__
from ttn_relay.exceptions import UpstreamError
from ttn_relay.models import ErrorResponse
from ttn_relay.routers import live_router, messages_router, set_relay_connector, set_snapshot_fetcher
from ttn_relay.routers.live import get_relay_connector
from ttn_relay.services import DeviceRegistry, RelayConnector, SnapshotFetcher, parse_device_kinds


# Load environment variables from .env file
load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
    datefmt="%H:%M:%S",
    handlers=[logging.StreamHandler(sys.stderr)],
)
logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

class Config:
    """
    Application configuration loaded from environment variables.

    Environment Variables:
        TTN_REGION: TTN cluster region (e.g. eu1, au1, nam1)
        TTN_APP_ID: TTN application id (e.g. reef-monitor@ttn)
        TTN_API_KEY: API key with "Read application traffic" rights
        TTN_DEVICE_ID: A single generic device (optional)
        TTN_DEVICE_BUOY_ID: The buoy device (optional)
        TTN_DEVICE_WS_ID: The weather station device (optional)
        TTN_DEVICE_KINDS: More devices as "id=kind,id=kind" (optional)
        RELAY_UNKNOWN_DEVICES: "forward" (default) or "drop"
        RECONNECT_DELAY: Seconds between MQTT session attempts (default: 5)
        REQUEST_TIMEOUT: Seconds to wait for TTN Storage (default: 30)
        FRONTEND_URL: URL of the frontend for CORS
    """

    TTN_REGION = os.getenv("TTN_REGION", "")
    TTN_APP_ID = os.getenv("TTN_APP_ID", "")
    TTN_API_KEY = os.getenv("TTN_API_KEY", "")

    # Device identities
    TTN_DEVICE_ID = os.getenv("TTN_DEVICE_ID", "")
    TTN_DEVICE_BUOY_ID = os.getenv("TTN_DEVICE_BUOY_ID", "")
    TTN_DEVICE_WS_ID = os.getenv("TTN_DEVICE_WS_ID", "")
    TTN_DEVICE_KINDS = os.getenv("TTN_DEVICE_KINDS", "")

    # What to do with uplinks from devices not listed above
    RELAY_UNKNOWN_DEVICES = os.getenv("RELAY_UNKNOWN_DEVICES", "forward").strip().lower()

    RECONNECT_DELAY = float(os.getenv("RECONNECT_DELAY", "5"))
    REQUEST_TIMEOUT = float(os.getenv("REQUEST_TIMEOUT", "30"))

    # Frontend URL for CORS
    FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")

    CORS_ORIGINS = [
        FRONTEND_URL,
        "http://localhost:5173",    # Vite dev server
        "http://localhost:3000",
        "http://127.0.0.1:5173",
        "http://127.0.0.1:3000",
    ]

    @classmethod
    def missing(cls) -> list[str]:
        """Names of required settings that are empty."""
        required = {
            "TTN_REGION": cls.TTN_REGION,
            "TTN_APP_ID": cls.TTN_APP_ID,
            "TTN_API_KEY": cls.TTN_API_KEY,
        }
        return [name for name, value in required.items() if not value]

    @classmethod
    def build_registry(cls) -> DeviceRegistry:
        return DeviceRegistry(
            buoy_device_id=cls.TTN_DEVICE_BUOY_ID,
            weather_device_id=cls.TTN_DEVICE_WS_ID,
            generic_device_id=cls.TTN_DEVICE_ID,
            extra_kinds=parse_device_kinds(cls.TTN_DEVICE_KINDS),
        )


# =============================================================================
# APPLICATION LIFESPAN
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    STARTUP:
        1. Build the device registry from configuration
        2. Create the SnapshotFetcher and RelayConnector
        3. Inject them into the routers
        4. Start the MQTT session loop

    SHUTDOWN:
        1. Stop the session loop
        2. Close the HTTP client
    """
    # ========== STARTUP ==========
    print("=" * 60)
    print("TTN SENSOR RELAY - Starting Backend")
    print("=" * 60)

    missing = Config.missing()
    if missing:
        logger.error(f"Missing configuration: {', '.join(missing)}. TTN calls will fail until these are set.")

    if Config.RELAY_UNKNOWN_DEVICES not in ("forward", "drop"):
        logger.warning(f"RELAY_UNKNOWN_DEVICES={Config.RELAY_UNKNOWN_DEVICES!r} not understood, forwarding")

    registry = Config.build_registry()

    snapshot_fetcher = SnapshotFetcher(
        region=Config.TTN_REGION,
        application_id=Config.TTN_APP_ID,
        api_key=Config.TTN_API_KEY,
        registry=registry,
        request_timeout=Config.REQUEST_TIMEOUT,
    )

    relay_connector = RelayConnector(
        region=Config.TTN_REGION,
        application_id=Config.TTN_APP_ID,
        api_key=Config.TTN_API_KEY,
        registry=registry,
        reconnect_delay=Config.RECONNECT_DELAY,
        forward_unknown=Config.RELAY_UNKNOWN_DEVICES != "drop",
    )

    set_snapshot_fetcher(snapshot_fetcher)
    set_relay_connector(relay_connector)
    relay_connector.start()

    print("Device Configuration:")
    print(f"- Buoy Device ID: {Config.TTN_DEVICE_BUOY_ID or 'Not configured'}")
    print(f"- Weather Station Device ID: {Config.TTN_DEVICE_WS_ID or 'Not configured'}")
    print(f"- Generic Device ID: {Config.TTN_DEVICE_ID or 'Not configured'}")
    for device_id, kind in registry.describe().items():
        print(f"    {device_id} -> {kind}")
    print(f"- Application ID: {Config.TTN_APP_ID}")
    print(f"- Region: {Config.TTN_REGION}")
    print(f"- Subscribed topic: {relay_connector.topic}")
    print("=" * 60)

    yield  # Application runs here

    # ========== SHUTDOWN ==========
    print()
    print("Shutting down...")
    await relay_connector.stop()
    await snapshot_fetcher.close()
    set_relay_connector(None)
    set_snapshot_fetcher(None)
    print("Shutdown complete")


# =============================================================================
# CREATE FASTAPI APPLICATION
# =============================================================================

app = FastAPI(
    title="TTN Sensor Relay API",
    description="""
## Overview

Relays sensor uplinks from The Things Network to the reef monitoring dashboard.

## How It Works

1. **Live** - one MQTT subscription to TTN; every uplink is pushed to every
   connected WebSocket client (`/` or `/ws`)
2. **History** - `GET /api/latest-messages` asks TTN Storage for the latest
   stored uplink of each configured device

## Device Kinds

| Setting | Kind |
|---------|------|
| `TTN_DEVICE_BUOY_ID` | buoy |
| `TTN_DEVICE_WS_ID` | weather |
| `TTN_DEVICE_ID` | generic |
| anything else | unknown |
    """,
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)


# =============================================================================
# MIDDLEWARE
# =============================================================================

app.add_middleware(
    CORSMiddleware,
    allow_origins=Config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log every HTTP request."""
    logger.info(f"{request.method} {request.url.path}")
    return await call_next(request)


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(UpstreamError)
async def upstream_error_handler(request: Request, exc: UpstreamError):
    """TTN couldn't be queried: tell the caller, keep running."""
    logger.error(f"{request.method} {request.url.path} failed: {exc}")
    body = ErrorResponse(error=str(exc), details=exc.details)
    return JSONResponse(status_code=500, content=body.model_dump())


# =============================================================================
# INCLUDE ROUTERS
# =============================================================================

# Latest stored uplinks
app.include_router(messages_router)

# Live WebSocket
app.include_router(live_router)


# =============================================================================
# ROOT ENDPOINTS
# =============================================================================

@app.get(
    "/",
    summary="API Information",
    description="Get basic API information and available endpoints."
)
async def root():
    """Root endpoint with API overview."""
    return {
        "name": "TTN Sensor Relay API",
        "version": __version__,
        "documentation": {
            "swagger": "/docs",
            "redoc": "/redoc",
            "openapi": "/openapi.json"
        },
        "endpoints": {
            "latest_messages": "GET /api/latest-messages",
            "latest_message": "GET /api/latest-message",
            "live": "WS / or WS /ws",
            "health": "GET /health"
        }
    }


@app.get(
    "/health",
    summary="Health Check",
    description="Check if the backend is running and whether TTN is connected."
)
async def health():
    """Health check endpoint."""
    connector = get_relay_connector()
    if connector is None:
        return {"status": "starting", "upstream": None, "listeners": 0}

    return {
        "status": "healthy",
        "upstream": connector.state.model_dump(mode="json"),
        "listeners": connector.listener_count,
        "devices": connector.registry.describe(),
    }
