"""FastAPI server for the voice receptionist.

Run with:
    uv run uvicorn voice_receptionist.server:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from voice_receptionist.agent import build_llm
from voice_receptionist.api.routes import router
from voice_receptionist.config import (
    CORS_ORIGINS,
    DEFAULT_TENANT_ID,
    SERVER_HOST,
    SERVER_PORT,
    TENANTS_FILE,
)
from voice_receptionist.persona import PersonaLoadError, PersonaResolver, TenantStore
from voice_receptionist.services.calendly_client import CalendlyClient
from voice_receptionist.services.deepgram_stt import DeepgramTranscriber
from voice_receptionist.services.elevenlabs_tts import ElevenLabsSynthesizer
from voice_receptionist.services.metrics import metrics
from voice_receptionist.session import SessionFactory
from voice_receptionist.tools.catalog import default_registry

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
)
# Audio streaming makes httpx very chatty at INFO
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


def _load_tenants() -> TenantStore:
    try:
        return TenantStore.from_file(TENANTS_FILE)
    except PersonaLoadError:
        # Calls will be rejected at connect until the file is fixed
        logger.exception("Could not load tenants; every call will be refused")
        return TenantStore([])


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Build the process-wide collaborators once and share them across calls.

    One Calendly client, one tool registry, one tenant store and one set of
    speech/model adapters serve every concurrent call; each call gets its
    own ``CallSession`` from ``SessionFactory.open_session``.
    """
    tenants = _load_tenants()
    provider = CalendlyClient()
    transcriber = DeepgramTranscriber()
    synthesizer = ElevenLabsSynthesizer()

    application.state.tenants = tenants
    application.state.active_calls = set()
    application.state.sessions = SessionFactory(
        llm=build_llm(),
        registry=default_registry(),
        provider=provider,
        resolver=PersonaResolver(tenants, default_tenant_id=DEFAULT_TENANT_ID),
        transcriber=transcriber,
        synthesizer=synthesizer,
    )
    logger.info("Voice receptionist ready (%d tenant(s)).", len(tenants))
    yield
    await provider.aclose()
    await transcriber.aclose()
    await synthesizer.aclose()
    metrics.close()


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="Voice Receptionist",
    description="Answers phone calls, checks availability and books appointments.",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Request-ID middleware ────────────────────────────────────────────
@app.middleware("http")
async def add_request_id(request: Request, call_next) -> Response:
    """Attach a request ID (``X-Request-ID``) to every HTTP request for log correlation."""
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    logger.info("[%s] %s %s", request_id, request.method, request.url.path)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ── Register routes ──────────────────────────────────────────────────
app.include_router(router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "Voice Receptionist",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health",
        "calls": "/api/calls?tenant_id=<tenant>",
    }


if __name__ == "__main__":
    logger.info("Starting voice receptionist on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run("voice_receptionist.server:app", host=SERVER_HOST, port=SERVER_PORT)
