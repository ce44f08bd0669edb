from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import UTC, datetime
from dotenv import load_dotenv
import logging
from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from .routers.conversation import get_runtime, router as conversation_router
from .routers.telemetry import router as telemetry_router
from ..config import get_settings
from ..domain.message_models import ScopeKey
from ..observability.metrics import metrics_middleware_factory

load_dotenv()  # Load CANVASCHAT_* and REDIS_URL from .env if present

LOG = logging.getLogger("canvaschat.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime = get_runtime()
    loaded = await runtime.controller.load()
    await runtime.subscriptions.switch(ScopeKey.all())
    ready = await runtime.subscriptions.wait_ready(ScopeKey.all(), timeout=get_settings().subscribe_retry_max)
    LOG.info("conversation_ready", extra={"loaded": loaded, "subscribed": ready})
    yield
    await runtime.controller.cancel_replies()
    await runtime.subscriptions.close()


app = FastAPI(title="Canvas Chat API", version="0.1.0", lifespan=lifespan)

# Observability: request latency histogram
app.middleware("http")(metrics_middleware_factory())

app.include_router(conversation_router)
app.include_router(telemetry_router)

# CORS (for the renderer dev server on localhost:3000)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
def root():
    return {"name": "Canvas Chat API", "version": "0.1.0"}


@app.get("/health")
def health():
    runtime = get_runtime()
    return {
        "status": "ok",
        "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        "components": {
            "api": "ok",
            "store": "in-memory",
            "feed": type(runtime.feed).__name__,
            "subscriptions": len(runtime.subscriptions.live_scopes()),
            "streams": len(runtime.tracker.active_snapshots()),
        },
    }


@app.get("/metrics")
def metrics() -> Response:
    data = generate_latest(REGISTRY)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
