"""
ConfirmIT receipts backend — FastAPI application entry‑point.
"""
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from confirmit.config import settings
from confirmit.receipts.clients import AnalyzerClient, LedgerClient, LocalBlobStorage
from confirmit.receipts.database import Base, SessionLocal, engine
from confirmit.receipts.pipeline import ReceiptPipeline
from confirmit.receipts.pipeline.progress import ProgressChannel
from confirmit.receipts.pipeline.store import SqlReceiptStore

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s  %(name)-30s  %(levelname)-5s  %(message)s",
)
logger = logging.getLogger(__name__)


def build_pipeline() -> ReceiptPipeline:
    return ReceiptPipeline(
        store=SqlReceiptStore(SessionLocal),
        storage=LocalBlobStorage(settings.UPLOAD_DIR, settings.PUBLIC_BASE_URL),
        analyzer=AnalyzerClient(settings.ANALYZER_URL, timeout=settings.ANALYZER_TIMEOUT_SECONDS),
        ledger=LedgerClient(
            settings.LEDGER_URL,
            settings.LEDGER_TOPIC_ID,
            network=settings.LEDGER_NETWORK,
            api_key=settings.LEDGER_API_KEY,
            timeout=settings.LEDGER_TIMEOUT_SECONDS,
        ),
        channel=ProgressChannel(),
        max_summary_bytes=settings.MAX_SUMMARY_BYTES,
        excerpt_limit=settings.SUMMARY_EXCERPT_LIMIT,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: ensure data dirs + tables exist
    os.makedirs(settings.DATA_DIR, exist_ok=True)
    os.makedirs(settings.UPLOAD_DIR, exist_ok=True)
    # Import models so Base.metadata knows about them
    import confirmit.receipts.models  # noqa: F401
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables ready (%s)", settings.DATABASE_URL)

    pipeline = build_pipeline()
    app.state.pipeline = pipeline
    if not pipeline.ledger.configured:
        logger.warning("LEDGER_URL / LEDGER_TOPIC_ID not set, ledger anchoring will fail")

    yield

    logger.info("Shutting down (%d analyses running)", pipeline.running)
    await pipeline.shutdown(settings.SHUTDOWN_GRACE_SECONDS)
    await pipeline.analyzer.aclose()
    await pipeline.ledger.aclose()


app = FastAPI(
    title="ConfirmIT Receipts",
    description="Receipt upload → forensic analysis → live progress → stored verdict → ledger anchor",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Uploaded images, fetched by the analyzer through PUBLIC_BASE_URL
app.mount("/uploads", StaticFiles(directory=settings.UPLOAD_DIR, check_dir=False), name="uploads")


@app.get("/")
async def root():
    return {"service": "ConfirmIT Receipts", "version": "0.1.0", "status": "running"}


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


# ── Register API router ──────────────────────────────────────────────────
from confirmit.receipts.routers.receipts import router as receipts_router  # noqa: E402

app.include_router(receipts_router, prefix="/api", tags=["Receipts"])
