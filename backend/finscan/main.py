"""
finscan API process

Serves the document extraction endpoints under /api/v1 and runs the
extraction pipelines for accepted uploads in the same event loop.

Wiring:
  build_dispatcher() constructs the whole extraction graph once:

      TesseractEngine ─► OCRTextExtractor ─┬─► ExtractionPipeline ─► IntakeDispatcher
      PypdfParser + PyMuPDFRenderer ─► PDFTextExtractor ─┘        ▲
      LangChainAIClient ─► StructuredExtractionAdapter ───────────┤
      TransactionRepository ─► TransactionMaterializer ───────────┘

  The lifespan keeps the engine, the JobRunner and the dispatcher on
  app.state; route dependencies read them from there.

Startup:  engine (+ create_all when configured) → DB ping → orphan recovery
Shutdown: JobRunner grace period, stragglers cancelled and force-failed → engine disposed
"""

from __future__ import annotations

import logging
import os
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from finscan.api.v1.documents import router as documents_router
from finscan.core.config import Settings, settings
from finscan.db.session import build_engine, build_session_factory, check_db_health, create_tables
from finscan.processing.ocr import OCRTextExtractor, TesseractEngine
from finscan.processing.pdf import PDFTextExtractor, PyMuPDFRenderer, PypdfParser
from finscan.processing.structured import LangChainAIClient, StructuredExtractionAdapter
from finscan.schemas.documents import ErrorDetail, ErrorResponse, UploadErrors
from finscan.services.intake import IntakeDispatcher
from finscan.services.jobs import JobRepository, recover_orphaned_jobs
from finscan.services.materializer import TransactionMaterializer
from finscan.services.pipeline import ExtractionPipeline
from finscan.services.transactions import TransactionRepository
from finscan.workers.runner import JobRunner

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)

SHUTDOWN_GRACE_SECONDS = 10.0
SERVICE_NAME = "finscan-api"


# ---------------------------------------------------------------------------
# Collaborator wiring
# ---------------------------------------------------------------------------

def build_dispatcher(cfg: Settings, session_factory, runner: JobRunner) -> IntakeDispatcher:
    jobs = JobRepository(session_factory)
    transactions = TransactionRepository(session_factory)

    ocr = OCRTextExtractor(
        TesseractEngine(tesseract_cmd=cfg.tesseract_cmd, timeout_seconds=cfg.ocr_timeout_seconds),
        timeout_seconds=cfg.ocr_timeout_seconds,
    )
    pdf = PDFTextExtractor(PypdfParser(), PyMuPDFRenderer(zoom=cfg.pdf_render_zoom), ocr)
    adapter = StructuredExtractionAdapter(
        LangChainAIClient(
            api_key=cfg.openai_api_key,
            model=cfg.llm_model,
            temperature=cfg.llm_temperature,
            max_tokens=cfg.llm_max_tokens,
        ),
        timeout_seconds=cfg.ai_timeout_seconds,
        max_attempts=cfg.ai_max_attempts,
        base_delay=cfg.ai_retry_base_delay,
    )
    materializer = TransactionMaterializer(
        transactions, confidence_threshold=cfg.receipt_confidence_threshold,
    )
    pipeline = ExtractionPipeline(jobs, ocr, pdf, adapter, materializer)
    return IntakeDispatcher(jobs, transactions, pipeline, runner)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    cfg: Settings = settings
    logger.info("Startup | env=%s model=%s upload_dir=%s", cfg.app_env, cfg.llm_model, cfg.upload_dir)

    engine = build_engine(cfg)
    if cfg.db_create_tables:
        await create_tables(engine)

    db_state = await check_db_health(engine)
    if db_state["status"] != "ok":
        await engine.dispose()
        logger.critical("Startup aborted, database unreachable | detail=%s", db_state.get("detail"))
        raise RuntimeError("finscan cannot start without its database")

    os.makedirs(cfg.upload_dir, exist_ok=True)

    session_factory = build_session_factory(engine)
    runner = JobRunner(max_concurrency=cfg.job_max_concurrency, max_pending=cfg.job_max_pending)

    app.state.engine = engine
    app.state.runner = runner
    app.state.dispatcher = build_dispatcher(cfg, session_factory, runner)

    recovered = await recover_orphaned_jobs(JobRepository(session_factory), cfg.orphaned_job_after_seconds)
    logger.info("Startup complete | orphaned_jobs_failed=%d", recovered)

    yield

    logger.info("Shutdown | pending_jobs=%d", runner.pending)
    await runner.shutdown(grace_seconds=SHUTDOWN_GRACE_SECONDS)
    await engine.dispose()


# ---------------------------------------------------------------------------
# Error bodies
# ---------------------------------------------------------------------------

def _validation_body(exc: RequestValidationError, request_id: str | None) -> ErrorResponse:
    return ErrorResponse(
        error_code="VALIDATION_ERROR",
        message="One or more request parameters are invalid.",
        details=[
            ErrorDetail(
                field=".".join(str(part) for part in err["loc"]),
                message=err["msg"],
                code="VALIDATION_ERROR",
            )
            for err in exc.errors()
        ],
        request_id=request_id,
    )


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID") or str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app() -> FastAPI:
    expose_docs = not settings.is_production
    app = FastAPI(
        title="finscan",
        description="Receipt and bank-statement extraction API with asynchronous job tracking.",
        version="1.0.0",
        docs_url="/api/docs" if expose_docs else None,
        redoc_url=None,
        openapi_url="/api/openapi.json" if expose_docs else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.app_env == "development" else [],
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "X-Request-ID", "X-User-ID"],
        expose_headers=["X-Request-ID", "Location"],
    )

    @app.middleware("http")
    async def correlate_requests(request: Request, call_next):
        request.state.request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        t0 = time.perf_counter()

        response = await call_next(request)

        response.headers["X-Request-ID"] = request.state.request_id
        logger.info(
            "HTTP | method=%s path=%s status=%d duration_ms=%.1f owner=%s request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            (time.perf_counter() - t0) * 1000,
            request.headers.get("X-User-ID", "-"),
            request.state.request_id,
        )
        return response

    @app.exception_handler(RequestValidationError)
    async def on_validation_error(request: Request, exc: RequestValidationError):
        body = _validation_body(exc, _request_id(request))
        return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=body.model_dump(mode="json"))

    @app.exception_handler(Exception)
    async def on_unhandled_error(request: Request, exc: Exception):
        # stack traces stay in the log; the client only gets the request id
        request_id = _request_id(request)
        logger.exception("Unhandled error | path=%s request_id=%s", request.url.path, request_id)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=UploadErrors.internal_error(request_id).model_dump(mode="json"),
            headers={"X-Request-ID": request_id},
        )

    app.include_router(documents_router, prefix="/api/v1")

    # ----------------------------------------------------------------
    # Liveness and readiness
    # ----------------------------------------------------------------

    @app.get("/health", tags=["Operations"], summary="Liveness check (process only)")
    async def liveness() -> dict:
        return {"status": "ok", "service": SERVICE_NAME}

    @app.get("/ready", tags=["Operations"], summary="Readiness check (database + job runner)")
    async def readiness(request: Request) -> JSONResponse:
        engine = getattr(request.app.state, "engine", None)
        runner = getattr(request.app.state, "runner", None)

        if engine is None:
            db_state = {"status": "error", "detail": "engine not initialised"}
        else:
            db_state = await check_db_health(engine)

        if db_state["status"] != "ok":
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "not_ready", "database": db_state},
            )
        return JSONResponse(
            content={
                "status": "ready",
                "database": db_state,
                "pending_jobs": runner.pending if runner is not None else 0,
            },
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "finscan.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
    )
