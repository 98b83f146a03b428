from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, File, Header, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from omegaconf import DictConfig
from starlette.concurrency import run_in_threadpool

from .configuration import get_settings
from .conversion_service import ConversionService
from .database import Database
from .errors import PdfaError
from .expansion_service import ExpansionService
from .expansion_workflow import ExpansionWorkflow
from .interfaces import Notifier, Renderer, Storage
from .job_tracker import JobTracker
from .maintenance import MaintenanceWorker
from .middleware import RateLimiter, client_identity
from .models import (
    AdminDecision,
    BatchResult,
    CancelResult,
    ExpansionHistory,
    ExpansionInfo,
    ExpansionRequestIn,
    ExpansionRequestView,
    ExpansionStatusView,
    JobDetail,
    JobHistory,
    PdfACompliance,
    PdfValidation,
    ProcessingEstimate,
    SupportedFormats,
    UsageCheck,
    UserStats,
)
from .notifier import LogNotifier
from .quota_ledger import QuotaLedger
from .records import UploadedPdf
from .renderer import GhostscriptRenderer
from .storage import build_storage
from .utils import Clock, is_pdf_upload, utcnow
from .validation import (
    check_pdfa_compliance,
    estimate_processing_time,
    inspect_upload,
    supported_formats,
    validate_pdf,
)

logger = logging.getLogger(__name__)


def _conversions(request: Request) -> ConversionService:
    return request.app.state.conversions


def _expansions(request: Request) -> ExpansionService:
    return request.app.state.expansions


def _user_agent(request: Request) -> Optional[str]:
    return request.headers.get("user-agent")


def require_admin(request: Request, x_admin_key: Optional[str] = Header(None)) -> None:
    expected = request.app.state.settings.admin.api_key
    if not expected or x_admin_key != expected:
        raise HTTPException(status_code=401, detail="Invalid or missing admin key")


async def _read_upload(upload: UploadFile) -> UploadedPdf:
    if not upload.filename:
        raise HTTPException(status_code=400, detail="PDF file must have a filename")
    if not is_pdf_upload(upload.filename, upload.content_type):
        raise HTTPException(status_code=400, detail="Only PDF uploads are supported")
    content = await upload.read()
    await upload.close()
    return UploadedPdf(filename=upload.filename, content=content, content_type=upload.content_type)


def _build_router(limiter: RateLimiter) -> APIRouter:
    router = APIRouter(prefix="/api/v1", dependencies=[Depends(limiter)])

    @router.get("/health")
    def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    # Conversions

    @router.post("/pdf/convert", response_model=BatchResult)
    async def convert(
        request: Request,
        files: List[UploadFile] = File(...),
        service: ConversionService = Depends(_conversions),
    ) -> BatchResult:
        uploads = [await _read_upload(upload) for upload in files]
        return await run_in_threadpool(
            service.convert, client_identity(request), uploads, _user_agent(request)
        )

    @router.get("/pdf/status/{job_id}", response_model=JobDetail)
    def job_status(job_id: str, request: Request, service: ConversionService = Depends(_conversions)) -> JobDetail:
        return service.get_job(job_id, client_identity(request)).to_detail()

    @router.get("/pdf/download/{job_id}")
    def download(job_id: str, request: Request, service: ConversionService = Depends(_conversions)) -> Response:
        converted = service.get_converted_file(job_id, client_identity(request))
        return Response(
            content=converted.content,
            media_type="application/pdf",
            headers={"Content-Disposition": f'attachment; filename="{converted.filename}"'},
        )

    @router.get("/pdf/history", response_model=JobHistory)
    def history(
        request: Request,
        page: int = Query(1, ge=1),
        per_page: int = Query(15, ge=1),
        service: ConversionService = Depends(_conversions),
    ) -> JobHistory:
        result = service.list_jobs(client_identity(request), page, per_page)
        return JobHistory(conversions=[job.to_summary() for job in result.items], pagination=result.pagination())

    @router.get("/pdf/stats", response_model=UserStats)
    def stats(request: Request, service: ConversionService = Depends(_conversions)) -> UserStats:
        return service.stats(client_identity(request))

    @router.get("/pdf/usage", response_model=UsageCheck)
    def usage(
        request: Request,
        count: int = Query(1, ge=1),
        service: ConversionService = Depends(_conversions),
    ) -> UsageCheck:
        return service.check_usage(client_identity(request), count)

    # Expansion requests

    @router.post("/expansion/request", response_model=ExpansionRequestView, status_code=201)
    def request_expansion(
        fields: ExpansionRequestIn, request: Request, service: ExpansionService = Depends(_expansions)
    ) -> ExpansionRequestView:
        return service.submit(client_identity(request), fields, _user_agent(request))

    @router.get("/expansion/status", response_model=ExpansionStatusView)
    def expansion_status(request: Request, service: ExpansionService = Depends(_expansions)) -> ExpansionStatusView:
        return service.get_status(client_identity(request))

    @router.get("/expansion/history", response_model=ExpansionHistory)
    def expansion_history(
        request: Request,
        page: int = Query(1, ge=1),
        per_page: int = Query(10, ge=1),
        service: ExpansionService = Depends(_expansions),
    ) -> ExpansionHistory:
        return service.list_history(client_identity(request), page, per_page)

    @router.get("/expansion/info", response_model=ExpansionInfo)
    def expansion_info(request: Request, service: ExpansionService = Depends(_expansions)) -> ExpansionInfo:
        return service.info(client_identity(request))

    @router.delete("/expansion/cancel", response_model=CancelResult)
    def cancel_expansion(request: Request, service: ExpansionService = Depends(_expansions)) -> CancelResult:
        return service.cancel(client_identity(request))

    # Validation

    @router.post("/validate/estimate", response_model=ProcessingEstimate)
    async def estimate(file: UploadFile = File(...)) -> ProcessingEstimate:
        upload = await _read_upload(file)
        return estimate_processing_time(upload.size)

    @router.get("/validate/formats", response_model=SupportedFormats)
    def formats(request: Request) -> SupportedFormats:
        return supported_formats(request.app.state.settings)

    @router.post("/validate/pdf", response_model=PdfValidation)
    async def validate(request: Request, file: UploadFile = File(...)) -> PdfValidation:
        upload = await _read_upload(file)
        metadata = await run_in_threadpool(inspect_upload, request.app.state.renderer, upload.content)
        return validate_pdf(metadata, upload.size, request.app.state.conversions.max_file_bytes)

    @router.post("/validate/pdf-a", response_model=PdfACompliance)
    async def pdfa_compliance(request: Request, file: UploadFile = File(...)) -> PdfACompliance:
        upload = await _read_upload(file)
        metadata = await run_in_threadpool(inspect_upload, request.app.state.renderer, upload.content)
        return check_pdfa_compliance(metadata)

    # Administration

    @router.post(
        "/admin/expansion/{request_id}/approve",
        response_model=ExpansionRequestView,
        dependencies=[Depends(require_admin)],
    )
    def approve(
        request_id: str, decision: Optional[AdminDecision] = None, service: ExpansionService = Depends(_expansions)
    ) -> ExpansionRequestView:
        return service.approve(request_id, decision.notes if decision else None)

    @router.post(
        "/admin/expansion/{request_id}/reject",
        response_model=ExpansionRequestView,
        dependencies=[Depends(require_admin)],
    )
    def reject(
        request_id: str, decision: Optional[AdminDecision] = None, service: ExpansionService = Depends(_expansions)
    ) -> ExpansionRequestView:
        return service.reject(request_id, decision.notes if decision else None)

    return router


def create_app(
    settings: Optional[DictConfig] = None,
    renderer: Optional[Renderer] = None,
    storage: Optional[Storage] = None,
    notifier: Optional[Notifier] = None,
    clock: Optional[Clock] = None,
) -> FastAPI:
    """
    Build the API with its services wired together.

    Every collaborator can be injected; anything omitted is built from
    ``settings`` (or the process-wide settings when those are omitted too).

    Run with:
        uvicorn --factory pdfa_backend.main:create_app --host 0.0.0.0 --port 8000
    """
    settings = settings or get_settings()
    clock = clock or utcnow

    database = Database(Path(settings.database.path))
    ledger = QuotaLedger(database, default_limit=settings.quota.default_daily_limit, clock=clock)
    jobs = JobTracker(database, ledger, clock=clock)
    workflow = ExpansionWorkflow(
        database, ledger, notifier or LogNotifier(settings.admin.email), settings, clock=clock
    )
    renderer = renderer or GhostscriptRenderer.from_settings(settings)
    conversions = ConversionService(
        ledger, jobs, renderer, storage or build_storage(settings), settings, clock=clock
    )
    expansions = ExpansionService(ledger, workflow, settings)
    limiter = RateLimiter(settings.rate_limit.requests_per_minute)
    maintenance = MaintenanceWorker(
        ledger, conversions, workflow, limiter, interval_seconds=settings.maintenance.interval_seconds
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.maintenance.enabled:
            maintenance.start()
        try:
            yield
        finally:
            maintenance.stop()
            conversions.shutdown()

    app = FastAPI(title="PDF/A Conversion API", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = settings
    app.state.ledger = ledger
    app.state.renderer = renderer
    app.state.limiter = limiter
    app.state.conversions = conversions
    app.state.expansions = expansions
    app.state.maintenance = maintenance

    @app.exception_handler(PdfaError)
    async def handle_domain_error(request: Request, exc: PdfaError) -> JSONResponse:
        if exc.http_status >= 500:
            logger.error(f"{exc.code} on {request.url.path}: {exc.message}")
        return JSONResponse(
            status_code=exc.http_status,
            content={"success": False, "error": exc.code, "message": exc.message, "data": exc.data},
        )

    app.include_router(_build_router(limiter))
    return app
