"""Offer Sentinel HTTP API.

Endpoints:
    GET  /health                          — status, store backend, offer count
    POST /api/data/upload-supplier-data   — consolidate a supplier list (multipart)
    POST /api/data/analyze-prices         — allocate a request list (multipart)
    POST /api/data/allocate               — allocate a JSON request list
    GET  /api/data/download-database      — catalog as xlsx
    POST /api/data/export-analysis        — allocation plans as xlsx
    GET  /api/template/download           — request list template (xlsx)
"""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .allocator import FulfillmentAllocator
from .api_models import (
    AllocationRequestBody,
    AllocationResponse,
    ErrorResponse,
    HealthResponse,
)
from .catalog_store import (
    CatalogStore,
    StorageError,
    create_catalog_store,
)
from .config import OfferSettings, get_settings
from .consolidator import ingest_file
from .errors import SpreadsheetError
from .exports import XLSX_MEDIA_TYPE, export_allocation, export_catalog, request_template
from .models import ConsolidationReport, FulfillmentPlan
from .spreadsheet import ALLOWED_EXTENSIONS, extension_of, read_allocation_requests

logger = logging.getLogger("offers.api")

_ERROR_CODES = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    413: "FILE_TOO_LARGE",
    422: "UNPROCESSABLE_FILE",
}


def _xlsx_response(content: bytes, filename: str) -> Response:
    return Response(
        content=content,
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


async def _read_upload(file: UploadFile, settings: OfferSettings) -> bytes:
    """Upload body after the shape checks: name, extension, size."""
    if not file.filename:
        raise HTTPException(status_code=400, detail="No file name provided")
    ext = extension_of(file.filename)
    if ext not in ALLOWED_EXTENSIONS:
        raise HTTPException(
            status_code=400,
            detail=(
                f"Unsupported file type '{ext or file.filename}'. "
                f"Allowed: {', '.join(sorted(ALLOWED_EXTENSIONS))}"
            ),
        )
    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail="File is empty")
    if len(content) > settings.max_upload_mb * 1024 * 1024:
        raise HTTPException(
            status_code=413,
            detail=f"File too large. Maximum allowed size is {settings.max_upload_mb}MB.",
        )
    return content


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------


def create_health_router(store: CatalogStore) -> APIRouter:
    router = APIRouter(tags=["health"])

    @router.get("/health", response_model=HealthResponse)
    async def health_check():
        return HealthResponse(
            store_backend=store.backend_name,
            offer_count=store.count_offers(),
            version=__version__,
        )

    return router


def create_data_router(store: CatalogStore, settings: OfferSettings) -> APIRouter:
    router = APIRouter(prefix="/api/data", tags=["data"])
    allocator = FulfillmentAllocator.from_settings(store, settings)

    @router.post("/upload-supplier-data", response_model=ConsolidationReport)
    async def upload_supplier_data(file: UploadFile = File(...)):
        """Consolidate an uploaded supplier offer list into the catalog."""
        content = await _read_upload(file, settings)
        logger.info("Supplier list upload: %s (%d bytes)", file.filename, len(content))
        report = await asyncio.to_thread(
            ingest_file, store, content, file.filename, settings
        )
        if not report.success:
            return JSONResponse(status_code=422, content=report.model_dump())
        return report

    @router.post("/analyze-prices", response_model=AllocationResponse)
    async def analyze_prices(file: UploadFile = File(...)):
        """Least-cost plans for an uploaded (barcode, quantity) list."""
        content = await _read_upload(file, settings)
        requests = await asyncio.to_thread(
            read_allocation_requests, content, file.filename
        )
        plans = await asyncio.to_thread(allocator.allocate, requests)
        return AllocationResponse.from_plans(plans)

    @router.post("/allocate", response_model=AllocationResponse)
    async def allocate(body: AllocationRequestBody):
        plans = await asyncio.to_thread(allocator.allocate, body.requests)
        return AllocationResponse.from_plans(plans)

    @router.get("/download-database")
    async def download_database():
        offers = await asyncio.to_thread(store.all_offers)
        return _xlsx_response(export_catalog(offers), "offers_database.xlsx")

    @router.post("/export-analysis")
    async def export_analysis(plans: list[FulfillmentPlan]):
        return _xlsx_response(export_allocation(plans), "price_analysis_result.xlsx")

    return router


def create_template_router() -> APIRouter:
    router = APIRouter(prefix="/api/template", tags=["template"])

    @router.get("/download")
    async def download_template():
        return _xlsx_response(request_template(), "price_analysis_template.xlsx")

    return router


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(
    settings: OfferSettings | None = None,
    store: CatalogStore | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    if settings is None:
        settings = get_settings()
    if store is None:
        store = create_catalog_store(settings.supabase_url, settings.supabase_service_key)

    app = FastAPI(
        title="Offer Sentinel",
        version=__version__,
        description="Supplier offer consolidation and least-cost fulfillment.",
    )

    origins = ["*"] if settings.dev_mode else ["http://localhost:3000"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -----------------------------------------------------------------
    # Exception handlers
    # -----------------------------------------------------------------

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(
        request: Request,
        exc: StarletteHTTPException,
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(
                code=_ERROR_CODES.get(exc.status_code, "HTTP_ERROR"),
                message=str(exc.detail),
            ).model_dump(),
        )

    @app.exception_handler(SpreadsheetError)
    async def spreadsheet_error_handler(
        request: Request,
        exc: SpreadsheetError,
    ) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content=ErrorResponse(
                code="UNPROCESSABLE_FILE",
                message="File could not be processed",
                detail=str(exc),
            ).model_dump(),
        )

    @app.exception_handler(StorageError)
    async def storage_error_handler(
        request: Request,
        exc: StorageError,
    ) -> JSONResponse:
        logger.exception("Catalog store error: %s", exc)
        return JSONResponse(
            status_code=502,
            content=ErrorResponse(
                code="STORAGE_ERROR",
                message="Catalog store is unavailable",
                detail=str(exc) if settings.dev_mode else None,
            ).model_dump(),
        )

    app.include_router(create_health_router(store))
    app.include_router(create_data_router(store, settings))
    app.include_router(create_template_router())

    logger.info(
        "Offer Sentinel API ready (store=%s, dev_mode=%s)",
        store.backend_name,
        settings.dev_mode,
    )
    return app
