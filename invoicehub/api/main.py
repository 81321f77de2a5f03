"""FastAPI application for invoice review.

Production-ready API with:
- Health and readiness checks for Kubernetes
- Invoice upload, analysis, validation and export
- Extraction template management
- Structured error responses
- Prometheus metrics for monitoring

Based on FastAPI best practices:
https://fastapi.tiangolo.com/
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import (
    Depends,
    FastAPI,
    File,
    Form,
    Query,
    Request,
    Response,
    UploadFile,
    status,
)
from fastapi.responses import JSONResponse

from invoicehub.api.dependencies import get_manager, get_templates, get_user_session
from invoicehub.api.schemas import (
    DocumentUrlResponse,
    ErrorResponse,
    HealthResponse,
    ReadinessResponse,
    TemplateCreate,
    TemplateResponse,
    TemplateUpdate,
    ValidateRequest,
)
from invoicehub.export.base import ExportAdapter, ExportResult
from invoicehub.export.factory import create_export_adapter
from invoicehub.extraction.base import ExtractionProvider
from invoicehub.extraction.factory import create_extraction_provider
from invoicehub.extraction.schema import DEFAULT_EXTRACTION_SCHEMA, ExtractionSchema
from invoicehub.lifecycle.manager import InvoiceLifecycleManager
from invoicehub.lifecycle.records import (
    AnalysisOutcome,
    InvoiceDetails,
    InvoiceRecord,
    UploadOutcome,
)
from invoicehub.lifecycle.states import InvoiceStatus
from invoicehub.repository.database import Database
from invoicehub.repository.invoices import InvoiceRepository
from invoicehub.repository.templates import TemplateRepository
from invoicehub.shared import metrics
from invoicehub.shared.config import Settings, get_settings
from invoicehub.shared.errors import (
    FileTooLargeError,
    InvalidRequestError,
    InvoiceHubError,
    MissingRequiredFieldsError,
    MissingSessionError,
    NotFoundError,
    PreconditionError,
    UpstreamError,
)
from invoicehub.shared.log import configure_logging
from invoicehub.shared.session import UserSession
from invoicehub.storage.service import StorageService

logger = logging.getLogger(__name__)

# Most specific first
ERROR_STATUS: list[tuple[type[InvoiceHubError], int]] = [
    (MissingSessionError, status.HTTP_401_UNAUTHORIZED),
    (FileTooLargeError, status.HTTP_413_REQUEST_ENTITY_TOO_LARGE),
    (InvalidRequestError, status.HTTP_400_BAD_REQUEST),
    (MissingRequiredFieldsError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (PreconditionError, status.HTTP_409_CONFLICT),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (UpstreamError, status.HTTP_502_BAD_GATEWAY),
]


def error_status(exc: InvoiceHubError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def create_app(
    settings: Settings | None = None,
    storage: StorageService | None = None,
    extraction: ExtractionProvider | None = None,
    exporter: ExportAdapter | None = None,
) -> FastAPI:
    """Build the application and its services.

    Args:
        settings: Application settings (read from the environment when None)
        storage: Storage gateway override (tests)
        extraction: Extraction provider override (tests)
        exporter: Export adapter override (tests)

    Returns:
        Configured FastAPI application
    """
    settings = settings or get_settings()
    configure_logging(settings)

    database = Database(settings)
    invoices = InvoiceRepository(database, settings.field_write_concurrency)
    templates = TemplateRepository(database)
    storage = storage or StorageService(settings)
    manager = InvoiceLifecycleManager(
        settings=settings,
        storage=storage,
        extraction=extraction or create_extraction_provider(settings),
        invoices=invoices,
        templates=templates,
        exporter=exporter or create_export_adapter(settings),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await database.create_all()
        logger.info(f"{settings.service_name} {settings.service_version} started")
        yield
        await database.dispose()

    app = FastAPI(
        title="Invoice Review Platform",
        description="Invoice upload, field extraction, review and accounting export",
        version=settings.service_version,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.database = database
    app.state.storage = storage
    app.state.manager = manager
    app.state.templates = templates

    @app.exception_handler(InvoiceHubError)
    async def handle_invoicehub_error(request: Request, exc: InvoiceHubError) -> JSONResponse:
        status_code = error_status(exc)
        body = ErrorResponse(
            detail=str(exc),
            error=type(exc).__name__,
            missing=exc.missing if isinstance(exc, MissingRequiredFieldsError) else None,
        )
        headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
        return JSONResponse(
            status_code=status_code,
            content=body.model_dump(exclude_none=True),
            headers=headers,
        )

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
        """Collect request count and duration by method, route and status."""
        # Skip metrics for /metrics endpoint itself
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.time()
        response = await call_next(request)
        duration = time.time() - start_time

        # Route templates keep label cardinality bounded
        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)

        metrics.http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status=response.status_code,
        ).inc()
        metrics.http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response

    register_routes(app)
    return app


def register_routes(app: FastAPI) -> None:
    """Attach health, invoice and template routes."""

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    def health_check() -> HealthResponse:
        """Health check endpoint for liveness checks."""
        settings: Settings = app.state.settings
        return HealthResponse(
            status="healthy", version=settings.service_version, service=settings.service_name
        )

    @app.get("/ready", response_model=ReadinessResponse, tags=["Health"])
    async def readiness_check(response: Response) -> ReadinessResponse:
        """Readiness check endpoint for Kubernetes readiness checks.

        Ready when the database answers; storage reachability is reported but
        does not gate readiness, since reads work without it.
        """
        database_ok = await app.state.database.ping()
        storage_ok = await asyncio.to_thread(app.state.storage.health_check)
        if not database_ok:
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return ReadinessResponse(ready=database_ok, database=database_ok, storage=storage_ok)

    @app.get("/metrics", tags=["Monitoring"])
    def get_metrics() -> Response:
        """Prometheus metrics endpoint."""
        metrics_data, content_type = metrics.get_metrics()
        return Response(content=metrics_data, media_type=content_type)

    # Invoices

    @app.post(
        "/api/v1/invoices",
        response_model=UploadOutcome,
        status_code=status.HTTP_201_CREATED,
        tags=["Invoices"],
    )
    async def upload_invoice(
        file: UploadFile = File(..., description="Invoice document (PDF, JPEG or PNG)"),  # noqa: B008
        title: str | None = Form(None, description="Display title (defaults to the file name)"),
        analyze: bool = Query(False, description="Run field extraction right after upload"),
        template_id: str | None = Query(None, description="Extraction template to use"),
        session: UserSession = Depends(get_user_session),  # noqa: B008
        manager: InvoiceLifecycleManager = Depends(get_manager),  # noqa: B008
    ) -> UploadOutcome:
        """Upload an invoice document.

        ```bash
        curl -X POST "http://localhost:8000/api/v1/invoices?analyze=true" \\
          -H "Authorization: Bearer $TOKEN" \\
          -F "file=@invoice.pdf" -F "title=EDF March"
        ```

        - 400 for empty files or unsupported types, 413 above 10MB
        - 502 when object storage rejects the upload (no invoice is kept)
        - A failed analysis is reported in `analysis`; the upload still succeeds
        """
        content = await file.read()
        return await manager.upload_invoice(
            session,
            content,
            file.content_type,
            title=title or file.filename,
            analyze=analyze,
            template_id=template_id,
        )

    @app.get("/api/v1/invoices", response_model=list[InvoiceRecord], tags=["Invoices"])
    async def list_invoices(
        invoice_status: InvoiceStatus | None = Query(None, alias="status"),
        skip: int = Query(0, ge=0),
        limit: int = Query(50, ge=1, le=200),
        session: UserSession = Depends(get_user_session),  # noqa: B008
        manager: InvoiceLifecycleManager = Depends(get_manager),  # noqa: B008
    ) -> list[InvoiceRecord]:
        """List the caller's invoices, newest first."""
        return await manager.list_invoices(session, status=invoice_status, skip=skip, limit=limit)

    @app.get("/api/v1/invoices/{invoice_id}", response_model=InvoiceDetails, tags=["Invoices"])
    async def get_invoice(
        invoice_id: str,
        session: UserSession = Depends(get_user_session),  # noqa: B008
        manager: InvoiceLifecycleManager = Depends(get_manager),  # noqa: B008
    ) -> InvoiceDetails:
        return await manager.get_invoice(session, invoice_id)

    @app.delete(
        "/api/v1/invoices/{invoice_id}",
        status_code=status.HTTP_204_NO_CONTENT,
        tags=["Invoices"],
    )
    async def delete_invoice(
        invoice_id: str,
        session: UserSession = Depends(get_user_session),  # noqa: B008
        manager: InvoiceLifecycleManager = Depends(get_manager),  # noqa: B008
    ) -> Response:
        await manager.delete_invoice(session, invoice_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.get(
        "/api/v1/invoices/{invoice_id}/document-url",
        response_model=DocumentUrlResponse,
        tags=["Invoices"],
    )
    async def get_document_url(
        invoice_id: str,
        session: UserSession = Depends(get_user_session),  # noqa: B008
        manager: InvoiceLifecycleManager = Depends(get_manager),  # noqa: B008
    ) -> DocumentUrlResponse:
        return DocumentUrlResponse(url=await manager.get_document_url(session, invoice_id))

    @app.post(
        "/api/v1/invoices/{invoice_id}/analyze",
        response_model=AnalysisOutcome,
        tags=["Invoices"],
    )
    async def analyze_invoice(
        invoice_id: str,
        template_id: str | None = Query(None, description="Extraction template to use"),
        session: UserSession = Depends(get_user_session),  # noqa: B008
        manager: InvoiceLifecycleManager = Depends(get_manager),  # noqa: B008
    ) -> AnalysisOutcome:
        """Run field extraction.

        Extraction failures return 200 with `success: false` and the invoice
        in `error`; a missing document returns 409 with the status unchanged.
        """
        return await manager.analyze(session, invoice_id, template_id=template_id)

    @app.post(
        "/api/v1/invoices/{invoice_id}/validate",
        response_model=InvoiceDetails,
        tags=["Invoices"],
    )
    async def validate_invoice(
        invoice_id: str,
        body: ValidateRequest,
        session: UserSession = Depends(get_user_session),  # noqa: B008
        manager: InvoiceLifecycleManager = Depends(get_manager),  # noqa: B008
    ) -> InvoiceDetails:
        """Confirm field values; 422 lists required fields that are still empty."""
        return await manager.validate(
            session, invoice_id, body.fields, template_id=body.template_id
        )

    @app.post(
        "/api/v1/invoices/{invoice_id}/export",
        response_model=ExportResult,
        tags=["Invoices"],
    )
    async def export_invoice(
        invoice_id: str,
        session: UserSession = Depends(get_user_session),  # noqa: B008
        manager: InvoiceLifecycleManager = Depends(get_manager),  # noqa: B008
    ) -> ExportResult:
        """Submit a validated invoice to Sage; failures return `success: false`."""
        return await manager.export_invoice(session, invoice_id)

    # Templates

    @app.get("/api/v1/templates", response_model=list[TemplateResponse], tags=["Templates"])
    async def list_templates(
        session: UserSession = Depends(get_user_session),  # noqa: B008
        templates: TemplateRepository = Depends(get_templates),  # noqa: B008
    ) -> list[TemplateResponse]:
        return [
            TemplateResponse.model_validate(t) for t in await templates.list_visible(session.user_id)
        ]

    @app.get("/api/v1/templates/default", response_model=TemplateResponse, tags=["Templates"])
    def get_default_template(
        session: UserSession = Depends(get_user_session),  # noqa: B008
    ) -> TemplateResponse:
        return TemplateResponse(
            id=None,
            name="Default",
            is_public=True,
            field_schema=DEFAULT_EXTRACTION_SCHEMA.fields,
        )

    @app.post(
        "/api/v1/templates",
        response_model=TemplateResponse,
        status_code=status.HTTP_201_CREATED,
        tags=["Templates"],
    )
    async def create_template(
        body: TemplateCreate,
        session: UserSession = Depends(get_user_session),  # noqa: B008
        templates: TemplateRepository = Depends(get_templates),  # noqa: B008
    ) -> TemplateResponse:
        schema = ExtractionSchema.from_mapping(
            {key: spec.model_dump() for key, spec in body.field_schema.items()}
        )
        template = await templates.create(
            body.name, schema, user_id=session.user_id, is_public=body.is_public
        )
        return TemplateResponse.model_validate(template)

    @app.get(
        "/api/v1/templates/{template_id}",
        response_model=TemplateResponse,
        tags=["Templates"],
    )
    async def get_template(
        template_id: str,
        session: UserSession = Depends(get_user_session),  # noqa: B008
        templates: TemplateRepository = Depends(get_templates),  # noqa: B008
    ) -> TemplateResponse:
        return TemplateResponse.model_validate(await templates.get(template_id, session.user_id))

    @app.put(
        "/api/v1/templates/{template_id}",
        response_model=TemplateResponse,
        tags=["Templates"],
    )
    async def update_template(
        template_id: str,
        body: TemplateUpdate,
        session: UserSession = Depends(get_user_session),  # noqa: B008
        templates: TemplateRepository = Depends(get_templates),  # noqa: B008
    ) -> TemplateResponse:
        schema = None
        if body.field_schema is not None:
            schema = ExtractionSchema.from_mapping(
                {key: spec.model_dump() for key, spec in body.field_schema.items()}
            )
        template = await templates.update(
            template_id,
            session.user_id,
            name=body.name,
            schema=schema,
            is_public=body.is_public,
        )
        return TemplateResponse.model_validate(template)

    @app.delete(
        "/api/v1/templates/{template_id}",
        status_code=status.HTTP_204_NO_CONTENT,
        tags=["Templates"],
    )
    async def delete_template(
        template_id: str,
        session: UserSession = Depends(get_user_session),  # noqa: B008
        templates: TemplateRepository = Depends(get_templates),  # noqa: B008
    ) -> Response:
        await templates.delete(template_id, session.user_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
