from fastapi import FastAPI, Depends, Path, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from sqlalchemy import text
from contextlib import asynccontextmanager
import asyncio
import time
import structlog

from image_service.config import settings
from image_service.database import SessionLocal, init_db
from image_service.logging_config import configure_logging
from image_service.auth_client import get_current_user
from image_service.crud import ImageCatalog
from image_service.errors import ImageServiceError, StorageUnavailable
from image_service.image_processor import ImageProcessor
from image_service.metrics import PipelineMetrics, get_metrics
from image_service.schemas import ApiResponse, HealthCheck, TransformRequest, UploadRequest
from image_service.services import IngestionCoordinator, RetrievalCoordinator, TransformCoordinator
from image_service.storage import StorageGateway

configure_logging()
logger = structlog.get_logger(__name__)

pipeline_metrics = PipelineMetrics(enabled=settings.metrics_enabled)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management"""
    logger.info("Starting Image Service", version=settings.api_version)

    try:
        init_db()
    except Exception as e:
        logger.error("Failed to initialize database", error=str(e))
        raise

    app.state.catalog = ImageCatalog(SessionLocal)
    app.state.storage = StorageGateway.from_settings(settings)
    app.state.processor = ImageProcessor(max_image_pixels=settings.max_image_pixels)

    try:
        app.state.storage.ensure_bucket()
    except StorageUnavailable:
        # presigned urls can still be issued; health reports the outage
        logger.warning("Object storage not reachable at startup", endpoint=settings.minio_endpoint)

    yield

    logger.info("Shutting down Image Service")


app = FastAPI(
    title=settings.api_title,
    description=settings.api_description,
    version=settings.api_version,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Middleware to collect HTTP metrics"""
    start_time = time.time()
    response = await call_next(request)
    route = request.scope.get("route")

    pipeline_metrics.record_http_request(
        method=request.method,
        endpoint=getattr(route, "path", request.url.path),
        status_code=response.status_code,
        duration=time.time() - start_time
    )

    return response


@app.exception_handler(ImageServiceError)
async def image_service_error_handler(request: Request, exc: ImageServiceError):
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "Request failed",
        code=exc.code,
        message=exc.message,
        status=exc.status_code,
        method=request.method,
        path=request.url.path,
        errors=exc.errors
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(part) for part in err["loc"] if part != "body"), "message": err["msg"]}
        for err in exc.errors()
    ]
    logger.warning("Request validation failed", path=request.url.path, errors=errors)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "code": "BAD_REQUEST", "message": "Validation Failed", "errors": errors},
    )


# Dependencies

def get_catalog(request: Request) -> ImageCatalog:
    return request.app.state.catalog


def get_storage(request: Request) -> StorageGateway:
    return request.app.state.storage


def get_processor(request: Request) -> ImageProcessor:
    return request.app.state.processor


def get_ingestion_coordinator(
    catalog: ImageCatalog = Depends(get_catalog),
    storage: StorageGateway = Depends(get_storage),
) -> IngestionCoordinator:
    return IngestionCoordinator(
        catalog,
        storage,
        allowed_content_types=settings.allowed_content_types,
        max_upload_size=settings.max_upload_size,
        metrics=pipeline_metrics,
    )


def get_transform_coordinator(
    catalog: ImageCatalog = Depends(get_catalog),
    storage: StorageGateway = Depends(get_storage),
    processor: ImageProcessor = Depends(get_processor),
) -> TransformCoordinator:
    return TransformCoordinator(catalog, storage, processor, settings.image_domain, metrics=pipeline_metrics)


def get_retrieval_coordinator(catalog: ImageCatalog = Depends(get_catalog)) -> RetrievalCoordinator:
    return RetrievalCoordinator(catalog, settings.image_domain, max_page_size=settings.max_page_size)


# Routes

@app.get("/")
async def root():
    return {"message": settings.api_title, "version": settings.api_version}


def _check_dependencies(catalog: ImageCatalog, storage: StorageGateway):
    with catalog.session_factory() as db:
        db.execute(text("SELECT 1"))
    storage.check_connection()


@app.get("/health", response_model=HealthCheck)
async def health_check(
    catalog: ImageCatalog = Depends(get_catalog),
    storage: StorageGateway = Depends(get_storage),
):
    try:
        await asyncio.to_thread(_check_dependencies, catalog, storage)
    except Exception as e:
        logger.error("Health check failed", error=str(e))
        return JSONResponse(status_code=503, content={"status": "unhealthy", "detail": str(e)})

    return HealthCheck(status="healthy", database="connected", storage="connected")


@app.get("/metrics")
async def metrics():
    content, content_type = get_metrics()
    return Response(content, media_type=content_type)


@app.post("/images/upload", status_code=status.HTTP_201_CREATED, response_model=ApiResponse)
async def upload_image(
    payload: UploadRequest,
    current_user: dict = Depends(get_current_user),
    coordinator: IngestionCoordinator = Depends(get_ingestion_coordinator),
):
    ticket = await coordinator.begin_upload(current_user["user_id"], payload.content_type, payload.file_size)
    return ApiResponse(data=ticket, message="Upload URL generated successfully")


@app.post("/images/{image_id}/transform", status_code=status.HTTP_201_CREATED, response_model=ApiResponse)
async def transform_image(
    payload: TransformRequest,
    image_id: int = Path(..., gt=0),
    current_user: dict = Depends(get_current_user),
    coordinator: TransformCoordinator = Depends(get_transform_coordinator),
):
    result = await coordinator.transform(current_user["user_id"], image_id, payload.transformation)
    return ApiResponse(data=result, message="Image transformed successfully")


@app.get("/images", response_model=ApiResponse)
async def list_transformed_images(
    page: int = Query(1),
    limit: int = Query(settings.default_page_size),
    current_user: dict = Depends(get_current_user),
    coordinator: RetrievalCoordinator = Depends(get_retrieval_coordinator),
):
    result = await coordinator.list_page(current_user["user_id"], page, limit)
    return ApiResponse(data=result.items, meta=result.pagination.model_dump())


@app.get("/images/{image_id}", response_model=ApiResponse)
async def get_transformed_image(
    image_id: int = Path(..., gt=0),
    current_user: dict = Depends(get_current_user),
    coordinator: RetrievalCoordinator = Depends(get_retrieval_coordinator),
):
    image = await coordinator.get_one(current_user["user_id"], image_id)
    return ApiResponse(data=image, message="Image retrieved successfully")
