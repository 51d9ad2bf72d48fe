import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from core import db
from core.cloudinary import CloudinaryStore, UploadConstraints
from core.errors import LifecycleError
from core.settings import Settings, cors_origins, load_settings
from courses import repository as course_repository
from courses import router as courses_router
from media.lifecycle import MediaLifecycle

logger = logging.getLogger(__name__)


def build_lifecycle(settings: Settings) -> MediaLifecycle:
    connections = db.connection_cache(settings.database_url, timeout_s=settings.connect_timeout_s)
    blobs = CloudinaryStore.from_settings(settings)
    constraints = UploadConstraints(
        max_bytes=settings.max_upload_bytes,
        allowed_formats=settings.allowed_formats,
    )
    return MediaLifecycle(connections, blobs, course_repository, constraints=constraints)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Missing credentials raise here, before the app serves anything.
    settings = load_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    lifecycle = build_lifecycle(settings)
    app.state.lifecycle = lifecycle
    if await lifecycle.blobs.ping():
        logger.info("cloudinary_connected cloud=%s", settings.cloudinary_cloud_name)

    # The database pool is opened lazily on the first request and reused after that.
    try:
        yield
    finally:
        await lifecycle.connections.close()


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    logger.info(
        "request method=%s path=%s origin=%s",
        request.method,
        request.url.path,
        request.headers.get("origin") or "unknown",
    )
    return await call_next(request)


@app.exception_handler(LifecycleError)
async def lifecycle_error_handler(_: Request, exc: LifecycleError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("request_failed kind=%s error=%s", exc.kind, exc)
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.kind, "message": str(exc)},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("request_crashed path=%s", request.url.path)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "ServerError", "message": "Internal server error."},
    )


app.include_router(courses_router.router, tags=["courses"])


@app.get("/api/health")
def health() -> dict:
    return {
        "status": "OK",
        "message": "Course API is running",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/")
def root() -> dict:
    return {"message": "course media api"}
