# commons/main.py
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from commons.api.dependencies import get_database_service
from commons.api.endpoints import router
from commons.config import settings
from commons.errors import CommonsError, ValidationError

# Logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup, release the pool on shutdown"""
    logger.info("Application starting...")

    db = get_database_service()
    await db.initialize()
    if settings.create_tables:
        await db.create_tables()

    yield

    logger.info("Application shutting down...")
    await db.close()


app = FastAPI(
    title="Detroit Commons",
    description="Community expense reimbursement service",
    version="1.0.0",
    lifespan=lifespan
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CommonsError)
async def commons_error_handler(request: Request, exc: CommonsError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    error = ValidationError("Invalid request", errors=jsonable_errors(exc))
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={"success": False, "code": "internal_error", "error": "Internal server error", "details": {}},
    )


def jsonable_errors(exc: RequestValidationError):
    return [
        {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]


# Routes
app.include_router(router, prefix="/api/v1")


@app.get("/")
async def root():
    return {
        "message": "Detroit Commons expense service is running",
        "version": "1.0.0",
        "docs": "/docs"
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "commons.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
        workers=1
    )
