"""
Main FastAPI application entry point.
"""
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from examgrader.core.config import settings
from examgrader.core.database import init_db
from examgrader.core.errors import ErrorKind, GradingError
from examgrader.api.attempts import router as attempts_router
from examgrader.api.questions import router as questions_router
from examgrader.api.weakness import router as weakness_router

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting %s %s...", settings.APP_NAME, settings.APP_VERSION)
    if settings.AUTO_CREATE_TABLES:
        init_db()
        logger.info("Database tables ensured")
    yield
    logger.info("Shutdown complete")


app = FastAPI(title=settings.APP_NAME, version=settings.APP_VERSION, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(GradingError)
async def grading_error_handler(request: Request, exc: GradingError):
    """Typed grading failures go back to the caller verbatim."""
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    kind = {404: ErrorKind.NOT_FOUND.value, 409: ErrorKind.CONFLICT.value}.get(exc.status_code, "http_error")
    return JSONResponse(status_code=exc.status_code, content={"error": {"type": kind, "message": exc.detail}},
                        headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"error": {"type": ErrorKind.INVALID_INPUT.value, "message": "Validation error",
                           "details": jsonable_errors(exc)}},
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled exception on %s %s: %s", request.method, request.url.path, exc, exc_info=True)
    content = {"error": {"type": "internal_error", "message": "An internal error occurred"}}
    if settings.DEBUG and not settings.is_production():
        content["error"]["debug"] = str(exc)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=content)


def jsonable_errors(exc: RequestValidationError) -> list:
    return [{"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")} for e in exc.errors()]


@app.get("/health", tags=["Health"])
def health():
    return {"status": "ok", "version": settings.APP_VERSION}


app.include_router(attempts_router, prefix=f"{settings.API_V1_PREFIX}/attempts", tags=["attempts"])
app.include_router(questions_router, prefix=f"{settings.API_V1_PREFIX}/questions", tags=["questions"])
app.include_router(weakness_router, prefix=f"{settings.API_V1_PREFIX}/weaknesses", tags=["weaknesses"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("examgrader.main:app", host="0.0.0.0", port=8000, log_level=settings.LOG_LEVEL.lower())
