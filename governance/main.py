"""
Task Governance Engine - Application

FastAPI application serving the governance tool router.

Run for development:
    python -m governance.main
"""

import logging

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from . import SERVICE_NAME, __version__
from .config import get_config
from .errors import GovernanceError, ValidationError
from .tool_router import ERROR_STATUS_CODES, TOOL_HANDLERS, router as tool_router

# -----------------------------------------------------------------------------
# Logging Configuration
# -----------------------------------------------------------------------------
logging.basicConfig(
    level=getattr(logging, get_config().log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger("governance_main")

# -----------------------------------------------------------------------------
# Application
# -----------------------------------------------------------------------------
app = FastAPI(
    title=SERVICE_NAME,
    description="Scope, gate, constraint and memory governance for agent tasks",
    version=__version__
)

app.include_router(tool_router)


@app.get("/")
async def root():
    return {"service": SERVICE_NAME, "version": __version__}


@app.get("/health")
async def health_check():
    config = get_config()
    return {
        "status": "healthy",
        "version": __version__,
        "data_dir": str(config.data_dir),
        "tools": len(TOOL_HANDLERS),
    }


# -----------------------------------------------------------------------------
# Error Handlers
# -----------------------------------------------------------------------------
@app.exception_handler(GovernanceError)
async def governance_error_handler(request, exc: GovernanceError):
    """Map engine errors to HTTP status codes by error code."""
    status_code = ERROR_STATUS_CODES.get(exc.code, 500)
    if status_code >= 500:
        logger.error(f"{exc.code.value} on {request.url.path}: {exc.message}")
    else:
        logger.warning(f"{exc.code.value} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=status_code, content={"error": exc.to_dict()})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request, exc: RequestValidationError):
    """Malformed requests (e.g. a missing X-User-Id header) are VALIDATION_ERROR."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ())) or None
    error = ValidationError(first.get("msg", "Invalid request"), field)
    logger.warning(f"Rejected request to {request.url.path}: {error.message} ({field})")
    return JSONResponse(status_code=ERROR_STATUS_CODES[error.code], content={"error": error.to_dict()})


@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc):
    """Handle HTTP exceptions with standard error format."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "code": f"HTTP_{exc.status_code}",
                "message": exc.detail,
                "details": {}
            }
        }
    )


@app.on_event("startup")
async def startup_event():
    logger.info(f"{SERVICE_NAME} v{__version__} starting (data dir: {get_config().data_dir})")


# -----------------------------------------------------------------------------
# Main Entry Point (for development)
# -----------------------------------------------------------------------------
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
