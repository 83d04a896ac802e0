"""
Global Exception Handling

Every failure the pipeline can surface to a user is a CartoonizerError
subclass. They carry an HTTP code and render as structured JSON.
"""

import traceback
from typing import Optional, Dict, Any
from datetime import datetime
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from src.core.logging import get_logger, session_id_var

logger = get_logger(__name__)


# =============================================================================
# Custom Exceptions
# =============================================================================

class CartoonizerError(Exception):
    """Base exception for the cartoonizer service."""

    def __init__(
        self,
        message: str,
        code: int = 500,
        session_id: Optional[str] = None,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.session_id = session_id or session_id_var.get()
        self.stage = stage
        self.details = details or {}
        super().__init__(self.message)


class UnsupportedFormatError(CartoonizerError):
    """Raised when a file is not an image or cannot be converted to one."""

    def __init__(self, message: str = "Please select a valid image file", **kwargs):
        super().__init__(message, code=415, **kwargs)


class OversizeFileError(CartoonizerError):
    """Raised when a normalized file exceeds the size ceiling."""

    def __init__(self, size: int, limit: int, **kwargs):
        super().__init__(
            f"File size should be less than {limit // (1024 * 1024)} MB",
            code=413,
            **kwargs
        )
        self.details["size_bytes"] = size
        self.details["limit_bytes"] = limit


class PipelineStageError(CartoonizerError):
    """Raised when a pipeline stage fails."""

    def __init__(self, message: str, stage: str, code: int = 500, **kwargs):
        super().__init__(message, code=code, stage=stage, **kwargs)


class BackgroundRemovalFailedError(PipelineStageError):
    """Raised when the local segmentation call fails."""

    def __init__(self, message: str = "Background removal failed", **kwargs):
        super().__init__(message, stage="background_removal", **kwargs)


class StylizationFailedError(PipelineStageError):
    """Raised when the cartoonize API fails or answers with a malformed body."""

    def __init__(
        self,
        message: str = "Cartoon conversion failed",
        http_status: Optional[int] = None,
        **kwargs
    ):
        super().__init__(message, stage="stylization", code=502, **kwargs)
        self.details["http_status"] = http_status


class ExportFailedError(CartoonizerError):
    """Raised when an artifact cannot be fetched or saved."""

    def __init__(self, message: str, kind: Optional[str] = None, **kwargs):
        super().__init__(message, code=502, **kwargs)
        self.details["kind"] = kind


class PipelineBusyError(CartoonizerError):
    """Raised when a stage is requested while another one is in flight."""

    def __init__(self, message: str = "Another operation is already running", **kwargs):
        super().__init__(message, code=409, **kwargs)


class SessionNotFoundError(CartoonizerError):
    """Raised when a session id is unknown."""

    def __init__(self, session_id: str, **kwargs):
        super().__init__(f"Session not found: {session_id}", code=404, session_id=session_id, **kwargs)


# =============================================================================
# Exception Handlers
# =============================================================================

def error_body(exc: CartoonizerError) -> Dict[str, Any]:
    """Structured JSON body for a CartoonizerError."""
    return {
        "error": exc.message,
        "error_type": type(exc).__name__,
        "session_id": exc.session_id or session_id_var.get(),
        "code": exc.code,
        "stage": exc.stage,
        "details": exc.details,
        "timestamp": datetime.utcnow().isoformat() + "Z"
    }


def register_exception_handlers(app: FastAPI):
    """Register custom exception handlers with FastAPI app."""

    @app.exception_handler(CartoonizerError)
    async def cartoonizer_exception_handler(request: Request, exc: CartoonizerError):
        log = logger.warning if exc.code < 500 else logger.error
        log(
            "cartoonizer_exception",
            error=exc.message,
            error_type=type(exc).__name__,
            code=exc.code,
            stage=exc.stage,
            details=exc.details
        )

        return JSONResponse(status_code=exc.code, content=error_body(exc))

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
            traceback=traceback.format_exc()
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "session_id": session_id_var.get(),
                "code": 500,
                "timestamp": datetime.utcnow().isoformat() + "Z"
            }
        )
