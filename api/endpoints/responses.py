"""
Common API response helpers.

Read endpoints raise HTTPException with a structured detail; mutating
endpoints always answer with a MutationResponse body, using the error's
status code on failure.
"""

from typing import Optional

from fastapi import HTTPException
from fastapi.responses import JSONResponse

from core.errors import GatewayError
from models.common import MutationResponse


def http_error(e: GatewayError) -> HTTPException:
    """Convert a classified error to an HTTP exception."""
    return HTTPException(
        status_code=e.status_code,
        detail={
            "error": e.error_type,
            "message": e.message,
            "suggestion": e.suggestion,
        },
    )


def mutation_error(e: GatewayError, record_id: Optional[str] = None) -> JSONResponse:
    """Failed mutation: {success: false, error, error_type, suggestion}."""
    body = MutationResponse(
        success=False,
        error=e.message,
        error_type=e.error_type,
        suggestion=e.suggestion,
        id=record_id,
        output=getattr(e, "output", None) or None,
    )
    return JSONResponse(status_code=e.status_code, content=body.model_dump(exclude_none=True))


def mutation_ok(record_id: Optional[str] = None, message: Optional[str] = None) -> MutationResponse:
    return MutationResponse(success=True, id=record_id, message=message)
