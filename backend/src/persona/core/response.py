"""Response helpers for the Persona API.

Successful responses are wrapped as ``{"data": ...}`` and errors as
``{"error": {"code", "message", "details"}}``.
"""

from typing import Any

from fastapi import status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, Response

from .logging import get_logger

logger = get_logger(__name__)


def to_serializable(obj):
    """Recursively convert Pydantic models, lists, and dicts to serializable types."""
    if hasattr(obj, "model_dump"):
        return obj.model_dump(by_alias=True)
    if isinstance(obj, list):
        return [to_serializable(item) for item in obj]
    if isinstance(obj, dict):
        return {k: to_serializable(v) for k, v in obj.items()}
    return obj


class PersonaResponse:
    """Consistent single-envelope responses for API endpoints."""

    @staticmethod
    def success(
        data: Any, status_code: int = status.HTTP_200_OK, headers: dict[str, str] | None = None
    ) -> JSONResponse:
        response_content = jsonable_encoder({"data": to_serializable(data)})
        return JSONResponse(content=response_content, status_code=status_code, headers=headers)

    @staticmethod
    def error(
        message: str,
        code: str = "API_ERROR",
        details: Any | None = None,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        headers: dict[str, str] | None = None,
        error_id: str | None = None,
    ) -> JSONResponse:
        """Create an error response.

        Args:
            message: Error message
            code: Error code for client handling
            details: Optional structured details
            status_code: HTTP status code (default: 400)
            headers: Optional response headers
            error_id: Correlation id, set for server errors

        """
        error_content: dict[str, Any] = {"code": code, "message": message, "details": to_serializable(details or {})}
        if error_id is not None:
            error_content["error_id"] = error_id

        logger.debug(
            "Creating error response",
            extra={"status_code": status_code, "error_code": code, "error_id": error_id},
        )
        return JSONResponse(
            content=jsonable_encoder({"error": error_content}), status_code=status_code, headers=headers
        )

    @staticmethod
    def created(data: Any, headers: dict[str, str] | None = None) -> JSONResponse:
        return PersonaResponse.success(data, status.HTTP_201_CREATED, headers)

    @staticmethod
    def no_content(headers: dict[str, str] | None = None) -> Response:
        return Response(content=b"", status_code=status.HTTP_204_NO_CONTENT, headers=headers)
