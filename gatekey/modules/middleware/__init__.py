"""
Authentication Middleware Module - Black Box Interface

Purpose: Guard FastAPI routes with Gatekey API keys
Interface: ApiKeyAuthMiddleware, create_api_key_middleware()
Hidden: Header extraction, outcome to status mapping, error formatting

Any FastAPI app or sub-app can register it; the only dependency is an
object with ApiKeyService.validate().
"""

import logging
from typing import Dict, Optional

from fastapi import Request
from fastapi.responses import JSONResponse

from ..api.models import AuthOutcome

logger = logging.getLogger(__name__)

# Outcomes that are not the caller's fault
_STATUS_BY_OUTCOME = {
    AuthOutcome.SERVICE_UNAVAILABLE: 503,
    AuthOutcome.INTERNAL_ERROR: 500,
}

_MESSAGE_BY_STATUS = {
    401: "Authentication failed: Invalid API key",
    500: "Internal error during authentication",
    503: "API key verification temporarily unavailable",
}


class ApiKeyAuthMiddleware:
    """
    API key authentication middleware for FastAPI applications.

    Reads the key from X-API-Key or an "Authorization: Bearer" header and
    stores the validated key view on request.state.api_key.
    """

    def __init__(
        self,
        api_key_service,
        skip_paths: Optional[Dict[str, list]] = None,
        log_attempts: bool = True,
    ):
        """
        Initialize API key middleware.

        Args:
            api_key_service: Object with an async validate(secret, source) method
            skip_paths: Dict of {path: [methods]} to skip authentication
            log_attempts: Whether to log authentication attempts
        """
        self.service = api_key_service
        self.skip_paths = skip_paths or {}
        self.log_attempts = log_attempts

    def should_skip_auth(self, request: Request) -> bool:
        """Check if authentication should be skipped for this request."""
        path = str(request.url.path)
        method = request.method.upper()

        if path in self.skip_paths:
            allowed_methods = self.skip_paths[path]
            if "*" in allowed_methods or method in allowed_methods:
                return True

        return False

    @staticmethod
    def extract_api_key(request: Request) -> Optional[str]:
        """Get the presented key from X-API-Key, falling back to a bearer token."""
        api_key = request.headers.get("x-api-key")
        if api_key:
            return api_key.strip()

        auth_header = request.headers.get("authorization")
        if auth_header and auth_header.startswith("Bearer "):
            return auth_header[len("Bearer "):].strip() or None

        return None

    @staticmethod
    def client_source(request: Request) -> str:
        return request.client.host if request.client else "unknown"

    @staticmethod
    def error_response(status_code: int, message: Optional[str] = None) -> JSONResponse:
        return JSONResponse(
            status_code=status_code,
            content={"error": message or _MESSAGE_BY_STATUS[status_code], "status": status_code},
        )

    async def __call__(self, request: Request, call_next):
        """Process the request through API key authentication."""
        if self.should_skip_auth(request):
            return await call_next(request)

        api_key = self.extract_api_key(request)
        if not api_key:
            if self.log_attempts:
                logger.warning(f"Request to {request.url.path} without API key")
            return self.error_response(401, "Authentication required: No API key provided")

        result = await self.service.validate(api_key, self.client_source(request))

        if not result.ok:
            status_code = _STATUS_BY_OUTCOME.get(result.outcome, 401)
            if self.log_attempts:
                logger.warning(
                    f"API key rejected for {request.url.path}: {result.outcome.value}"
                )
            return self.error_response(status_code)

        if self.log_attempts:
            logger.info(f"Request authenticated with API key: {result.view.id}")

        # Store authentication info for downstream use
        request.state.api_key = result.view
        return await call_next(request)


def create_api_key_middleware(
    api_key_service,
    skip_paths: Optional[Dict[str, list]] = None,
) -> ApiKeyAuthMiddleware:
    """
    Factory function to create API key middleware.

    Args:
        api_key_service: ApiKeyService instance
        skip_paths: Paths to skip authentication {"/path": ["GET", "POST"]}

    Returns:
        Configured ApiKeyAuthMiddleware instance
    """
    default_skip_paths = {
        "/health": ["GET"],
        "/metrics": ["GET"],
    }

    if skip_paths:
        default_skip_paths.update(skip_paths)

    return ApiKeyAuthMiddleware(api_key_service, skip_paths=default_skip_paths)


__all__ = ["ApiKeyAuthMiddleware", "create_api_key_middleware"]
