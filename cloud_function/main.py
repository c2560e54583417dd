"""
Google Cloud Function entry point for the Google worker provider.

This module provides HTTP endpoints for:
- /credentials/google/<workerType>: Exchange an instance identity token for
  worker credentials
- /health: Health check endpoint
- /: API info

All configuration is done via environment variables (see
ProviderConfig.from_env).

Worker type and worker records: unless configure() is called with a provider
wired to the fleet manager's stores, each process starts with an empty
InMemoryStore. Every credential request then answers 404 "Unknown worker
type", because nothing provisioned in another process is visible here.
"""

import logging
import os
import re
import sys
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Callable, Dict, Optional, Tuple

import functions_framework
from flask import Request

# Add the repository src/ to path for local imports
sys.path.insert(
    0, os.path.join(os.path.dirname(os.path.abspath(__file__)), "..", "src")
)

from config import ProviderConfig
from errors import (
    IdentityError,
    InvalidTokenError,
    ProjectMismatchError,
    ServiceAccountMismatchError,
    UnknownWorkerError,
)
from provider import GoogleProvider
from stores import InMemoryStore

# Configure logging for Cloud Functions (JSON structured logging)
logging.basicConfig(
    level=logging.INFO,
    format='{"severity": "%(levelname)s", "message": "%(message)s", "timestamp": "%(asctime)s"}',
)
logger = logging.getLogger(__name__)

CREDENTIALS_PATH = re.compile(r"^/credentials/google/(?P<worker_type>[A-Za-z0-9_-]{1,38})$")

_provider: Optional[GoogleProvider] = None


def configure(provider: Optional[GoogleProvider]) -> None:
    """Use the given provider (and its stores) for subsequent requests."""
    global _provider
    _provider = provider


def get_provider() -> GoogleProvider:
    """
    Provider for this process, built from the environment on first use.

    The fallback provider has empty in-memory stores; see the module docstring.
    """
    if _provider is None:
        configure(GoogleProvider(ProviderConfig.from_env(), store=InMemoryStore()))
    return _provider


# =============================================================================
# Request Validation
# =============================================================================


def validate_request(func: Callable) -> Callable:
    """
    Decorator to validate incoming requests.

    Checks:
    - Content-Type for POST requests
    """

    @wraps(func)
    def wrapper(request: Request, *args, **kwargs) -> Tuple[Dict[str, Any], int]:
        if request.method == "POST":
            content_type = request.headers.get("Content-Type", "")
            if "application/json" not in content_type:
                return create_response(
                    success=False,
                    error="Invalid content type",
                    message="Content-Type must be application/json",
                    status_code=415,
                )

        return func(request, *args, **kwargs)

    return wrapper


# =============================================================================
# Response Helpers
# =============================================================================


def create_response(
    success: bool,
    data: Optional[Dict] = None,
    error: Optional[str] = None,
    message: Optional[str] = None,
    status_code: int = 200,
) -> Tuple[Dict[str, Any], int]:
    """Create a standardized API response."""
    response = {
        "success": success,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    if data:
        response["data"] = data
    if error:
        response["error"] = error
    if message:
        response["message"] = message

    return response, status_code


def identity_error_status(err: IdentityError) -> int:
    if isinstance(err, InvalidTokenError):
        return 401
    if isinstance(err, (ProjectMismatchError, ServiceAccountMismatchError)):
        return 403
    if isinstance(err, UnknownWorkerError):
        return 404
    return 403


# =============================================================================
# HTTP Endpoint Handlers
# =============================================================================


@functions_framework.http
def main(request: Request) -> Tuple[Dict[str, Any], int]:
    """
    Main entry point for Cloud Function.

    Routes requests based on path:
    - POST /credentials/google/<workerType>: Issue worker credentials
    - GET /health: Health check
    - GET /: API info
    """
    path = request.path.rstrip("/")

    routes = {
        "": handle_info,
        "/health": handle_health,
    }

    try:
        match = CREDENTIALS_PATH.match(path)
        if match:
            return handle_credentials(request, match.group("worker_type"))

        handler = routes.get(path)
        if not handler:
            return create_response(
                success=False,
                error="Not Found",
                message=f"Unknown endpoint: {path}",
                status_code=404,
            )
        return handler(request)
    except ValueError as e:
        logger.error(f"Validation error: {e}")
        return create_response(
            success=False,
            error="Validation Error",
            message=str(e),
            status_code=400,
        )
    except Exception as e:
        logger.exception(f"Internal error: {e}")
        return create_response(
            success=False,
            error="Internal Server Error",
            message="An unexpected error occurred. Check Cloud Function logs for details.",
            status_code=500,
        )


def handle_info(request: Request) -> Tuple[Dict[str, Any], int]:
    """Handle API info request."""
    return create_response(
        success=True,
        data={
            "service": "Google worker provider",
            "version": os.environ.get("APP_VERSION", "1.0.0"),
            "endpoints": {
                "POST /credentials/google/<workerType>": "Issue worker credentials",
                "GET /health": "Health check",
            },
        },
    )


@validate_request
def handle_credentials(
    request: Request, worker_type_name: str
) -> Tuple[Dict[str, Any], int]:
    """
    Handle a credential request from a booted instance.

    Request body:
    {
        "token": "<identity token from the metadata server, audience=rootUrl>"
    }
    """
    if request.method != "POST":
        return create_response(
            success=False,
            error="Method Not Allowed",
            message="Use POST to request credentials",
            status_code=405,
        )

    body = request.get_json(silent=True) or {}
    token = body.get("token")
    if not token or not isinstance(token, str):
        raise ValueError("token is required")

    provider = get_provider()
    worker_type = provider.store.worker_types.load(worker_type_name, optional=True)
    if worker_type is None:
        return create_response(
            success=False,
            error="Not Found",
            message=f"Unknown worker type: {worker_type_name}",
            status_code=404,
        )

    try:
        credential = provider.verify_id_token(token, worker_type)
    except IdentityError as e:
        # Details go to the log only; callers learn nothing about the check
        logger.warning(f"Credential request for {worker_type_name} rejected: {e!r}")
        return create_response(
            success=False,
            error="Forbidden",
            message="Credentials cannot be issued for this instance",
            status_code=identity_error_status(e),
        )

    return create_response(success=True, data=credential.to_dict())


def handle_health(request: Request) -> Tuple[Dict[str, Any], int]:
    """Handle health check request."""
    return create_response(success=True, data={"status": "healthy"})
