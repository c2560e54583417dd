"""
Exception types for the Google Cloud worker provider.
"""

from typing import Dict, List, Optional


class ApiError(Exception):
    """Error response returned by a Google Cloud REST API."""

    def __init__(
        self,
        status_code: int,
        message: str,
        errors: Optional[List[Dict]] = None,
    ):
        super().__init__(f"HTTP {status_code}: {message}")
        self.status_code = status_code
        self.message = message
        self.errors = errors or []

    @property
    def not_found(self) -> bool:
        return self.status_code == 404

    @property
    def conflict(self) -> bool:
        return self.status_code == 409

    @classmethod
    def from_response(cls, resp) -> "ApiError":
        """
        Build an ApiError from a Google error envelope.

        Google APIs answer with {"error": {"code", "message", "errors": [...]}};
        anything else falls back to the raw response text.
        """
        message = ""
        errors: List[Dict] = []
        try:
            body = resp.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            message = body["error"].get("message", "")
            errors = list(body["error"].get("errors", []))
        return cls(resp.status_code, message or resp.text[:200], errors)


class TransportError(RuntimeError):
    """Raised when a request could not be delivered within the retry budget."""


class IdentityError(Exception):
    """An instance identity claim was rejected; no credentials are issued."""


class InvalidTokenError(IdentityError):
    """Identity token signature, expiry or audience did not verify."""


class ProjectMismatchError(IdentityError):
    def __init__(self, project: str, expected_project: str):
        super().__init__(f"Invalid project {project} is not {expected_project}")
        self.project = project
        self.expected_project = expected_project


class ServiceAccountMismatchError(IdentityError):
    def __init__(self, requesting_account: str, expected_account: str):
        super().__init__(
            "Attempt to claim worker type credentials from non-worker-type instance"
        )
        self.requesting_account = requesting_account
        self.expected_account = expected_account


class UnknownWorkerError(IdentityError):
    def __init__(self, worker_id: str):
        super().__init__("Attempt to claim credentials from a non-existent worker")
        self.worker_id = worker_id


class EntityNotFoundError(KeyError):
    """Requested store record does not exist."""


class EntityExistsError(ValueError):
    """A store record with the same key already exists."""
