"""
REST API client for the Google Cloud APIs the provider drives
(Compute Engine v1, IAM v1, Cloud Resource Manager v1).
"""

import logging
import random
import time
from typing import Dict, List, Optional

import google.auth
import requests
from google.auth.transport.requests import AuthorizedSession, Request
from google.oauth2 import service_account

from errors import ApiError, TransportError

logger = logging.getLogger(__name__)

COMPUTE_API = "https://compute.googleapis.com/compute/v1"
IAM_API = "https://iam.googleapis.com/v1"
CRM_API = "https://cloudresourcemanager.googleapis.com/v1"

# service_account_email of Compute Engine credentials before their first refresh
DEFAULT_ACCOUNT_PLACEHOLDER = "default"

SCOPES = [
    "https://www.googleapis.com/auth/compute",  # instances, operations
    "https://www.googleapis.com/auth/iam",  # worker service account and role
    "https://www.googleapis.com/auth/cloud-platform",  # project IAM policy
]


class GoogleRestClient:
    """REST client for the Compute Engine, IAM and Resource Manager APIs."""

    RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

    def __init__(
        self,
        project_id: str,
        credentials=None,
        timeout_s: int = 60,
        max_retries: int = 5,
        base_delay: float = 1.0,
    ):
        """
        Initialize the REST client.

        Args:
            project_id: GCP project ID
            credentials: google.auth credentials; application default
                credentials are used when omitted
            timeout_s: Request timeout in seconds
            max_retries: Maximum number of retries for transient errors
            base_delay: Base delay for exponential backoff
        """
        self.project_id = project_id
        self.timeout_s = timeout_s
        self.max_retries = max_retries
        self.base_delay = base_delay

        if credentials is None:
            credentials, _ = google.auth.default(scopes=SCOPES)
        self.credentials = credentials
        self.session = AuthorizedSession(credentials)

    @classmethod
    def from_service_account_info(
        cls, project_id: str, info: Dict, **kwargs
    ) -> "GoogleRestClient":
        """Build a client authenticated with a service account key."""
        creds = service_account.Credentials.from_service_account_info(
            info, scopes=SCOPES
        )
        return cls(project_id=project_id, credentials=creds, **kwargs)

    @property
    def client_email(self) -> Optional[str]:
        """
        Email of the identity this client authenticates as, if known.

        Compute Engine default credentials report the placeholder "default"
        until they are refreshed against the metadata server, so they are
        refreshed once here to learn the real account.
        """
        email = getattr(self.credentials, "service_account_email", None)
        if email == DEFAULT_ACCOUNT_PLACEHOLDER:
            logger.debug("Refreshing default credentials to resolve the account email")
            self.credentials.refresh(Request())
            email = getattr(self.credentials, "service_account_email", None)
        if email == DEFAULT_ACCOUNT_PLACEHOLDER:
            return None
        return email

    def _request_with_retry(self, method: str, url: str, **kwargs):
        """
        Execute HTTP request with exponential backoff retry for transient errors.

        409 is not retried here; conflicts are resolved by the caller
        re-reading the resource.

        Args:
            method: HTTP method
            url: Request URL
            **kwargs: Additional request parameters

        Returns:
            The final response, which may still carry an error status

        Raises:
            TransportError: If the request could not be sent within max retries
        """
        last_error = None

        for attempt in range(self.max_retries + 1):
            try:
                resp = self.session.request(
                    method, url, timeout=self.timeout_s, **kwargs
                )
            except requests.exceptions.RequestException as e:
                last_error = str(e)
                if attempt == self.max_retries:
                    break
                delay = self._calculate_delay(attempt)
                logger.warning(
                    f"Request error: {e}, attempt {attempt + 1}/{self.max_retries + 1}, waiting {delay:.1f}s..."
                )
                time.sleep(delay)
                continue

            if (
                resp.status_code in self.RETRYABLE_STATUS_CODES
                and attempt < self.max_retries
            ):
                delay = self._calculate_delay(attempt, resp)
                logger.warning(
                    f"Retryable error {resp.status_code} on {method} {url}, attempt {attempt + 1}/{self.max_retries + 1}, waiting {delay:.1f}s..."
                )
                time.sleep(delay)
                continue

            return resp

        raise TransportError(f"Max retries exceeded. Last error: {last_error}")

    def _calculate_delay(self, attempt: int, resp=None) -> float:
        """
        Calculate delay with exponential backoff and jitter.

        Args:
            attempt: Current attempt number
            resp: Optional response object (to check Retry-After header)

        Returns:
            Delay in seconds
        """
        if resp is not None and "Retry-After" in resp.headers:
            try:
                return float(resp.headers["Retry-After"])
            except ValueError:
                pass

        delay = self.base_delay * (2**attempt)
        jitter = delay * 0.2 * random.uniform(-0.5, 0.5)
        return min(delay + jitter, 60.0)

    def _call(self, method: str, url: str, **kwargs) -> Dict:
        """Send a request and decode the JSON body, raising ApiError on failure."""
        resp = self._request_with_retry(method, url, **kwargs)
        if resp.status_code >= 400:
            raise ApiError.from_response(resp)
        if not resp.content:
            return {}
        return resp.json()

    def _project(self, api: str) -> str:
        return f"{api}/projects/{self.project_id}"

    # IAM: service accounts

    def get_service_account(self, email: str) -> Dict:
        return self._call("GET", f"{self._project(IAM_API)}/serviceAccounts/{email}")

    def create_service_account(
        self, account_id: str, display_name: str, description: str
    ) -> Dict:
        return self._call(
            "POST",
            f"{self._project(IAM_API)}/serviceAccounts",
            json={
                "accountId": account_id,
                "serviceAccount": {
                    "displayName": display_name,
                    "description": description,
                },
            },
        )

    def get_service_account_iam_policy(self, email: str) -> Dict:
        return self._call(
            "POST",
            f"{self._project(IAM_API)}/serviceAccounts/{email}:getIamPolicy",
            json={},
        )

    def set_service_account_iam_policy(self, email: str, policy: Dict) -> Dict:
        return self._call(
            "POST",
            f"{self._project(IAM_API)}/serviceAccounts/{email}:setIamPolicy",
            json={"policy": policy},
        )

    # IAM: custom roles

    def get_role(self, role_id: str) -> Dict:
        return self._call("GET", f"{self._project(IAM_API)}/roles/{role_id}")

    def create_role(
        self, role_id: str, title: str, description: str, permissions: List[str]
    ) -> Dict:
        return self._call(
            "POST",
            f"{self._project(IAM_API)}/roles",
            json={
                "roleId": role_id,
                "role": {
                    "title": title,
                    "description": description,
                    "includedPermissions": permissions,
                },
            },
        )

    def patch_role(
        self, role_id: str, role: Dict, update_mask: str = "includedPermissions"
    ) -> Dict:
        return self._call(
            "PATCH",
            f"{self._project(IAM_API)}/roles/{role_id}",
            params={"updateMask": update_mask},
            json=role,
        )

    def undelete_role(self, role_id: str, etag: Optional[str] = None) -> Dict:
        body = {"etag": etag} if etag else {}
        return self._call(
            "POST", f"{self._project(IAM_API)}/roles/{role_id}:undelete", json=body
        )

    # Resource Manager: project policy

    def get_project_iam_policy(self) -> Dict:
        return self._call("POST", f"{self._project(CRM_API)}:getIamPolicy", json={})

    def set_project_iam_policy(self, policy: Dict) -> Dict:
        return self._call(
            "POST", f"{self._project(CRM_API)}:setIamPolicy", json={"policy": policy}
        )

    # Compute: regions, images, instances

    def get_region(self, region: str) -> Dict:
        return self._call("GET", f"{self._project(COMPUTE_API)}/regions/{region}")

    def get_image(self, image: str) -> Dict:
        """
        Get an image by short name, resource path or URL.

        Short names resolve inside this project; paths such as
        projects/debian-cloud/global/images/family/debian-12 are used as given.
        """
        if image.startswith("https://"):
            url = image
        elif "/" in image:
            url = f"{COMPUTE_API}/{image.lstrip('/')}"
        else:
            url = f"{self._project(COMPUTE_API)}/global/images/{image}"
        return self._call("GET", url)

    def insert_instance(self, zone: str, body: Dict, request_id: str) -> Dict:
        """
        Request creation of an instance.

        Args:
            zone: Short zone name
            body: Instance resource
            request_id: Idempotency token; retries with the same token do
                not create a second instance

        Returns:
            The zonal operation tracking the creation
        """
        return self._call(
            "POST",
            f"{self._project(COMPUTE_API)}/zones/{zone}/instances",
            params={"requestId": request_id},
            json=body,
        )

    def get_instance(self, zone: str, name: str) -> Dict:
        return self._call(
            "GET", f"{self._project(COMPUTE_API)}/zones/{zone}/instances/{name}"
        )

    def delete_instance(self, zone: str, name: str, request_id: str) -> Dict:
        return self._call(
            "DELETE",
            f"{self._project(COMPUTE_API)}/zones/{zone}/instances/{name}",
            params={"requestId": request_id},
        )

    def list_instances(self, labels: Dict[str, str]) -> List[Dict]:
        """
        List instances in every zone carrying all of the given labels.

        Args:
            labels: Label key/value pairs that must all match

        Returns:
            Instance resources; each carries its zone URL
        """
        url = f"{self._project(COMPUTE_API)}/aggregated/instances"
        label_filter = " ".join(
            f'(labels.{key} = "{value}")' for key, value in sorted(labels.items())
        )

        instances: List[Dict] = []
        page_token: Optional[str] = None

        while True:
            params = {"filter": label_filter}
            if page_token:
                params["pageToken"] = page_token

            data = self._call("GET", url, params=params)
            for scoped in data.get("items", {}).values():
                instances.extend(scoped.get("instances", []))

            page_token = data.get("nextPageToken")
            if not page_token:
                break

        return instances

    # Compute: operations

    def get_zone_operation(self, zone: str, name: str) -> Dict:
        return self._call(
            "GET", f"{self._project(COMPUTE_API)}/zones/{zone}/operations/{name}"
        )

    def delete_zone_operation(self, zone: str, name: str) -> Dict:
        return self._call(
            "DELETE", f"{self._project(COMPUTE_API)}/zones/{zone}/operations/{name}"
        )

    def get_region_operation(self, region: str, name: str) -> Dict:
        return self._call(
            "GET", f"{self._project(COMPUTE_API)}/regions/{region}/operations/{name}"
        )

    def delete_region_operation(self, region: str, name: str) -> Dict:
        return self._call(
            "DELETE",
            f"{self._project(COMPUTE_API)}/regions/{region}/operations/{name}",
        )

    def get_global_operation(self, name: str) -> Dict:
        return self._call(
            "GET", f"{self._project(COMPUTE_API)}/global/operations/{name}"
        )

    def delete_global_operation(self, name: str) -> Dict:
        return self._call(
            "DELETE", f"{self._project(COMPUTE_API)}/global/operations/{name}"
        )
