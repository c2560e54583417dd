"""
Issuing Taskcluster credentials to instances that prove their identity.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

import taskcluster
from google.auth import exceptions as google_exceptions
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token

from errors import (
    InvalidTokenError,
    ProjectMismatchError,
    ServiceAccountMismatchError,
    UnknownWorkerError,
)
from models import Credential, Worker, WorkerType
from stores import WorkerStore

logger = logging.getLogger(__name__)

# Credentials start in the past to absorb clock skew on the worker
CREDENTIAL_START_SKEW = timedelta(minutes=15)
CREDENTIAL_LIFETIME = timedelta(hours=96)


def worker_id_for(instance_id) -> str:
    """Worker id for a Compute Engine instance id (globally unique)."""
    return f"gcp-{instance_id}"


def verify_google_token(token: str, audience: str) -> Dict:
    """Verify a Google-signed identity token and return its claims."""
    return id_token.verify_oauth2_token(
        token, google_requests.Request(), audience=audience
    )


class CredentialIssuer:
    """
    Hands out temporary credentials to instances of a worker type.

    All fields checked in the token are signed by Google rather than the
    requester, so they cannot be forged. Be careful when validating new
    fields: some claims are chosen by whoever requested the token.
    """

    def __init__(
        self,
        project_id: str,
        root_url: str,
        provisioner_id: str,
        worker_account_email: str,
        worker_store: WorkerStore,
        taskcluster_credentials: Dict[str, str],
        verifier: Optional[Callable[[str, str], Dict]] = None,
    ):
        self.project_id = project_id
        self.root_url = root_url
        self.provisioner_id = provisioner_id
        self.worker_account_email = worker_account_email
        self.worker_store = worker_store
        self.taskcluster_credentials = taskcluster_credentials
        self.verifier = verifier or verify_google_token

    def verify_id_token(self, token: str, worker_type: WorkerType) -> Credential:
        """
        Exchange an instance identity token for worker credentials.

        Args:
            token: Identity token from the instance metadata server, minted
                with the root URL as audience
            worker_type: Worker type the instance claims to belong to

        Returns:
            Credential scoped to the worker type and worker id

        Raises:
            InvalidTokenError: Token did not verify
            ProjectMismatchError: Instance runs in another project
            ServiceAccountMismatchError: Instance runs as another account
            UnknownWorkerError: No worker row for this instance and worker type
        """
        try:
            payload = self.verifier(token, self.root_url)
        except (ValueError, google_exceptions.GoogleAuthError) as e:
            raise InvalidTokenError(f"Identity token rejected: {e}") from e

        try:
            dat = payload["google"]["compute_engine"]
            project = dat["project_id"]
            instance_id = dat["instance_id"]
        except (KeyError, TypeError) as e:
            raise InvalidTokenError(
                "Identity token carries no compute engine claims; "
                "request it with format=full"
            ) from e

        if project != self.project_id:
            raise ProjectMismatchError(project, self.project_id)

        # Nobody else in the project may create instances running as the
        # worker service account
        account = payload.get("email") or payload.get("sub")
        if account != self.worker_account_email:
            raise ServiceAccountMismatchError(account, self.worker_account_email)

        # A worker of another worker type does not load under this one
        worker_id = worker_id_for(instance_id)
        worker = self.worker_store.load(worker_type.name, worker_id, optional=True)
        if worker is None:
            raise UnknownWorkerError(worker_id)

        def mark_credentialed(w: Worker) -> None:
            w.credentialed = True

        worker.modify(mark_credentialed)

        issued = datetime.now(timezone.utc)
        start = issued - CREDENTIAL_START_SKEW
        expiry = issued + CREDENTIAL_LIFETIME
        scopes = [
            f"assume:worker-type:{self.provisioner_id}/{worker_type.name}",
            f"assume:worker-id:{worker_id}",
        ]
        client_id = f"worker/google/{self.project_id}/{instance_id}"

        temp = taskcluster.createTemporaryCredentials(
            self.taskcluster_credentials["clientId"],
            self.taskcluster_credentials["accessToken"],
            start,
            expiry,
            scopes,
            name=client_id,
        )
        logger.info(f"[{worker_type.name}] Issued credentials to {worker_id}")

        return Credential(
            client_id=temp["clientId"],
            access_token=temp["accessToken"],
            certificate=temp["certificate"],
            scopes=scopes,
            start=start,
            expiry=expiry,
        )
