"""
Worker provider lifecycle for Google Compute Engine.

The fleet manager calls ``initiate`` once when the provider is activated, then
on every provisioning iteration ``prepare``, ``provision`` and
``handle_operations`` for each worker type, and ``cleanup`` at the end.
Termination calls come from scale-down and worker type deletion.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from clients import GoogleRestClient
from config import ProviderConfig
from credentials import CredentialIssuer, worker_id_for
from errors import ApiError
from models import Credential, Operation, Worker, WorkerType
from operations import OperationTracker
from provisioner import PROVIDER_LABEL, WORKER_TYPE_LABEL, InstanceProvisioner
from reconcile import read_modify_set
from stores import InMemoryStore

logger = logging.getLogger(__name__)

WORKER_ACCOUNT_ID = "taskcluster-workers"
WORKER_ROLE_ID = "taskcluster_workers"
SERVICE_ACCOUNT_USER_ROLE = "roles/iam.serviceAccountUser"

# Rows younger than this may belong to instances still being created
STALE_WORKER_GRACE = timedelta(minutes=15)


class Provider(ABC):
    """Operations the fleet manager invokes on every cloud provider."""

    def __init__(self, name: str):
        self.name = name

    @abstractmethod
    def initiate(self) -> None:
        """Set up shared cloud resources once per activation."""

    @abstractmethod
    def prepare(self) -> None:
        """Start a provisioning iteration."""

    @abstractmethod
    def provision(self, worker_type: WorkerType) -> Optional[Worker]:
        """Add capacity to a worker type."""

    @abstractmethod
    def handle_operations(self, worker_type: WorkerType) -> None:
        """Advance in-flight cloud operations of a worker type."""

    @abstractmethod
    def cleanup(self) -> None:
        """Finish a provisioning iteration."""

    @abstractmethod
    def verify_id_token(self, token: str, worker_type: WorkerType) -> Credential:
        """Exchange an instance identity proof for worker credentials."""

    @abstractmethod
    def terminate_worker(self, worker_type: WorkerType, worker: Worker) -> None:
        """Terminate one worker."""

    @abstractmethod
    def terminate_worker_type(self, worker_type: WorkerType) -> None:
        """Terminate every worker of a worker type."""

    @abstractmethod
    def terminate_all_workers(self) -> None:
        """Terminate every worker this provider created."""

    @abstractmethod
    def list_workers(self, worker_type: WorkerType) -> List[Dict]:
        """Describe the live instances of a worker type."""

    @abstractmethod
    def query_worker_state(self, worker: Worker) -> Optional[str]:
        """Cloud-side state of a worker, None if it no longer exists."""

    @abstractmethod
    def worker_info(self, worker: Worker) -> Dict:
        """Descriptive information about a worker."""


class GoogleProvider(Provider):
    """Provider that runs workers as Compute Engine instances."""

    def __init__(
        self,
        config: ProviderConfig,
        api: Optional[GoogleRestClient] = None,
        store: Optional[InMemoryStore] = None,
    ):
        """
        Set up the provider.

        Args:
            config: Provider configuration
            api: REST client; built from config credentials when omitted
            store: Worker type and worker records
        """
        super().__init__(config.name)
        self.config = config
        self.project_id = config.project_id

        if api is None:
            info = config.load_service_account_info()
            if info is not None:
                api = GoogleRestClient.from_service_account_info(config.project_id, info)
            else:
                api = GoogleRestClient(project_id=config.project_id)
        self.api = api
        self.store = store or InMemoryStore()

        self._own_client_email = config.own_client_email
        self.worker_account_email = (
            f"{WORKER_ACCOUNT_ID}@{self.project_id}.iam.gserviceaccount.com"
        )
        self.worker_role_name = f"projects/{self.project_id}/roles/{WORKER_ROLE_ID}"

        self.tracker = OperationTracker(api, self.name)
        self.provisioner = InstanceProvisioner(
            api=api,
            tracker=self.tracker,
            worker_store=self.store.workers,
            provider_name=self.name,
            provisioner_id=config.provisioner_id,
            root_url=config.root_url,
            worker_account_email=self.worker_account_email,
        )
        self.issuer = CredentialIssuer(
            project_id=self.project_id,
            root_url=config.root_url,
            provisioner_id=config.provisioner_id,
            worker_account_email=self.worker_account_email,
            worker_store=self.store.workers,
            taskcluster_credentials=config.taskcluster_credentials,
        )

        # Instances seen by prepare(), keyed by worker id
        self._snapshot: Optional[Dict[str, Dict]] = None
        self._snapshot_time: Optional[datetime] = None

    @property
    def own_client_email(self) -> Optional[str]:
        """Account the provider itself runs as; configured, else asked of the client."""
        if not self._own_client_email:
            self._own_client_email = self.api.client_email
        return self._own_client_email

    def initiate(self) -> None:
        """
        Set up the service account and role shared by all workers.

        The default compute service account is not restricted enough, so
        workers run as a dedicated account holding only the configured
        permissions. Every step converges and is safe to repeat; manual
        changes to the role's permissions are undone.
        """
        logger.info(f"Initiating provider {self.name} in project {self.project_id}")
        self._ensure_worker_account()
        self._ensure_account_user_binding()
        self._ensure_worker_role()
        self._ensure_role_binding()
        logger.info(f"Provider {self.name} initiated")

    def _ensure_worker_account(self) -> None:
        read_modify_set(
            read=lambda: self.api.get_service_account(self.worker_account_email),
            compare=lambda account: True,  # never modified once created
            modify=lambda account: None,
            set_=lambda: self.api.create_service_account(
                WORKER_ACCOUNT_ID,
                display_name="Taskcluster Workers",
                description="A service account shared by all Taskcluster workers.",
            ),
            description=f"service account {self.worker_account_email}",
        )

    def _ensure_account_user_binding(self) -> None:
        """Let the provider's own identity create instances running as the worker account."""
        own_email = self.own_client_email
        if not own_email:
            raise ValueError(
                "Cannot determine the provider's own service account; "
                "set --own-client-email or GOOGLE_CLIENT_EMAIL"
            )
        member = f"serviceAccount:{own_email}"

        def modify(policy: Dict) -> None:
            policy = _with_member(policy, SERVICE_ACCOUNT_USER_ROLE, member)
            self.api.set_service_account_iam_policy(self.worker_account_email, policy)

        read_modify_set(
            read=lambda: self.api.get_service_account_iam_policy(
                self.worker_account_email
            ),
            compare=lambda policy: _has_member(policy, SERVICE_ACCOUNT_USER_ROLE, member),
            modify=modify,
            description=f"IAM policy of {self.worker_account_email}",
        )

    def _ensure_worker_role(self) -> None:
        permissions = sorted(self.config.instance_permissions)

        def modify(role: Dict) -> None:
            if role.get("deleted"):
                role = self.api.undelete_role(WORKER_ROLE_ID, role.get("etag"))
            role = dict(role, includedPermissions=permissions)
            self.api.patch_role(WORKER_ROLE_ID, role)

        read_modify_set(
            read=lambda: self.api.get_role(WORKER_ROLE_ID),
            compare=lambda role: not role.get("deleted")
            and sorted(role.get("includedPermissions", [])) == permissions,
            modify=modify,
            set_=lambda: self.api.create_role(
                WORKER_ROLE_ID,
                title="Taskcluster Workers",
                description="Role shared by all Taskcluster workers.",
                permissions=permissions,
            ),
            description=f"role {self.worker_role_name}",
        )

    def _ensure_role_binding(self) -> None:
        member = f"serviceAccount:{self.worker_account_email}"

        def modify(policy: Dict) -> None:
            self.api.set_project_iam_policy(
                _with_member(policy, self.worker_role_name, member)
            )

        read_modify_set(
            read=self.api.get_project_iam_policy,
            compare=lambda policy: _has_member(policy, self.worker_role_name, member),
            modify=modify,
            description=f"IAM policy of project {self.project_id}",
        )

    def prepare(self) -> None:
        """Snapshot the instances this provider owns for the coming iteration."""
        instances = self.api.list_instances({PROVIDER_LABEL: self.name})
        self._snapshot = {worker_id_for(inst["id"]): inst for inst in instances}
        self._snapshot_time = datetime.now(timezone.utc)
        logger.debug(f"Provider {self.name} sees {len(instances)} instance(s)")

    def provision(self, worker_type: WorkerType) -> Optional[Worker]:
        return self.provisioner.provision(worker_type)

    def handle_operations(self, worker_type: WorkerType) -> None:
        self.tracker.handle_operations(worker_type)

    def cleanup(self) -> None:
        """
        Remove worker rows whose instance is gone.

        Only rows older than STALE_WORKER_GRACE at the time of the prepare()
        snapshot are considered, so instances still being created survive.
        """
        if self._snapshot is None:
            return
        cutoff = self._snapshot_time - STALE_WORKER_GRACE
        removed = 0
        for worker in self.store.workers.scan(provider=self.name):
            if worker.worker_id in self._snapshot or worker.created > cutoff:
                continue
            self.store.workers.remove(worker)
            removed += 1
        if removed:
            logger.info(f"Removed {removed} worker(s) whose instance no longer exists")
        self._snapshot = None
        self._snapshot_time = None

    def verify_id_token(self, token: str, worker_type: WorkerType) -> Credential:
        return self.issuer.verify_id_token(token, worker_type)

    def _delete_instance(self, zone: str, name: str) -> Optional[Operation]:
        """Request deletion of an instance; None if it is already gone."""
        try:
            op = self.api.delete_instance(zone, name, request_id=str(uuid.uuid4()))
        except ApiError as e:
            if not e.not_found:
                raise
            logger.debug(f"Instance {name} in {zone} already deleted")
            return None
        logger.info(f"Deleting instance {name} in {zone}")
        return Operation.from_api(op)

    def terminate_worker(self, worker_type: WorkerType, worker: Worker) -> None:
        data = worker.provider_data
        op = self._delete_instance(data["zone"], data["instance_name"])
        self.store.workers.remove(worker)
        if op is not None:
            self.tracker.track(worker_type, op)

    def terminate_worker_type(self, worker_type: WorkerType) -> None:
        instances = self.api.list_instances(
            {PROVIDER_LABEL: self.name, WORKER_TYPE_LABEL: worker_type.name}
        )
        for inst in instances:
            op = self._delete_instance(inst["zone"].split("/")[-1], inst["name"])
            if op is not None:
                self.tracker.track(worker_type, op)
        for worker in self.store.workers.scan(
            worker_type=worker_type.name, provider=self.name
        ):
            self.store.workers.remove(worker)
        logger.info(
            f"[{worker_type.name}] Terminating {len(instances)} instance(s)"
        )
        self.tracker.handle_operations(worker_type)

    def terminate_all_workers(self) -> None:
        instances = self.api.list_instances({PROVIDER_LABEL: self.name})
        for inst in instances:
            op = self._delete_instance(inst["zone"].split("/")[-1], inst["name"])
            name = inst.get("labels", {}).get(WORKER_TYPE_LABEL)
            worker_type = (
                self.store.worker_types.load(name, optional=True) if name else None
            )
            if op is not None and worker_type is not None:
                self.tracker.track(worker_type, op)
        for worker in self.store.workers.scan(provider=self.name):
            self.store.workers.remove(worker)
        logger.info(f"Provider {self.name} terminating {len(instances)} instance(s)")

    def list_workers(self, worker_type: WorkerType) -> List[Dict]:
        instances = self.api.list_instances(
            {PROVIDER_LABEL: self.name, WORKER_TYPE_LABEL: worker_type.name}
        )
        return [
            {
                "workerId": worker_id_for(inst["id"]),
                "instanceName": inst["name"],
                "zone": inst["zone"].split("/")[-1],
                "status": inst.get("status"),
                "created": inst.get("creationTimestamp"),
            }
            for inst in instances
        ]

    def query_worker_state(self, worker: Worker) -> Optional[str]:
        if self._snapshot is not None and worker.worker_id in self._snapshot:
            return self._snapshot[worker.worker_id].get("status")
        data = worker.provider_data
        try:
            return self.api.get_instance(data["zone"], data["instance_name"]).get(
                "status"
            )
        except ApiError as e:
            if not e.not_found:
                raise
            return None

    def worker_info(self, worker: Worker) -> Dict:
        data = worker.provider_data
        return {
            "workerType": worker.worker_type,
            "workerId": worker.worker_id,
            "provider": worker.provider,
            "project": data.get("project", self.project_id),
            "zone": data.get("zone"),
            "instanceName": data.get("instance_name"),
            "created": worker.created.isoformat(),
            "credentialed": worker.credentialed,
        }


def _has_member(policy: Dict, role: str, member: str) -> bool:
    """True if role is granted to member unconditionally."""
    return any(
        b.get("role") == role
        and not b.get("condition")
        and member in b.get("members", [])
        for b in policy.get("bindings", [])
    )


def _with_member(policy: Dict, role: str, member: str) -> Dict:
    """Copy of policy in which role is granted to member exactly once."""
    bindings = [dict(b) for b in policy.get("bindings", [])]
    for binding in bindings:
        if binding.get("role") == role and not binding.get("condition"):
            if member not in binding.get("members", []):
                binding["members"] = list(binding.get("members", [])) + [member]
            break
    else:
        bindings.append({"role": role, "members": [member]})
    return dict(policy, bindings=bindings)
