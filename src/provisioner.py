"""
Instance provisioning for worker types backed by Compute Engine.
"""

import copy
import json
import logging
import random
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import taskcluster_urls

from clients import GoogleRestClient
from credentials import worker_id_for
from errors import ApiError
from models import Operation, Worker, WorkerType
from operations import OperationTracker
from stores import WorkerStore

logger = logging.getLogger(__name__)

WORKER_TYPE_LABEL = "worker-type"
PROVIDER_LABEL = "provider"


class InstanceProvisioner:
    """Creates one instance per call for a worker type that needs capacity."""

    def __init__(
        self,
        api: GoogleRestClient,
        tracker: OperationTracker,
        worker_store: WorkerStore,
        provider_name: str,
        provisioner_id: str,
        root_url: str,
        worker_account_email: str,
    ):
        self.api = api
        self.tracker = tracker
        self.worker_store = worker_store
        self.provider_name = provider_name
        self.provisioner_id = provisioner_id
        self.root_url = root_url
        self.worker_account_email = worker_account_email

        # Zones per region, filled on first use and kept for the life of the
        # process; zones added to a region later are not picked up
        self.zones_by_region: Dict[str, List[str]] = {}

    def zones_for(self, region: str) -> List[str]:
        """Short zone names of a region, resolved once per process."""
        if region not in self.zones_by_region:
            data = self.api.get_region(region)
            self.zones_by_region[region] = [
                zone.split("/")[-1] for zone in data.get("zones", [])
            ]
            logger.debug(f"Zones in {region}: {self.zones_by_region[region]}")
        return self.zones_by_region[region]

    def select_placement(self, worker_type: WorkerType) -> Tuple[str, str]:
        """Pick a random region of the worker type and a random zone in it."""
        regions = worker_type.config.get("regions") or []
        if not regions:
            raise ValueError(f"Worker type {worker_type.name} has no regions")
        region = random.choice(regions)
        zones = self.zones_for(region)
        if not zones:
            raise ValueError(f"Region {region} has no zones")
        return region, random.choice(zones)

    def credential_url(self, worker_type: WorkerType) -> str:
        return taskcluster_urls.api(
            self.root_url,
            "worker-manager",
            "v1",
            f"credentials/google/{worker_type.name}",
        )

    def bootstrap_metadata(self, worker_type: WorkerType) -> Dict:
        """Configuration the worker reads from instance metadata on boot."""
        return {
            "provisionerId": self.provisioner_id,
            "workerType": worker_type.name,
            "workerGroup": f"{worker_type.name}-google",
            "credentialUrl": self.credential_url(worker_type),
            "rootUrl": self.root_url,
            "userData": worker_type.config.get("userData"),
        }

    def resolve_image(self, worker_type: WorkerType) -> Tuple[bool, Optional[str]]:
        """
        Resolve the configured image to its self link.

        Returns:
            (ok, self_link); ok is False when the image does not exist, which
            has been reported on the worker type. self_link is None when no
            image is configured.
        """
        image = worker_type.config.get("image")
        if not image:
            return True, None
        try:
            return True, self.api.get_image(image)["selfLink"]
        except ApiError as e:
            if not e.not_found:
                raise
            worker_type.report_error(
                kind="unknown-image",
                title="Unknown Image",
                description=f"Image {image} does not exist or is not accessible",
                extra={"image": image},
            )
            return False, None

    def build_instance(
        self, worker_type: WorkerType, zone: str, image: Optional[str] = None
    ) -> Dict:
        """Instance resource for a new worker of the worker type."""
        config = worker_type.config
        disks = copy.deepcopy(config.get("disks", []))
        if image:
            for disk in disks:
                if disk.get("boot"):
                    params = disk.setdefault("initializeParams", {})
                    params.setdefault("sourceImage", image)

        return {
            "name": f"{worker_type.name}-{uuid.uuid4().hex[:12]}",
            "labels": {
                WORKER_TYPE_LABEL: worker_type.name,
                PROVIDER_LABEL: self.provider_name,
            },
            "description": worker_type.description,
            "machineType": f"zones/{zone}/machineTypes/{config['machineType']}",
            "scheduling": config.get("scheduling", {}),
            "networkInterfaces": config.get("networkInterfaces", []),
            "disks": disks,
            "serviceAccounts": [
                {
                    "email": self.worker_account_email,
                    # Full platform scope is narrowed by the worker role's
                    # IAM permissions, as Google recommends:
                    # https://cloud.google.com/compute/docs/access/service-accounts#accesscopesiam
                    "scopes": ["https://www.googleapis.com/auth/cloud-platform"],
                }
            ],
            "metadata": {
                "items": [
                    {
                        "key": "taskcluster",
                        "value": json.dumps(self.bootstrap_metadata(worker_type)),
                    }
                ]
            },
        }

    def provision(self, worker_type: WorkerType) -> Optional[Worker]:
        """
        Request one new instance for the worker type.

        API errors from the create request are reported on the worker type
        and end the attempt without a worker row or tracked operation.

        Returns:
            The new worker row, or None if the instance was not requested
        """
        region, zone = self.select_placement(worker_type)

        ok, image = self.resolve_image(worker_type)
        if not ok:
            return None

        body = self.build_instance(worker_type, zone, image)
        # One token per logical request; transport retries reuse it
        request_id = str(uuid.uuid4())

        try:
            op = self.api.insert_instance(zone, body, request_id=request_id)
        except ApiError as e:
            for error in e.errors or [{"message": e.message}]:
                worker_type.report_error(
                    kind="creation-error",
                    title="Instance Creation Error",
                    description=error.get("message", ""),
                    extra={"zone": zone, "reason": error.get("reason")},
                )
            return None

        worker = self.worker_store.create(
            worker_type=worker_type.name,
            worker_id=worker_id_for(op["targetId"]),
            provider=self.provider_name,
            created=datetime.now(timezone.utc),
            credentialed=None,
            provider_data={
                "project": self.api.project_id,
                "region": region,
                "zone": zone,
                "instance_name": body["name"],
            },
        )
        logger.info(
            f"[{worker_type.name}] Requested {body['name']} in {zone} as {worker.worker_id}"
        )

        self.tracker.track(worker_type, Operation.from_api(op))
        self.tracker.handle_operations(worker_type)

        return worker
