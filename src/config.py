"""
Configuration management for the Google Cloud worker provider.
"""

import base64
import binascii
import json
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import taskcluster


@dataclass
class ProviderConfig:
    """Configuration for a Google Cloud provider instance."""

    project_id: str
    provisioner_id: str
    root_url: str
    name: str = "google"
    instance_permissions: List[str] = field(default_factory=list)
    creds: Optional[str] = None  # service account key, JSON or base64 JSON
    creds_file: Optional[str] = None
    own_client_email: Optional[str] = None
    taskcluster_credentials: Dict[str, str] = field(default_factory=dict)
    verbose: bool = False

    @classmethod
    def from_args(cls, args) -> "ProviderConfig":
        """
        Create configuration from command-line arguments.

        Args:
            args: Parsed argparse arguments

        Returns:
            ProviderConfig instance
        """
        tc_options = taskcluster.optionsFromEnvironment()
        return cls(
            project_id=args.project,
            provisioner_id=args.provisioner_id,
            root_url=args.root_url or tc_options.get("rootUrl", ""),
            name=args.provider_name,
            instance_permissions=list(args.instance_permission or []),
            creds_file=args.creds_file,
            own_client_email=args.own_client_email
            or os.environ.get("GOOGLE_CLIENT_EMAIL")
            or None,
            taskcluster_credentials=dict(tc_options.get("credentials", {})),
            verbose=args.verbose,
        )

    @classmethod
    def from_env(cls) -> "ProviderConfig":
        """
        Create configuration from environment variables.

        GCP_PROJECT_ID, PROVISIONER_ID, PROVIDER_NAME, INSTANCE_PERMISSIONS
        (whitespace separated), GOOGLE_CREDS, GOOGLE_CREDS_FILE and
        GOOGLE_CLIENT_EMAIL configure the provider; TASKCLUSTER_ROOT_URL,
        TASKCLUSTER_CLIENT_ID and TASKCLUSTER_ACCESS_TOKEN are read through
        the taskcluster client.

        Raises:
            ValueError: If a required variable is missing
        """
        tc_options = taskcluster.optionsFromEnvironment()
        project_id = os.environ.get("GCP_PROJECT_ID", "")
        root_url = tc_options.get("rootUrl", "")
        provisioner_id = os.environ.get("PROVISIONER_ID", "")
        if not project_id:
            raise ValueError("GCP_PROJECT_ID is required")
        if not root_url:
            raise ValueError("TASKCLUSTER_ROOT_URL is required")
        if not provisioner_id:
            raise ValueError("PROVISIONER_ID is required")

        return cls(
            project_id=project_id,
            provisioner_id=provisioner_id,
            root_url=root_url,
            name=os.environ.get("PROVIDER_NAME", "google"),
            instance_permissions=os.environ.get("INSTANCE_PERMISSIONS", "").split(),
            creds=os.environ.get("GOOGLE_CREDS") or None,
            creds_file=os.environ.get("GOOGLE_CREDS_FILE") or None,
            own_client_email=os.environ.get("GOOGLE_CLIENT_EMAIL") or None,
            taskcluster_credentials=dict(tc_options.get("credentials", {})),
        )

    def load_service_account_info(self) -> Optional[Dict]:
        """
        Decode the configured service account key.

        Accepts inline JSON, base64-encoded JSON, or a path to a key file.
        Returns None when neither creds nor creds_file is set, in which case
        application default credentials are used.
        """
        raw = self.creds
        if not raw and self.creds_file:
            with open(self.creds_file) as f:
                raw = f.read()
        if not raw:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            pass
        try:
            return json.loads(base64.b64decode(raw, validate=True))
        except (binascii.Error, ValueError) as e:
            raise ValueError(
                "creds must be a service account key as JSON or base64 JSON"
            ) from e
