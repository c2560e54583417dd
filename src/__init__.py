"""
Google Compute Engine worker provider for the Taskcluster worker manager.
"""

from clients import GoogleRestClient
from config import ProviderConfig
from credentials import CredentialIssuer
from log_utils import setup_logging
from models import Credential, ErrorReport, Operation, Worker, WorkerType
from operations import OperationTracker
from provider import GoogleProvider, Provider
from provisioner import InstanceProvisioner
from reconcile import read_modify_set
from stores import InMemoryStore

__all__ = [
    "GoogleRestClient",
    "ProviderConfig",
    "CredentialIssuer",
    "setup_logging",
    "Credential",
    "ErrorReport",
    "Operation",
    "Worker",
    "WorkerType",
    "OperationTracker",
    "GoogleProvider",
    "Provider",
    "InstanceProvisioner",
    "read_modify_set",
    "InMemoryStore",
]
