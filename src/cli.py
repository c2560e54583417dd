"""Console entry point for operating the Google worker provider."""

from __future__ import annotations

import argparse
import json
import logging
from typing import List

from config import ProviderConfig
from log_utils import setup_logging
from models import WorkerType
from provider import GoogleProvider

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Build and return the CLI argument parser."""
    parser = argparse.ArgumentParser(
        description="Google Compute Engine worker provider operations"
    )
    parser.add_argument("--project", required=True, help="GCP project ID")
    parser.add_argument(
        "--provisioner-id", required=True, help="Taskcluster provisioner ID"
    )
    parser.add_argument(
        "--root-url",
        help="Taskcluster root URL (default: TASKCLUSTER_ROOT_URL)",
    )
    parser.add_argument("--provider-name", default="google")
    parser.add_argument(
        "--creds-file",
        help="Service account key file (default: application default credentials)",
    )
    parser.add_argument(
        "--own-client-email",
        help="Service account the provider runs as "
        "(default: GOOGLE_CLIENT_EMAIL, else taken from the credentials)",
    )
    parser.add_argument(
        "--instance-permission",
        action="append",
        metavar="PERMISSION",
        help="IAM permission granted to workers (repeatable)",
    )
    parser.add_argument("--verbose", action="store_true")

    actions = parser.add_subparsers(dest="action", required=True)
    actions.add_parser(
        "initiate", help="Set up the worker service account and role"
    )
    list_workers = actions.add_parser(
        "list-workers", help="List live instances of a worker type"
    )
    list_workers.add_argument("worker_type")
    terminate_type = actions.add_parser(
        "terminate-worker-type", help="Delete every instance of a worker type"
    )
    terminate_type.add_argument("worker_type")
    actions.add_parser(
        "terminate-all", help="Delete every instance created by this provider"
    )
    return parser


def main(argv: List[str] | None = None) -> int:
    """CLI main for console_scripts entry point."""
    parser = build_parser()
    args = parser.parse_args(args=argv)

    setup_logging(verbose=args.verbose)

    config = ProviderConfig.from_args(args)
    provider = GoogleProvider(config)

    if args.action == "initiate":
        provider.initiate()
    elif args.action == "list-workers":
        workers = provider.list_workers(WorkerType(name=args.worker_type))
        print(json.dumps(workers, indent=2))
    elif args.action == "terminate-worker-type":
        provider.terminate_worker_type(WorkerType(name=args.worker_type))
    elif args.action == "terminate-all":
        provider.terminate_all_workers()

    return 0
