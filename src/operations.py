"""
Tracking of asynchronous Compute Engine operations across provisioning ticks.
"""

import logging
from functools import partial
from typing import List

from clients import GoogleRestClient
from errors import ApiError
from models import Operation, WorkerType

logger = logging.getLogger(__name__)


class OperationTracker:
    """Polls the operations recorded on a worker type until they finish."""

    def __init__(self, api: GoogleRestClient, provider_name: str):
        self.api = api
        self.provider_name = provider_name

    def track(self, worker_type: WorkerType, operation: Operation) -> None:
        """Record an accepted operation on the worker type."""

        def add(wt: WorkerType) -> None:
            data = wt.provider_data.setdefault(self.provider_name, {})
            data.setdefault("trackedOperations", []).append(operation.to_dict())

        worker_type.modify(add)
        logger.debug(f"[{worker_type.name}] Tracking {operation.scope} op {operation.name}")

    def handle_operations(self, worker_type: WorkerType) -> None:
        """
        Poll every tracked operation once and forget the finished ones.

        Operations still running stay tracked for the next call; nothing here
        waits for completion. The errors an operation finished with are only
        reported: an operation that did not get recorded can still have
        succeeded, so they must not gate further provisioning.
        """
        tracked = worker_type.tracked_operations(self.provider_name)
        if not tracked:
            return

        finished: List[Operation] = []
        for op in tracked:
            if not self.handle_operation(op, worker_type):
                finished.append(op)

        if not finished:
            return

        # Compared as descriptors, so stored dicts of any shape match
        def prune(wt: WorkerType) -> None:
            data = wt.provider_data.setdefault(self.provider_name, {})
            data["trackedOperations"] = [
                op
                for op in data.get("trackedOperations", [])
                if Operation.from_dict(op) not in finished
            ]

        worker_type.modify(prune)
        logger.info(
            f"[{worker_type.name}] {len(finished)} operation(s) finished, "
            f"{len(tracked) - len(finished)} still running"
        )

    def handle_operation(self, op: Operation, worker_type: WorkerType) -> bool:
        """
        Poll one operation.

        Returns:
            True if the operation is still running and should stay tracked

        Raises:
            ApiError: If the status fetch fails with anything but 404
        """
        if op.scope == "zone":
            get_op = partial(self.api.get_zone_operation, op.zone, op.name)
            delete_op = partial(self.api.delete_zone_operation, op.zone, op.name)
        elif op.scope == "region":
            get_op = partial(self.api.get_region_operation, op.region, op.name)
            delete_op = partial(self.api.delete_region_operation, op.region, op.name)
        else:
            get_op = partial(self.api.get_global_operation, op.name)
            delete_op = partial(self.api.delete_global_operation, op.name)

        try:
            operation = get_op()
        except ApiError as e:
            if not e.not_found:
                raise
            # Nothing left to check on
            logger.debug(f"Operation {op.name} no longer exists")
            return False

        if operation.get("status") != "DONE":
            return True

        # Each operation can carry several errors
        for err in operation.get("error", {}).get("errors", []):
            worker_type.report_error(
                kind="operation-error",
                title="Operation Error",
                description=err.get("message", ""),
                extra={"code": err.get("code")},
            )

        try:
            delete_op()
        except ApiError as e:
            if not e.not_found:
                logger.warning(f"Could not delete finished operation {op.name}: {e}")

        return False
