"""
Unit tests for OperationTracker.
"""

import unittest
from unittest.mock import MagicMock

from clients import GoogleRestClient
from errors import ApiError
from models import Operation, WorkerType
from operations import OperationTracker


class TestOperationTracker(unittest.TestCase):
    """Test polling of tracked operations."""

    def setUp(self):
        """Set up test fixtures."""
        self.api = MagicMock(spec=GoogleRestClient)
        self.tracker = OperationTracker(self.api, "google")
        self.worker_type = WorkerType(name="wt1", config={"regions": ["us-east1"]})

    def tracked(self):
        return self.worker_type.tracked_operations("google")

    def test_track_appends_descriptor(self):
        """Test tracking stores the operation under the provider's data."""
        self.tracker.track(self.worker_type, Operation(name="op-1", zone="us-east1-b"))
        self.tracker.track(self.worker_type, Operation(name="op-2", region="us-east1"))

        self.assertEqual(
            self.worker_type.provider_data["google"]["trackedOperations"],
            [
                {"name": "op-1", "zone": "us-east1-b"},
                {"name": "op-2", "region": "us-east1"},
            ],
        )

    def test_nothing_tracked(self):
        """Test a worker type without operations makes no API calls."""
        self.tracker.handle_operations(self.worker_type)

        self.assertEqual(self.api.method_calls, [])

    def test_pending_operation_stays_tracked(self):
        """Test an unfinished operation is kept for the next tick."""
        self.tracker.track(self.worker_type, Operation(name="op-1", zone="us-east1-b"))
        self.api.get_zone_operation.return_value = {"status": "RUNNING"}

        self.tracker.handle_operations(self.worker_type)

        self.assertEqual(self.tracked(), [Operation(name="op-1", zone="us-east1-b")])
        self.api.delete_zone_operation.assert_not_called()

    def test_done_operation_is_removed_and_deleted(self):
        """Test a clean finished operation is dropped and cleaned up."""
        self.tracker.track(self.worker_type, Operation(name="op-1", zone="us-east1-b"))
        self.api.get_zone_operation.return_value = {"status": "DONE"}

        self.tracker.handle_operations(self.worker_type)

        self.assertEqual(self.tracked(), [])
        self.assertEqual(self.worker_type.errors, [])
        self.api.delete_zone_operation.assert_called_once_with("us-east1-b", "op-1")

    def test_done_operation_errors_are_reported(self):
        """Test each error of a finished operation is reported once."""
        self.tracker.track(self.worker_type, Operation(name="op-1", zone="us-east1-b"))
        self.api.get_zone_operation.return_value = {
            "status": "DONE",
            "error": {
                "errors": [
                    {"code": "QUOTA_EXCEEDED", "message": "Quota 'CPUS' exceeded"},
                    {"code": "RESOURCE_NOT_FOUND", "message": "Subnet not found"},
                ]
            },
        }

        self.tracker.handle_operations(self.worker_type)

        self.assertEqual(self.tracked(), [])
        self.assertEqual(
            [e.kind for e in self.worker_type.errors],
            ["operation-error", "operation-error"],
        )
        self.assertEqual(self.worker_type.errors[0].extra, {"code": "QUOTA_EXCEEDED"})
        self.assertEqual(self.worker_type.errors[1].description, "Subnet not found")
        self.api.delete_zone_operation.assert_called_once()

    def test_vanished_operation_is_dropped_silently(self):
        """Test a 404 on poll forgets the operation without reporting."""
        self.tracker.track(self.worker_type, Operation(name="op-1"))
        self.api.get_global_operation.side_effect = ApiError(404, "not found")

        self.tracker.handle_operations(self.worker_type)

        self.assertEqual(self.tracked(), [])
        self.assertEqual(self.worker_type.errors, [])
        self.api.delete_global_operation.assert_not_called()

    def test_poll_failure_propagates(self):
        """Test other poll errors abort the pass and leave the list alone."""
        self.tracker.track(self.worker_type, Operation(name="op-1", zone="us-east1-b"))
        self.api.get_zone_operation.side_effect = ApiError(500, "backend error")

        with self.assertRaises(ApiError):
            self.tracker.handle_operations(self.worker_type)

        self.assertEqual(len(self.tracked()), 1)

    def test_delete_failure_is_not_fatal(self):
        """Test cleaning up a finished operation is best effort."""
        self.tracker.track(self.worker_type, Operation(name="op-1", zone="us-east1-b"))
        self.api.get_zone_operation.return_value = {"status": "DONE"}
        self.api.delete_zone_operation.side_effect = ApiError(403, "forbidden")

        self.tracker.handle_operations(self.worker_type)

        self.assertEqual(self.tracked(), [])

    def test_endpoint_follows_operation_scope(self):
        """Test zonal, regional and global operations use their own endpoints."""
        self.tracker.track(self.worker_type, Operation(name="z", zone="us-east1-b"))
        self.tracker.track(self.worker_type, Operation(name="r", region="us-east1"))
        self.tracker.track(self.worker_type, Operation(name="g"))
        for getter in (
            self.api.get_zone_operation,
            self.api.get_region_operation,
            self.api.get_global_operation,
        ):
            getter.return_value = {"status": "PENDING"}

        self.tracker.handle_operations(self.worker_type)

        self.api.get_zone_operation.assert_called_once_with("us-east1-b", "z")
        self.api.get_region_operation.assert_called_once_with("us-east1", "r")
        self.api.get_global_operation.assert_called_once_with("g")

    def test_operation_tracked_for_exactly_n_pending_ticks(self):
        """Test an operation pending twice is tracked for two ticks, then never polled."""
        self.tracker.track(self.worker_type, Operation(name="op-1", zone="us-east1-b"))
        self.api.get_zone_operation.side_effect = [
            {"status": "PENDING"},
            {"status": "RUNNING"},
            {"status": "DONE"},
        ]

        remaining = []
        for _ in range(5):
            self.tracker.handle_operations(self.worker_type)
            remaining.append(len(self.tracked()))

        self.assertEqual(remaining, [1, 1, 0, 0, 0])
        self.assertEqual(self.api.get_zone_operation.call_count, 3)

    def test_stored_descriptors_of_other_shapes_are_pruned(self):
        """Test finished operations stored with full URLs or empty keys are dropped."""
        self.worker_type.provider_data["google"] = {
            "trackedOperations": [
                {
                    "name": "op-1",
                    "region": "https://www.googleapis.com/compute/v1/projects/p/regions/us-east1",
                },
                {"name": "op-2", "region": None, "zone": "us-east1-b"},
                {"name": "op-3", "zone": "us-east1-c"},
            ]
        }
        self.api.get_region_operation.return_value = {"status": "DONE"}
        self.api.get_zone_operation.side_effect = lambda zone, name: {
            "status": "DONE" if name == "op-2" else "RUNNING"
        }

        self.tracker.handle_operations(self.worker_type)

        self.api.get_region_operation.assert_called_once_with("us-east1", "op-1")
        self.assertEqual(self.tracked(), [Operation(name="op-3", zone="us-east1-c")])

    def test_operations_tracked_during_poll_survive(self):
        """Test an operation added while polling is not lost when pruning."""
        self.tracker.track(self.worker_type, Operation(name="op-1", zone="us-east1-b"))

        def finish_and_add(zone, name):
            self.tracker.track(
                self.worker_type, Operation(name="op-2", zone="us-east1-c")
            )
            return {"status": "DONE"}

        self.api.get_zone_operation.side_effect = finish_and_add

        self.tracker.handle_operations(self.worker_type)

        self.assertEqual(self.tracked(), [Operation(name="op-2", zone="us-east1-c")])


if __name__ == "__main__":
    unittest.main()
