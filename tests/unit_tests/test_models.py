"""
Unit tests for data models.
"""

import unittest
from datetime import datetime, timezone

from models import Credential, Operation, Worker, WorkerType


class TestOperation(unittest.TestCase):
    """Test Operation descriptor."""

    def test_operation_from_api(self):
        """Test zone and region URLs are shortened to their names."""
        op = Operation.from_api(
            {
                "name": "operation-123",
                "zone": "https://www.googleapis.com/compute/v1/projects/p/zones/us-east1-b",
                "status": "RUNNING",
            }
        )
        self.assertEqual(op, Operation(name="operation-123", zone="us-east1-b"))
        self.assertEqual(op.scope, "zone")

    def test_operation_scopes(self):
        """Test the scope follows the most specific location."""
        self.assertEqual(Operation(name="a", region="us-east1").scope, "region")
        self.assertEqual(Operation(name="a").scope, "global")

    def test_operation_dict_form(self):
        """Test descriptors are stored without empty location keys."""
        op = Operation(name="operation-1", region="us-east1")
        self.assertEqual(op.to_dict(), {"name": "operation-1", "region": "us-east1"})
        self.assertEqual(Operation.from_dict(op.to_dict()), op)


class TestWorkerType(unittest.TestCase):
    """Test WorkerType data model."""

    def test_report_error(self):
        """Test error reports are recorded in order."""
        wt = WorkerType(name="wt1")
        wt.report_error("creation-error", "Instance Creation Error", "Quota exceeded")
        wt.report_error(
            "operation-error", "Operation Error", "Zone exhausted", extra={"code": "X"}
        )

        self.assertEqual([e.kind for e in wt.errors], ["creation-error", "operation-error"])
        self.assertEqual(wt.errors[0].extra, {})
        self.assertEqual(wt.errors[1].extra, {"code": "X"})
        self.assertIsNotNone(wt.errors[0].reported_at.tzinfo)

    def test_modify(self):
        """Test modify applies the change to the record."""
        wt = WorkerType(name="wt1")
        wt.modify(
            lambda w: w.provider_data.update(
                {"google": {"trackedOperations": [{"name": "op-1", "zone": "z"}]}}
            )
        )

        self.assertEqual(
            wt.tracked_operations("google"), [Operation(name="op-1", zone="z")]
        )

    def test_tracked_operations_other_provider(self):
        """Test operations are read per provider."""
        wt = WorkerType(
            name="wt1",
            provider_data={"google": {"trackedOperations": [{"name": "op-1"}]}},
        )
        self.assertEqual(wt.tracked_operations("google"), [Operation(name="op-1")])
        self.assertEqual(wt.tracked_operations("google-eu"), [])


class TestWorker(unittest.TestCase):
    """Test Worker data model."""

    def test_worker_defaults(self):
        """Test new workers have not claimed credentials yet."""
        worker = Worker(worker_type="wt1", worker_id="gcp-1", provider="google")
        self.assertIsNone(worker.credentialed)
        self.assertEqual(worker.created.tzinfo, timezone.utc)
        self.assertEqual(worker.provider_data, {})


class TestCredential(unittest.TestCase):
    """Test Credential data model."""

    def test_credential_to_dict(self):
        """Test credentials serialize with Taskcluster field names."""
        start = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)
        expiry = datetime(2026, 10, 21, 12, 0, tzinfo=timezone.utc)
        credential = Credential(
            client_id="worker/google/p/1",
            access_token="token",
            certificate='{"version": 1}',
            scopes=["assume:worker-id:gcp-1"],
            start=start,
            expiry=expiry,
        )

        self.assertEqual(
            credential.to_dict(),
            {
                "clientId": "worker/google/p/1",
                "accessToken": "token",
                "certificate": '{"version": 1}',
                "scopes": ["assume:worker-id:gcp-1"],
                "start": "2026-10-17T12:00:00+00:00",
                "expiry": "2026-10-21T12:00:00+00:00",
            },
        )


if __name__ == "__main__":
    unittest.main()
