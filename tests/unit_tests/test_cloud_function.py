"""
Unit tests for the Cloud Function HTTP entry point.
"""

import importlib.util
import os
import unittest
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import flask

from errors import (
    InvalidTokenError,
    ProjectMismatchError,
    ServiceAccountMismatchError,
    UnknownWorkerError,
)
from models import Credential
from stores import InMemoryStore

MAIN_PATH = os.path.join(
    os.path.dirname(__file__), "..", "..", "cloud_function", "main.py"
)


def load_cloud_function():
    spec = importlib.util.spec_from_file_location("cloud_function_main", MAIN_PATH)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


cloud_function = load_cloud_function()


class TestCloudFunction(unittest.TestCase):
    """Test routing and credential requests."""

    def setUp(self):
        """Set up test fixtures."""
        self.app = flask.Flask("test")
        self.store = InMemoryStore()
        self.worker_type = self.store.worker_types.create("wt1", {"regions": ["us-east1"]})
        self.provider = MagicMock()
        self.provider.store = self.store
        cloud_function.configure(self.provider)
        self.addCleanup(cloud_function.configure, None)

    def call(self, path, method="GET", json=None, **kwargs):
        with self.app.test_request_context(path, method=method, json=json, **kwargs):
            return cloud_function.main(flask.request)

    def test_info(self):
        """Test the root path describes the service."""
        body, status = self.call("/")

        self.assertEqual(status, 200)
        self.assertTrue(body["success"])
        self.assertIn("POST /credentials/google/<workerType>", body["data"]["endpoints"])

    def test_health(self):
        """Test the health endpoint."""
        body, status = self.call("/health")

        self.assertEqual(status, 200)
        self.assertEqual(body["data"], {"status": "healthy"})

    def test_unknown_endpoint(self):
        """Test unknown paths are 404."""
        body, status = self.call("/nope")

        self.assertEqual(status, 404)
        self.assertFalse(body["success"])

    def test_credentials_issued(self):
        """Test a verified instance receives its credentials."""
        start = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)
        self.provider.verify_id_token.return_value = Credential(
            client_id="worker/google/test-project/1234",
            access_token="temp-token",
            certificate="{}",
            scopes=["assume:worker-id:gcp-1234"],
            start=start,
            expiry=start,
        )

        body, status = self.call(
            "/credentials/google/wt1", method="POST", json={"token": "id-token"}
        )

        self.assertEqual(status, 200)
        self.assertEqual(body["data"]["clientId"], "worker/google/test-project/1234")
        self.provider.verify_id_token.assert_called_once_with("id-token", self.worker_type)

    def test_identity_errors_map_to_status(self):
        """Test rejected claims answer without issuing credentials."""
        cases = [
            (InvalidTokenError("bad signature"), 401),
            (ProjectMismatchError("other", "test-project"), 403),
            (ServiceAccountMismatchError("intruder@x", "workers@x"), 403),
            (UnknownWorkerError("gcp-9"), 404),
        ]
        for error, expected in cases:
            with self.subTest(error=type(error).__name__):
                self.provider.verify_id_token.side_effect = error

                body, status = self.call(
                    "/credentials/google/wt1", method="POST", json={"token": "t"}
                )

                self.assertEqual(status, expected)
                self.assertNotIn("data", body)

    def test_missing_token(self):
        """Test requests without a token are rejected as invalid."""
        body, status = self.call("/credentials/google/wt1", method="POST", json={})

        self.assertEqual(status, 400)
        self.provider.verify_id_token.assert_not_called()

    def test_unknown_worker_type(self):
        """Test credentials are never issued for unknown worker types."""
        body, status = self.call(
            "/credentials/google/wt9", method="POST", json={"token": "t"}
        )

        self.assertEqual(status, 404)
        self.provider.verify_id_token.assert_not_called()

    def test_credentials_require_post(self):
        """Test other methods are refused."""
        body, status = self.call("/credentials/google/wt1")

        self.assertEqual(status, 405)

    def test_credentials_require_json(self):
        """Test non-JSON bodies are refused."""
        body, status = self.call(
            "/credentials/google/wt1",
            method="POST",
            data="token=t",
            content_type="application/x-www-form-urlencoded",
        )

        self.assertEqual(status, 415)

    def test_unconfigured_process_knows_no_worker_types(self):
        """Test the environment-built provider starts with empty stores."""
        cloud_function.configure(None)
        built = []

        def build_provider(config, store):
            provider = MagicMock()
            provider.store = store
            built.append(provider)
            return provider

        with patch.object(cloud_function, "ProviderConfig"), patch.object(
            cloud_function, "GoogleProvider", side_effect=build_provider
        ):
            body, status = self.call(
                "/credentials/google/wt1", method="POST", json={"token": "t"}
            )

        self.assertEqual(status, 404)
        self.assertIsInstance(built[0].store, InMemoryStore)
        self.assertEqual(built[0].store.worker_types.scan(), [])
        built[0].verify_id_token.assert_not_called()

    def test_unexpected_errors_are_500(self):
        """Test failures reaching the cloud surface as internal errors."""
        self.provider.verify_id_token.side_effect = RuntimeError("boom")

        body, status = self.call(
            "/credentials/google/wt1", method="POST", json={"token": "t"}
        )

        self.assertEqual(status, 500)
        self.assertNotIn("boom", body["message"])


if __name__ == "__main__":
    unittest.main()
