"""
Data models for the Google Cloud worker provider.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ErrorReport:
    """An error event reported against a worker type."""

    kind: str  # "unknown-image", "creation-error", "operation-error"
    title: str
    description: str
    extra: Dict[str, Any] = field(default_factory=dict)
    reported_at: datetime = field(default_factory=_utcnow)


@dataclass
class Operation:
    """Descriptor of an in-flight Compute Engine operation."""

    name: str
    region: Optional[str] = None  # short region name for regional operations
    zone: Optional[str] = None  # short zone name for zonal operations

    @property
    def scope(self) -> str:
        if self.zone:
            return "zone"
        if self.region:
            return "region"
        return "global"

    def to_dict(self) -> Dict[str, str]:
        data = {"name": self.name}
        if self.region:
            data["region"] = self.region
        if self.zone:
            data["zone"] = self.zone
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Operation":
        """
        Build a descriptor from its stored form, or from an API operation.

        Region and zone may be short names, full URLs or missing; only the
        last path segment is kept.
        """
        region = data.get("region")
        zone = data.get("zone")
        return cls(
            name=data["name"],
            region=region.split("/")[-1] if region else None,
            zone=zone.split("/")[-1] if zone else None,
        )

    @classmethod
    def from_api(cls, op: Dict[str, Any]) -> "Operation":
        """Build a descriptor from an operation resource returned by the API."""
        return cls.from_dict(op)


@dataclass
class WorkerType:
    """Desired-state description of a pool of workers."""

    name: str
    config: Dict[str, Any] = field(default_factory=dict)
    description: str = ""
    provider_data: Dict[str, Any] = field(default_factory=dict)
    errors: List[ErrorReport] = field(default_factory=list)
    _lock: threading.RLock = field(
        default_factory=threading.RLock, repr=False, compare=False
    )

    def modify(self, fn: Callable[["WorkerType"], None]) -> None:
        """Apply fn to this record atomically."""
        with self._lock:
            fn(self)

    def report_error(
        self,
        kind: str,
        title: str,
        description: str,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        report = ErrorReport(
            kind=kind, title=title, description=description, extra=extra or {}
        )
        with self._lock:
            self.errors.append(report)
        logger.warning(f"[{self.name}] {kind}: {title}: {description}")

    def tracked_operations(self, provider_name: str) -> List[Operation]:
        data = self.provider_data.get(provider_name, {})
        return [Operation.from_dict(op) for op in data.get("trackedOperations", [])]


@dataclass
class Worker:
    """One compute instance tracked by the fleet manager."""

    worker_type: str
    worker_id: str  # gcp-<instance id>
    provider: str
    created: datetime = field(default_factory=_utcnow)
    credentialed: Optional[bool] = None  # None until an instance claims credentials
    provider_data: Dict[str, Any] = field(default_factory=dict)
    _lock: threading.RLock = field(
        default_factory=threading.RLock, repr=False, compare=False
    )

    def modify(self, fn: Callable[["Worker"], None]) -> None:
        """Apply fn to this record atomically."""
        with self._lock:
            fn(self)


@dataclass
class Credential:
    """Scoped temporary Taskcluster credentials issued to a worker."""

    client_id: str
    access_token: str
    certificate: str
    scopes: List[str]
    start: datetime
    expiry: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "clientId": self.client_id,
            "accessToken": self.access_token,
            "certificate": self.certificate,
            "scopes": list(self.scopes),
            "start": self.start.isoformat(),
            "expiry": self.expiry.isoformat(),
        }
