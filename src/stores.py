"""
In-memory record stores for worker types and workers.

The fleet manager owns the real persistence layer; these stores implement the
same operations (create, load, modify, remove, scan) for tests, the operator
CLI and single-process deployments. Records are modified in place through
their own ``modify`` method, which serializes writers per record.
"""

import threading
from typing import Any, Dict, List, Optional, Tuple

from errors import EntityExistsError, EntityNotFoundError
from models import Worker, WorkerType


class WorkerTypeStore:
    """Worker type records keyed by name."""

    def __init__(self):
        self._lock = threading.Lock()
        self._rows: Dict[str, WorkerType] = {}

    def create(
        self, name: str, config: Dict[str, Any], description: str = ""
    ) -> WorkerType:
        with self._lock:
            if name in self._rows:
                raise EntityExistsError(f"Worker type {name} already exists")
            row = WorkerType(name=name, config=config, description=description)
            self._rows[name] = row
            return row

    def load(self, name: str, optional: bool = False) -> Optional[WorkerType]:
        with self._lock:
            row = self._rows.get(name)
        if row is None and not optional:
            raise EntityNotFoundError(f"Worker type {name} not found")
        return row

    def scan(self) -> List[WorkerType]:
        with self._lock:
            return list(self._rows.values())


class WorkerStore:
    """Worker records keyed by (worker_type, worker_id)."""

    def __init__(self):
        self._lock = threading.Lock()
        self._rows: Dict[Tuple[str, str], Worker] = {}

    def create(self, **fields) -> Worker:
        worker = Worker(**fields)
        key = (worker.worker_type, worker.worker_id)
        with self._lock:
            if key in self._rows:
                raise EntityExistsError(
                    f"Worker {worker.worker_id} already exists in {worker.worker_type}"
                )
            self._rows[key] = worker
        return worker

    def load(
        self, worker_type: str, worker_id: str, optional: bool = False
    ) -> Optional[Worker]:
        with self._lock:
            worker = self._rows.get((worker_type, worker_id))
        if worker is None and not optional:
            raise EntityNotFoundError(f"Worker {worker_id} not found in {worker_type}")
        return worker

    def remove(self, worker: Worker) -> None:
        with self._lock:
            self._rows.pop((worker.worker_type, worker.worker_id), None)

    def scan(
        self, worker_type: Optional[str] = None, provider: Optional[str] = None
    ) -> List[Worker]:
        with self._lock:
            rows = list(self._rows.values())
        return [
            w
            for w in rows
            if (worker_type is None or w.worker_type == worker_type)
            and (provider is None or w.provider == provider)
        ]


class InMemoryStore:
    """Both record stores, as handed to a provider."""

    def __init__(self):
        self.worker_types = WorkerTypeStore()
        self.workers = WorkerStore()
