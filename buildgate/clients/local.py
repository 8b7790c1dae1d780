"""In-process CI platform used for dry runs, local mode and tests."""

from __future__ import annotations

import logging
import threading
import uuid
from pathlib import Path
from typing import Dict, List, Optional, Set

from buildgate.errors import TriggerError
from buildgate.models.identity import PackageIdentity

_LOGGER = logging.getLogger(__name__)


class LocalCIPlatform:
    """Records requested jobs instead of starting them."""

    def __init__(
        self,
        *,
        job_id: Optional[str] = None,
        source_root: Optional[Path] = None,
        failing: Optional[Set[PackageIdentity]] = None,
    ) -> None:
        self._job_id = job_id or f"local-{uuid.uuid4().hex[:12]}"
        self._source_root = source_root
        self._failing = set(failing or ())
        self._lock = threading.Lock()
        self.started: List[PackageIdentity] = []
        self.stopped: List[str] = []
        self._statuses: Dict[str, str] = {}

    def current_job_id(self) -> str:
        return self._job_id

    def source_root(self) -> Path:
        return self._source_root or Path.cwd()

    def start_job(self, package: PackageIdentity) -> str:
        if package in self._failing:
            raise TriggerError(f"Refusing to start a job for {package}")
        with self._lock:
            self.started.append(package)
            job_id = f"local-{package.name}-{len(self.started)}"
            self._statuses[job_id] = "IN_PROGRESS"
        _LOGGER.info("Would start a build of %s (job %s)", package, job_id)
        return job_id

    def job_status(self, job_id: str) -> Optional[str]:
        with self._lock:
            return self._statuses.get(job_id)

    def stop_job(self, job_id: str) -> None:
        with self._lock:
            self.stopped.append(job_id)
            if job_id in self._statuses:
                self._statuses[job_id] = "STOPPED"
